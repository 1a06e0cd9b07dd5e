"""Generic DOM matcher for human-readable target descriptions (no app-specific selectors)."""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Iterable, List, Optional, Tuple

from playwright.async_api import Error as PlaywrightError

from ..config import settings
from .contexts import SearchContext
from .errors import StaleContextError, is_closed_error
from .targets import Action, TargetDescriptor
from .windows import WindowNode

logger = logging.getLogger(__name__)


class MatchRank(IntEnum):
    EXACT = 0
    WHOLE_WORD = 1
    SUBSTRING = 2


@dataclass
class NodeInfo:
    ref: int
    tag: str = ""
    text: str = ""
    title: str = ""
    aria_label: str = ""
    test_id: str = ""
    element_id: str = ""
    class_name: str = ""
    name: str = ""
    value: str = ""
    placeholder: str = ""
    label: str = ""
    role: str = ""
    input_type: str = ""
    visible: bool = True

    @classmethod
    def from_dict(cls, raw: dict) -> "NodeInfo":
        return cls(
            ref=int(raw.get("ref", 0)),
            tag=raw.get("tag") or "",
            text=raw.get("text") or "",
            title=raw.get("title") or "",
            aria_label=raw.get("ariaLabel") or "",
            test_id=raw.get("testId") or "",
            element_id=raw.get("elementId") or "",
            class_name=raw.get("className") or "",
            name=raw.get("name") or "",
            value=raw.get("value") or "",
            placeholder=raw.get("placeholder") or "",
            label=raw.get("label") or "",
            role=raw.get("role") or "",
            input_type=raw.get("inputType") or "",
            visible=bool(raw.get("visible", True)),
        )

    @property
    def display_name(self) -> str:
        for value in (self.label, self.text, self.aria_label, self.placeholder, self.value, self.title, self.name, self.element_id):
            if value and value.strip():
                return value.strip()[:80]
        return self.tag

    @property
    def kind(self) -> str:
        if self.tag == "a" or self.role == "link":
            return "link"
        if self.tag == "select" or self.role in {"combobox", "listbox"}:
            return "select"
        if self.tag == "textarea" or self.role in {"textbox", "searchbox"}:
            return "input"
        if self.tag == "input":
            if self.input_type.lower() in {"button", "submit", "reset", "image"}:
                return "button"
            if self.input_type.lower() in {"checkbox", "radio"}:
                return self.input_type.lower()
            return "input"
        if self.tag == "button" or self.role == "button":
            return "button"
        return self.role or "clickable"


@dataclass
class Candidate:
    handle: Any
    context: SearchContext
    rank: MatchRank
    node: NodeInfo
    order: int
    matched_on: str

    def describe(self) -> str:
        return f"<{self.node.tag}> '{self.node.display_name}' ({self.rank.name.lower()} on {self.matched_on}) in {self.context.describe()}"


def normalize(value: Optional[str]) -> str:
    if not value:
        return ""
    return " ".join(str(value).split()).lower()


def primary_fields(node: NodeInfo, action: Action) -> List[Tuple[str, str]]:
    if action in (Action.FILL, Action.SELECT):
        return [
            ("label", node.label),
            ("placeholder", node.placeholder),
            ("aria-label", node.aria_label),
            ("name", node.name),
            ("id", node.element_id),
            ("title", node.title),
        ]
    return [
        ("text", node.text),
        ("aria-label", node.aria_label),
        ("value", node.value),
        ("title", node.title),
        ("label", node.label),
    ]


def searchable_text(node: NodeInfo) -> str:
    parts = [
        node.text,
        node.title,
        node.aria_label,
        node.test_id,
        node.element_id,
        node.class_name,
        node.name,
        node.value,
        node.placeholder,
        node.label,
    ]
    return normalize(" ".join(part for part in parts if part))


def score_node(node: NodeInfo, target: str, action: Action) -> Optional[Tuple[MatchRank, str]]:
    needle = normalize(target)
    if not needle:
        return None
    fields = [(name, normalize(value)) for name, value in primary_fields(node, action) if value]
    for name, value in fields:
        if value == needle:
            return MatchRank.EXACT, name
    word = re.compile(r"(?<!\w)" + re.escape(needle) + r"(?!\w)")
    for name, value in fields:
        if word.search(value):
            return MatchRank.WHOLE_WORD, name
    if needle in searchable_text(node):
        return MatchRank.SUBSTRING, "attributes"
    return None


def rank_nodes(nodes: Iterable[NodeInfo], target: str, action: Action) -> List[Tuple[MatchRank, str, int, NodeInfo]]:
    """Score nodes and sort them by rank, then by DOM encounter order."""
    scored: List[Tuple[MatchRank, str, int, NodeInfo]] = []
    for order, node in enumerate(nodes):
        result = score_node(node, target, action)
        if result is None:
            continue
        rank, matched_on = result
        scored.append((rank, matched_on, order, node))
    scored.sort(key=lambda item: (item[0], item[2]))
    return scored


_HELPERS_JS = r"""
  const clean = (s, max) => (s || '').replace(/\s+/g, ' ').trim().slice(0, max || 300);
  const styleOf = (el) => (el.ownerDocument.defaultView || window).getComputedStyle(el);
  const labelText = (el) => clean(el.innerText || el.textContent, 200);
  const labelFor = (el) => {
    const parts = [];
    const rootNode = el.getRootNode();
    if (el.labels && el.labels.length) {
      for (const l of el.labels) parts.push(labelText(l));
    }
    if (!parts.length && el.id && rootNode.querySelector) {
      try {
        const l = rootNode.querySelector('label[for="' + CSS.escape(el.id) + '"]');
        if (l) parts.push(labelText(l));
      } catch (e) {}
    }
    if (!parts.length) {
      const wrap = el.parentElement && el.parentElement.closest('label');
      if (wrap) parts.push(labelText(wrap));
    }
    if (!parts.length) {
      const ids = (el.getAttribute('aria-labelledby') || '').split(/\s+/).filter(Boolean);
      for (const id of ids) {
        const ref = rootNode.getElementById ? rootNode.getElementById(id) : document.getElementById(id);
        if (ref) parts.push(labelText(ref));
      }
    }
    if (!parts.length) {
      let prev = el.previousSibling;
      while (prev && prev.nodeType === 3 && !prev.textContent.trim()) prev = prev.previousSibling;
      if (prev && (prev.nodeType === 3 || prev.nodeType === 1)) {
        const t = clean(prev.nodeType === 3 ? prev.textContent : (prev.innerText || prev.textContent), 200);
        if (t && (prev.nodeType === 3 || prev.tagName === 'LABEL' || t.length <= 60)) parts.push(t);
      }
    }
    return clean(parts.join(' '), 200);
  };
  const describe = (el, ref, ownText) => {
    const rect = el.getBoundingClientRect();
    const style = styleOf(el);
    const tag = el.tagName.toLowerCase();
    const role = (el.getAttribute('role') || '').toLowerCase();
    const type = (el.getAttribute('type') || '').toLowerCase();
    const isField = tag === 'input' || tag === 'textarea' || tag === 'select' || el.isContentEditable ||
      ['textbox', 'searchbox', 'combobox', 'listbox'].includes(role);
    const buttonInput = tag === 'input' && ['button', 'submit', 'reset'].includes(type);
    let text = ownText;
    if (text === undefined) text = tag === 'input' || tag === 'select' ? '' : clean(el.innerText || el.textContent);
    return {
      ref,
      tag,
      text,
      title: el.getAttribute('title') || '',
      ariaLabel: el.getAttribute('aria-label') || '',
      testId: el.getAttribute('data-testid') || el.getAttribute('data-test-id') || el.getAttribute('data-test') || '',
      elementId: el.id || '',
      className: typeof el.className === 'string' ? el.className : (el.getAttribute('class') || ''),
      name: el.getAttribute('name') || '',
      value: buttonInput ? (el.value || '') : (el.getAttribute('value') || ''),
      placeholder: el.getAttribute('placeholder') || '',
      label: isField ? labelFor(el) : '',
      role,
      inputType: type,
      visible: rect.width > 0 && rect.height > 0 && style.visibility !== 'hidden' && style.display !== 'none',
    };
  };
  const haystack = (d) => [d.text, d.title, d.ariaLabel, d.testId, d.elementId, d.className, d.name, d.value, d.placeholder, d.label]
    .join(' ').replace(/\s+/g, ' ').toLowerCase();
"""

COLLECT_JS = (
    "(args) => {\n"
    + _HELPERS_JS
    + r"""
  const registered = (name) => ((window[name] || {})[args.registry] || [])[args.index];
  const root = args.kind === 'overlay' ? registered('__healOverlays')
    : args.kind === 'shadow' ? registered('__healShadowRoots')
    : document;
  if (!root || root.isConnected === false) return null;
  const selectors = {
    click: 'button, a, summary, input[type=button], input[type=submit], input[type=reset], input[type=image], ' +
      'input[type=checkbox], input[type=radio], [role=button], [role=tab], [role=menuitem], [role=link], ' +
      '[role=option], [role=checkbox], [role=radio], [onclick]',
    fill: 'input:not([type]), input[type]:not([type=hidden]):not([type=button]):not([type=submit]):not([type=reset])' +
      ':not([type=image]):not([type=checkbox]):not([type=radio]):not([type=file]):not([type=range]), textarea, ' +
      '[contenteditable=""], [contenteditable=true], [role=textbox], [role=searchbox]',
    select: 'select, [role=combobox], [role=listbox], [aria-haspopup=listbox]',
  };
  const pools = args.pool === 'any' ? ['click', 'fill', 'select'] : [args.pool];
  const selector = pools.map((p) => selectors[p]).join(', ');
  const withPointer = pools.includes('click');
  const refs = [];
  const out = [];
  for (const el of root.querySelectorAll('*')) {
    let take = el.matches(selector);
    if (!take && withPointer && styleOf(el).cursor === 'pointer') {
      const parent = el.parentElement;
      take = !parent || styleOf(parent).cursor !== 'pointer';
    }
    if (!take) continue;
    const d = describe(el, refs.length);
    if (args.needle && !haystack(d).includes(args.needle)) continue;
    refs.push(el);
    out.push(d);
    if (args.limit && out.length >= args.limit) break;
  }
  if (args.token) {
    window.__healRefs = window.__healRefs || {};
    window.__healRefs[args.token] = refs;
  }
  return args.countOnly ? out.length : out;
}
"""
)

DEEP_SCAN_JS = (
    "(args) => {\n"
    + _HELPERS_JS
    + r"""
  const skip = new Set(['SCRIPT', 'STYLE', 'NOSCRIPT', 'TEMPLATE', 'HEAD', 'META', 'LINK', 'HTML', 'BODY']);
  const refs = [];
  const out = [];
  const visit = (root, depth) => {
    for (const el of root.querySelectorAll('*')) {
      if (out.length >= args.limit) return;
      if (skip.has(el.tagName)) continue;
      if (el.shadowRoot && depth < args.maxDepth) visit(el.shadowRoot, depth + 1);
      if (el.tagName === 'IFRAME' || el.tagName === 'FRAME') {
        let doc = null;
        try { doc = el.contentDocument; } catch (e) { doc = null; }
        if (doc && depth < args.maxDepth) visit(doc, depth + 1);
        continue;
      }
      const own = clean(Array.from(el.childNodes).filter((n) => n.nodeType === 3).map((n) => n.textContent).join(' '));
      const d = describe(el, refs.length, own);
      if (!haystack(d).includes(args.needle)) continue;
      refs.push(el);
      out.push(d);
    }
  };
  visit(document, 0);
  window.__healRefs = window.__healRefs || {};
  window.__healRefs[args.token] = refs;
  return out;
}
"""
)

# element refs are stored per call token so concurrent collections never share a list
RESOLVE_REF_JS = "([token, i]) => ((window.__healRefs || {})[token] || [])[i] || null"

RELEASE_REFS_JS = "(token) => { if (window.__healRefs) delete window.__healRefs[token]; }"


def pool_for(action: Action) -> str:
    if action == Action.FILL:
        return "fill"
    if action == Action.SELECT:
        return "select"
    return "click"


class ElementMatcher:
    def __init__(self, deep_scan_limit: int = 200, max_shadow_depth: int | None = None) -> None:
        self.deep_scan_limit = deep_scan_limit
        self.max_shadow_depth = max_shadow_depth if max_shadow_depth is not None else settings.max_shadow_depth

    async def match(self, context: SearchContext, descriptor: TargetDescriptor) -> List[Candidate]:
        token = uuid.uuid4().hex
        args = {
            **context.scope,
            "pool": pool_for(descriptor.action),
            "needle": normalize(descriptor.text),
            "token": token,
        }
        try:
            raw = await self._evaluate(context.frame, COLLECT_JS, args, context.describe())
            if not raw:
                return []
            nodes = [NodeInfo.from_dict(item) for item in raw]
            return await self._candidates(context, nodes, descriptor, token)
        finally:
            await self._release(context.frame, token)

    async def deep_scan(self, window: WindowNode, descriptor: TargetDescriptor) -> List[Candidate]:
        """Structure-agnostic text/attribute scan of the window's main document.

        Walks every element, open shadow roots and same-origin iframe documents
        from the top document, so nodes the frame enumeration could not reach
        still get a chance to match.
        """
        if window.closed:
            raise StaleContextError(f"window {window.id} is closed")
        frame = window.page.main_frame
        context = SearchContext(window_id=window.id, frame=frame, kind="deep")
        token = uuid.uuid4().hex
        args = {
            "needle": normalize(descriptor.text),
            "limit": self.deep_scan_limit,
            "maxDepth": self.max_shadow_depth,
            "token": token,
        }
        try:
            raw = await self._evaluate(frame, DEEP_SCAN_JS, args, f"deep scan of window {window.id}")
            if not raw:
                return []
            nodes = [NodeInfo.from_dict(item) for item in raw]
            return await self._candidates(context, nodes, descriptor, token)
        finally:
            await self._release(frame, token)

    async def exists(self, frame: Any, descriptor: TargetDescriptor) -> bool:
        """Cheap predicate: does any pooled element in ``frame`` mention the target?"""
        args = {
            "kind": "document",
            "index": None,
            "pool": pool_for(descriptor.action),
            "needle": normalize(descriptor.text),
            "countOnly": True,
            "limit": 1,
        }
        try:
            count = await frame.evaluate(COLLECT_JS, args)
        except PlaywrightError as exc:
            logger.debug("exists_check_failed reason=%s", exc)
            return False
        return bool(count)

    async def inventory(self, context: SearchContext, limit: int) -> List[dict]:
        args = {**context.scope, "pool": "any", "needle": "", "limit": limit}
        raw = await self._evaluate(context.frame, COLLECT_JS, args, context.describe())
        items: List[dict] = []
        for entry in raw or []:
            node = NodeInfo.from_dict(entry)
            items.append(
                {
                    "type": node.kind,
                    "tag": node.tag,
                    "label": node.display_name,
                    "id": node.element_id,
                    "name": node.name,
                    "role": node.role,
                    "visible": node.visible,
                    "interactive": True,
                    "context": context.describe(),
                }
            )
        return items

    async def _evaluate(self, frame: Any, script: str, args: dict, where: str):
        try:
            return await frame.evaluate(script, args)
        except PlaywrightError as exc:
            if is_closed_error(exc):
                raise StaleContextError(str(exc)) from exc
            logger.debug("match_evaluate_failed where=%s reason=%s", where, exc)
            return None

    async def _release(self, frame: Any, token: str) -> None:
        try:
            await frame.evaluate(RELEASE_REFS_JS, token)
        except PlaywrightError as exc:
            logger.debug("match_release_failed reason=%s", exc)

    async def _candidates(
        self, context: SearchContext, nodes: List[NodeInfo], descriptor: TargetDescriptor, token: str
    ) -> List[Candidate]:
        candidates: List[Candidate] = []
        for rank, matched_on, order, node in rank_nodes(nodes, descriptor.text, descriptor.action):
            handle = await self._resolve(context.frame, token, node.ref)
            if handle is None:
                continue
            candidates.append(
                Candidate(handle=handle, context=context, rank=rank, node=node, order=order, matched_on=matched_on)
            )
        if candidates:
            logger.debug(
                "match_candidates where=%s target=%s count=%s best=%s",
                context.describe(),
                descriptor.text,
                len(candidates),
                candidates[0].describe(),
            )
        return candidates

    async def _resolve(self, frame: Any, token: str, ref: int) -> Any | None:
        try:
            handle = await frame.evaluate_handle(RESOLVE_REF_JS, [token, ref])
        except PlaywrightError as exc:
            if is_closed_error(exc):
                raise StaleContextError(str(exc)) from exc
            logger.debug("match_resolve_failed ref=%s reason=%s", ref, exc)
            return None
        element = handle.as_element()
        if element is None:
            await handle.dispose()
        return element
