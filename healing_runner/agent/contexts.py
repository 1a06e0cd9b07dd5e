from __future__ import annotations

import logging
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, List, Literal, Optional, Tuple

from playwright.async_api import Error as PlaywrightError

from ..config import settings
from .errors import StaleContextError, is_closed_error
from .windows import WindowNode

logger = logging.getLogger(__name__)

ContextKind = Literal["overlay", "document", "frame", "shadow", "deep"]

# overlay and shadow registries kept per document; older enumerations are dropped
REGISTRY_KEEP = 8


@dataclass(frozen=True)
class SearchContext:
    """One searchable scope inside a window.

    ``frame`` is the Playwright frame whose document holds the scope. Overlay
    and shadow scopes are addressed by their index in the per-document
    registries the enumerator leaves on ``window`` so they can be queried again
    later without keeping element handles alive. ``registry`` names the
    enumeration that filled those registries, so a later enumeration of the
    same document never reindexes this context's roots.
    """

    window_id: str
    frame: Any
    kind: ContextKind
    frame_path: Tuple[int, ...] = ()
    root_index: Optional[int] = None
    depth: int = 0
    registry: Optional[str] = None

    @property
    def scope(self) -> dict:
        return {"kind": self.kind, "index": self.root_index, "registry": self.registry}

    def describe(self) -> str:
        if self.kind == "overlay":
            return f"overlay #{(self.root_index or 0) + 1} of window {self.window_id}"
        if self.kind == "shadow":
            return f"shadow root depth {self.depth} of window {self.window_id}"
        if self.kind == "deep":
            return f"deep scan of window {self.window_id}"
        if self.kind == "frame":
            path = "/".join(str(i) for i in self.frame_path)
            return f"frame depth {self.depth} (path {path}) of window {self.window_id}"
        return f"main document of window {self.window_id}"


_KEEP_REGISTRY_JS = r"""
  const keep = (name, value) => {
    const store = window[name] = window[name] || {};
    store[opts.registry] = value;
    const keys = Object.keys(store);
    for (const key of keys.slice(0, Math.max(0, keys.length - opts.keep))) delete store[key];
  };
"""

OVERLAY_ROOTS_JS = (
    "(opts) => {\n"
    + _KEEP_REGISTRY_JS
    + r"""
  const found = [];
  const classHint = /(modal|overlay|dialog|popup)/i;
  const shown = (el) => {
    const rect = el.getBoundingClientRect();
    const style = window.getComputedStyle(el);
    return rect.width > 0 && rect.height > 0 &&
      style.display !== 'none' && style.visibility !== 'hidden' && style.opacity !== '0';
  };
  for (const el of document.querySelectorAll('body *')) {
    if (found.some((root) => root.contains(el))) continue;
    if (!shown(el)) continue;
    const role = (el.getAttribute('role') || '').toLowerCase();
    const cls = typeof el.className === 'string' ? el.className : (el.getAttribute('class') || '');
    const style = window.getComputedStyle(el);
    const rect = el.getBoundingClientRect();
    const z = parseInt(style.zIndex, 10);
    const byRole = role === 'dialog' || role === 'alertdialog' ||
      el.getAttribute('aria-modal') === 'true' || (el.tagName === 'DIALOG' && el.open);
    const byClass = classHint.test(cls);
    const byLayer = (style.position === 'fixed' || style.position === 'absolute') &&
      !Number.isNaN(z) && z >= opts.minZ &&
      rect.width >= opts.minWidth && rect.height >= opts.minHeight;
    if (byRole || byClass || byLayer) found.push(el);
  }
  keep('__healOverlays', found);
  return found.length;
}
"""
)

SHADOW_ROOTS_JS = (
    "(opts) => {\n"
    + _KEEP_REGISTRY_JS
    + r"""
  const maxDepth = opts.maxDepth;
  const roots = [];
  const depths = [];
  const queue = [[document, 0]];
  while (queue.length) {
    const [scope, depth] = queue.shift();
    if (depth >= maxDepth) continue;
    for (const el of scope.querySelectorAll('*')) {
      if (el.shadowRoot) {
        roots.push(el.shadowRoot);
        depths.push(depth + 1);
        queue.push([el.shadowRoot, depth + 1]);
      }
    }
  }
  keep('__healShadowRoots', roots);
  return depths;
}
"""
)


class ContextEnumerator:
    def __init__(
        self,
        max_frames: int | None = None,
        max_shadow_depth: int | None = None,
        overlay_min_width: int | None = None,
        overlay_min_height: int | None = None,
        overlay_min_z_index: int | None = None,
    ) -> None:
        self.max_frames = max_frames if max_frames is not None else settings.max_frames
        self.max_shadow_depth = max_shadow_depth if max_shadow_depth is not None else settings.max_shadow_depth
        self.overlay_opts = {
            "minWidth": overlay_min_width if overlay_min_width is not None else settings.overlay_min_width,
            "minHeight": overlay_min_height if overlay_min_height is not None else settings.overlay_min_height,
            "minZ": overlay_min_z_index if overlay_min_z_index is not None else settings.overlay_min_z_index,
        }

    async def enumerate(self, window: WindowNode) -> List[SearchContext]:
        """Overlays, main document, frames (breadth-first, capped), then shadow roots."""
        if window.closed:
            raise StaleContextError(f"window {window.id} is closed")
        main = window.page.main_frame
        contexts: List[SearchContext] = []
        registry = uuid.uuid4().hex
        contexts.extend(await self.overlays(window, registry))
        contexts.append(SearchContext(window_id=window.id, frame=main, kind="document"))
        contexts.extend(await self.frames(window))
        contexts.extend(await self.shadow_roots(window, registry))
        return contexts

    async def overlays(self, window: WindowNode, registry: str | None = None) -> List[SearchContext]:
        main = window.page.main_frame
        registry = registry or uuid.uuid4().hex
        opts = {**self.overlay_opts, "registry": registry, "keep": REGISTRY_KEEP}
        try:
            count = await main.evaluate(OVERLAY_ROOTS_JS, opts)
        except PlaywrightError as exc:
            if is_closed_error(exc):
                raise StaleContextError(str(exc)) from exc
            logger.debug("overlay_scan_failed window=%s reason=%s", window.id, exc)
            return []
        return [
            SearchContext(window_id=window.id, frame=main, kind="overlay", root_index=i, registry=registry)
            for i in range(int(count or 0))
        ]

    async def frames(self, window: WindowNode) -> List[SearchContext]:
        main = window.page.main_frame
        found: List[SearchContext] = []
        queue: deque[tuple[Any, Tuple[int, ...]]] = deque(
            (child, (i,)) for i, child in enumerate(main.child_frames)
        )
        examined = 0
        while queue and examined < self.max_frames:
            frame, path = queue.popleft()
            examined += 1
            # children of an unreachable frame may still be reachable
            queue.extend((child, path + (i,)) for i, child in enumerate(frame.child_frames))
            if frame.is_detached():
                continue
            try:
                await frame.evaluate("() => true")
            except PlaywrightError as exc:
                logger.debug("frame_skipped window=%s path=%s reason=%s", window.id, path, exc)
                continue
            found.append(
                SearchContext(window_id=window.id, frame=frame, kind="frame", frame_path=path, depth=len(path))
            )
        if queue:
            logger.info("frame_cap_reached window=%s cap=%s skipped=%s", window.id, self.max_frames, len(queue))
        return found

    async def shadow_roots(self, window: WindowNode, registry: str | None = None) -> List[SearchContext]:
        main = window.page.main_frame
        registry = registry or uuid.uuid4().hex
        opts = {"maxDepth": self.max_shadow_depth, "registry": registry, "keep": REGISTRY_KEEP}
        try:
            depths = await main.evaluate(SHADOW_ROOTS_JS, opts)
        except PlaywrightError as exc:
            if is_closed_error(exc):
                raise StaleContextError(str(exc)) from exc
            logger.debug("shadow_scan_failed window=%s reason=%s", window.id, exc)
            return []
        return [
            SearchContext(
                window_id=window.id, frame=main, kind="shadow", root_index=i, depth=int(depth), registry=registry
            )
            for i, depth in enumerate(depths or [])
        ]
