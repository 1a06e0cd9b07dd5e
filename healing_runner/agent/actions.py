from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from playwright.async_api import Error as PlaywrightError

from ..config import settings
from .dom_scanner import Candidate
from .errors import StaleContextError, is_closed_error
from .targets import Action

logger = logging.getLogger(__name__)

Technique = Callable[[Any, str], Awaitable[bool]]

PROBE_JS = """
(el) => {
  const rect = el.getBoundingClientRect();
  const style = (el.ownerDocument.defaultView || window).getComputedStyle(el);
  return {
    connected: el.isConnected,
    visible: el.isConnected && rect.width > 0 && rect.height > 0 &&
      style.visibility !== 'hidden' && style.display !== 'none',
  };
}
"""

NATIVE_CLICK_JS = """
(el) => {
  if (typeof el.focus === 'function') el.focus();
  el.click();
  return true;
}
"""

DISPATCH_CLICK_JS = """
(el) => {
  const view = el.ownerDocument.defaultView || window;
  const rect = el.getBoundingClientRect();
  const init = {
    bubbles: true, cancelable: true, composed: true, view,
    clientX: rect.left + rect.width / 2, clientY: rect.top + rect.height / 2, button: 0,
  };
  const Pointer = view.PointerEvent || view.MouseEvent;
  el.dispatchEvent(new Pointer('pointerdown', init));
  el.dispatchEvent(new view.MouseEvent('mousedown', init));
  el.dispatchEvent(new Pointer('pointerup', init));
  el.dispatchEvent(new view.MouseEvent('mouseup', init));
  el.dispatchEvent(new view.MouseEvent('click', init));
  return true;
}
"""

SET_VALUE_JS = """
(el, value) => {
  const view = el.ownerDocument.defaultView || window;
  const fire = (type) => el.dispatchEvent(new view.Event(type, { bubbles: true }));
  if (typeof el.focus === 'function') el.focus();
  el.dispatchEvent(new view.FocusEvent('focus'));
  if (el.isContentEditable) {
    el.textContent = value;
  } else {
    const proto = el.tagName === 'TEXTAREA' ? view.HTMLTextAreaElement.prototype : view.HTMLInputElement.prototype;
    const setter = Object.getOwnPropertyDescriptor(proto, 'value');
    if (setter && setter.set && (el instanceof view.HTMLInputElement || el instanceof view.HTMLTextAreaElement)) {
      setter.set.call(el, value);
    } else {
      el.value = value;
    }
  }
  fire('input');
  fire('change');
  el.dispatchEvent(new view.FocusEvent('blur'));
  const current = el.isContentEditable ? el.textContent : el.value;
  return current === value;
}
"""

CLEAR_JS = """
(el) => {
  if (el.isContentEditable) el.textContent = '';
  else if ('value' in el) el.value = '';
  return true;
}
"""

READ_VALUE_JS = "(el) => (el.isContentEditable ? el.textContent : el.value) || ''"

SELECT_OPTION_JS = """
(el, wanted) => {
  if (el.tagName !== 'SELECT') return false;
  const norm = (s) => (s || '').replace(/\\s+/g, ' ').trim().toLowerCase();
  const target = norm(wanted);
  const options = Array.from(el.options);
  const hit = options.find((o) => norm(o.text) === target || norm(o.value) === target) ||
    options.find((o) => norm(o.text).includes(target));
  if (!hit) return false;
  const view = el.ownerDocument.defaultView || window;
  el.value = hit.value;
  hit.selected = true;
  el.dispatchEvent(new view.Event('input', { bubbles: true }));
  el.dispatchEvent(new view.Event('change', { bubbles: true }));
  return true;
}
"""

PICK_LISTED_OPTION_JS = """
(el, wanted) => {
  const norm = (s) => (s || '').replace(/\\s+/g, ' ').trim().toLowerCase();
  const target = norm(wanted);
  const doc = el.ownerDocument;
  const view = doc.defaultView || window;
  const pool = Array.from(doc.querySelectorAll('[role=option], [role=menuitem], li, option'));
  const shown = (o) => { const r = o.getBoundingClientRect(); return r.width > 0 && r.height > 0; };
  const hit = pool.find((o) => shown(o) && norm(o.innerText || o.textContent) === target) ||
    pool.find((o) => shown(o) && norm(o.innerText || o.textContent).includes(target));
  if (!hit) return false;
  const init = { bubbles: true, cancelable: true, composed: true, view };
  for (const type of ['mousedown', 'mouseup', 'click']) hit.dispatchEvent(new view.MouseEvent(type, init));
  return true;
}
"""


@dataclass
class ActionOutcome:
    success: bool
    technique: Optional[str] = None
    attempts: List[str] = field(default_factory=list)
    error: Optional[str] = None


class ActionExecutor:
    """Runs a fixed chain of interaction techniques until one succeeds."""

    def __init__(
        self,
        technique_timeout_ms: int | None = None,
        settle_ms: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.timeout_ms = technique_timeout_ms if technique_timeout_ms is not None else settings.technique_timeout_ms
        self.settle_ms = settle_ms if settle_ms is not None else settings.action_settle_ms
        self._sleep = sleep
        self.strategies: Dict[Action, List[Tuple[str, Technique]]] = {
            Action.CLICK: [
                ("standard", self._click_standard),
                ("forced", self._click_forced),
                ("direct_mutation", self._click_native),
                ("event_dispatch", self._click_dispatch),
            ],
            Action.FILL: [
                ("standard", self._fill_standard),
                ("forced", self._fill_forced),
                ("direct_mutation", self._fill_direct),
                ("event_dispatch", self._fill_keyboard),
            ],
            Action.SELECT: [
                ("standard", self._select_standard),
                ("forced", self._select_forced),
                ("direct_mutation", self._select_direct),
                ("event_dispatch", self._select_listed),
            ],
        }

    async def perform(
        self,
        candidate: Candidate,
        action: Action,
        value: Optional[str] = None,
        allow_hidden: bool = False,
    ) -> ActionOutcome:
        strategies = self.strategies.get(action)
        if not strategies:
            raise ValueError(f"no interaction techniques for action {action.value}")

        handle = candidate.handle
        try:
            state = await handle.evaluate(PROBE_JS)
        except PlaywrightError as exc:
            if is_closed_error(exc):
                raise StaleContextError(f"candidate vanished before {action.value}: {exc}") from exc
            state = {"connected": True, "visible": candidate.node.visible}
        if not state.get("connected", True):
            raise StaleContextError(f"candidate detached before {action.value}")
        if not state.get("visible", True) and not allow_hidden:
            return ActionOutcome(success=False, error="hidden")

        text = "" if value is None else str(value)
        attempts: List[str] = []
        last_error: Optional[str] = None
        for name, technique in strategies:
            attempts.append(name)
            try:
                ok = await technique(handle, text)
            except PlaywrightError as exc:
                if is_closed_error(exc):
                    if action == Action.CLICK and self._owner_closed(candidate):
                        # the click closed its own window
                        logger.info("action_closed_window technique=%s target=%s", name, candidate.node.display_name)
                        return ActionOutcome(success=True, technique=name, attempts=attempts)
                    raise StaleContextError(str(exc)) from exc
                last_error = str(exc).splitlines()[0] if str(exc) else exc.__class__.__name__
                logger.debug("technique_failed action=%s technique=%s reason=%s", action.value, name, last_error)
                continue
            except Exception as exc:
                last_error = str(exc) or exc.__class__.__name__
                logger.debug("technique_failed action=%s technique=%s reason=%s", action.value, name, last_error)
                continue
            if not ok:
                last_error = f"{name} had no effect"
                continue
            logger.info(
                "action_succeeded action=%s technique=%s target=%s",
                action.value,
                name,
                candidate.node.display_name,
            )
            await self._sleep(self.settle_ms / 1000)
            return ActionOutcome(success=True, technique=name, attempts=attempts)

        return ActionOutcome(success=False, attempts=attempts, error=last_error or "all techniques failed")

    @staticmethod
    def _owner_closed(candidate: Candidate) -> bool:
        frame = candidate.context.frame
        try:
            return bool(frame.page.is_closed())
        except Exception:
            return False

    async def _click_standard(self, handle: Any, _value: str) -> bool:
        await handle.click(timeout=self.timeout_ms)
        return True

    async def _click_forced(self, handle: Any, _value: str) -> bool:
        await handle.click(timeout=self.timeout_ms, force=True)
        return True

    async def _click_native(self, handle: Any, _value: str) -> bool:
        return bool(await handle.evaluate(NATIVE_CLICK_JS))

    async def _click_dispatch(self, handle: Any, _value: str) -> bool:
        return bool(await handle.evaluate(DISPATCH_CLICK_JS))

    async def _fill_standard(self, handle: Any, value: str) -> bool:
        await handle.fill(value, timeout=self.timeout_ms)
        return True

    async def _fill_forced(self, handle: Any, value: str) -> bool:
        await handle.fill(value, timeout=self.timeout_ms, force=True)
        return True

    async def _fill_direct(self, handle: Any, value: str) -> bool:
        return bool(await handle.evaluate(SET_VALUE_JS, value))

    async def _fill_keyboard(self, handle: Any, value: str) -> bool:
        frame = await handle.owner_frame()
        if frame is None:
            return False
        await handle.focus()
        await handle.evaluate(CLEAR_JS)
        await frame.page.keyboard.type(value, delay=20)
        return (await handle.evaluate(READ_VALUE_JS)) == value

    async def _select_standard(self, handle: Any, value: str) -> bool:
        chosen = await handle.select_option(value, timeout=self.timeout_ms)
        return bool(chosen)

    async def _select_forced(self, handle: Any, value: str) -> bool:
        chosen = await handle.select_option(label=value, timeout=self.timeout_ms, force=True)
        return bool(chosen)

    async def _select_direct(self, handle: Any, value: str) -> bool:
        return bool(await handle.evaluate(SELECT_OPTION_JS, value))

    async def _select_listed(self, handle: Any, value: str) -> bool:
        await handle.click(timeout=self.timeout_ms, force=True)
        await self._sleep(0.3)
        return bool(await handle.evaluate(PICK_LISTED_OPTION_JS, value))
