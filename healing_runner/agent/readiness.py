from __future__ import annotations

import logging
import time
from typing import Any, Callable

from playwright.async_api import Error as PlaywrightError

from ..config import settings

logger = logging.getLogger(__name__)

LOADING_SELECTOR = (
    '[class*="loading"], [class*="spinner"], [id*="loading"], [id*="spinner"], '
    '[data-testid*="loading"], [aria-busy="true"], .loader, .progress'
)

LOADING_GONE_JS = """
(selector) => {
  for (const el of document.querySelectorAll(selector)) {
    const rect = el.getBoundingClientRect();
    const style = window.getComputedStyle(el);
    if (rect.width > 0 && rect.height > 0 && style.display !== 'none' && style.visibility !== 'hidden') {
      return false;
    }
  }
  return true;
}
"""

DOCUMENT_READY_JS = "() => document.readyState !== 'loading'"


class ReadinessGate:
    """Best-effort wait for a window to settle. Never raises."""

    def __init__(
        self,
        network_idle_ms: int | None = None,
        frame_load_ms: int | None = None,
        loading_indicator_ms: int | None = None,
        document_state_ms: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.network_idle_ms = network_idle_ms if network_idle_ms is not None else settings.network_idle_timeout_ms
        self.frame_load_ms = frame_load_ms if frame_load_ms is not None else settings.frame_load_timeout_ms
        self.loading_indicator_ms = (
            loading_indicator_ms if loading_indicator_ms is not None else settings.loading_indicator_timeout_ms
        )
        self.document_state_ms = document_state_ms if document_state_ms is not None else settings.document_state_timeout_ms
        self._clock = clock

    async def await_settled(self, page: Any, budget_ms: int | None = None) -> bool:
        """Return True when every sub-wait finished inside its own timeout."""
        budget_ms = budget_ms if budget_ms is not None else settings.readiness_budget_ms
        try:
            if page is None or page.is_closed():
                return False
        except Exception:
            return False

        deadline = self._clock() + budget_ms / 1000
        settled = True

        if not await self._bounded(
            "network_idle",
            deadline,
            self.network_idle_ms,
            lambda t: page.wait_for_load_state("networkidle", timeout=t),
        ):
            settled = False

        try:
            frames = list(page.frames)
        except Exception:
            frames = []
        for frame in frames:
            if not await self._bounded(
                "frame_load",
                deadline,
                self.frame_load_ms,
                lambda t, f=frame: f.wait_for_load_state("domcontentloaded", timeout=t),
            ):
                settled = False

        if not await self._bounded(
            "loading_indicators",
            deadline,
            self.loading_indicator_ms,
            lambda t: page.wait_for_function(LOADING_GONE_JS, arg=LOADING_SELECTOR, timeout=t, polling=250),
        ):
            settled = False

        if not await self._bounded(
            "document_state",
            deadline,
            self.document_state_ms,
            lambda t: page.wait_for_function(DOCUMENT_READY_JS, timeout=t),
        ):
            settled = False

        return settled

    async def _bounded(self, name: str, deadline: float, sub_timeout_ms: int, wait) -> bool:
        remaining_ms = int((deadline - self._clock()) * 1000)
        timeout = min(sub_timeout_ms, remaining_ms)
        if timeout <= 0:
            logger.debug("readiness_budget_exhausted wait=%s", name)
            return False
        try:
            await wait(timeout)
            return True
        except PlaywrightError as exc:
            logger.debug("readiness_wait_incomplete wait=%s reason=%s", name, str(exc).splitlines()[0] if str(exc) else exc)
            return False
        except Exception as exc:
            logger.warning("readiness_wait_error wait=%s reason=%s", name, exc)
            return False
