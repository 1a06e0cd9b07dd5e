import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, List, Optional

from ..config import settings
from ..models import SessionLocal, log_run_event
from ..storage.local_store import get_storage
from ..storage.workbook import load_instructions, write_results
from .browser import BrowserSession
from .capture import CaptureManager
from .contexts import ContextEnumerator
from .dom_scanner import ElementMatcher
from .errors import FailureClass
from .records import StepResult, StepStatus
from .run_state import RecentLogHandler, RunState
from .steps import StepController
from .windows import WindowHierarchyTracker


_run_lock: asyncio.Lock | None = None
_run_lock_loop: asyncio.AbstractEventLoop | None = None


def _get_run_lock() -> asyncio.Lock:
    """Ensure only one run executes per event loop.

    Every run drives the single shared window registry and run-control
    flags, so FastAPI must never start a second run while one is active. The
    lock is recreated if a new event loop is used (e.g., when calling from
    the CLI via asyncio.run).
    """

    global _run_lock, _run_lock_loop

    loop = asyncio.get_running_loop()
    if _run_lock is None or _run_lock_loop is not loop:
        _run_lock = asyncio.Lock()
        _run_lock_loop = loop

    return _run_lock


class RunInProgressError(RuntimeError):
    pass


class AutomationRunner:
    """Start/pause/resume/stop and status for spreadsheet-driven runs."""

    def __init__(
        self,
        browser_factory: Callable[[WindowHierarchyTracker], Any] = BrowserSession,
        session_factory: Callable[[], Any] = SessionLocal,
        storage_factory: Callable[[], Any] = get_storage,
        log_handler: RecentLogHandler | None = None,
    ) -> None:
        self.browser_factory = browser_factory
        self.session_factory = session_factory
        self.storage_factory = storage_factory
        self.run_state = RunState()
        self.browser: Any = None
        self.results: List[StepResult] = []
        self.current_run_id: Optional[str] = None
        self.results_path: Optional[Path] = None
        self._task: asyncio.Task | None = None
        self.log_handler = log_handler or RecentLogHandler()
        root_logger = logging.getLogger()
        if self.log_handler not in root_logger.handlers:
            root_logger.addHandler(self.log_handler)

    @property
    def running(self) -> bool:
        return self.run_state.running

    async def run(self, source_path: str | Path) -> List[StepResult]:
        lock = _get_run_lock()
        if lock.locked():
            raise RunInProgressError("a run is already in progress")

        async with lock:
            if not self.run_state.running:
                # called directly rather than through start()
                self.run_state.reset()
            try:
                instructions = load_instructions(source_path)
            except Exception:
                self.run_state.running = False
                raise
            self.run_state.windows = WindowHierarchyTracker()
            self.run_state.total_steps = len(instructions)
            self.results = []
            db = self.session_factory()
            try:
                capture = CaptureManager(db_session=db, storage=self.storage_factory())
                run = capture.start_run(str(source_path), len(instructions))
                self.current_run_id = str(run.id)
                log_run_event(db, run, "info", f"run_started source={source_path} steps={len(instructions)}")

                def _record(index: int, result: StepResult) -> None:
                    active = self.run_state.windows.active_page
                    capture.record_step(run, index, result, url=getattr(active, "url", None))
                    level = "warning" if result.status == StepStatus.FAIL else "info"
                    log_run_event(
                        db,
                        run,
                        level,
                        f"step={result.step} action={result.action} status={result.status.value} remarks={result.remarks}",
                    )

                self.browser = self.browser_factory(self.run_state.windows)
                try:
                    await self.browser.start()
                    controller = StepController(self.run_state, self.browser, capture, on_result=_record)
                    self.results = await controller.run(instructions)
                except Exception as exc:
                    capture.finish_run(run, "failed", str(exc))
                    log_run_event(db, run, "error", f"run_failed reason={exc}")
                    raise
                finally:
                    for line in self.run_state.windows.hierarchy_lines():
                        logging.info("window_tree %s", line)
                    await self.browser.close()
                    self.browser = None

                status, reason = self._final_status(self.results)
                try:
                    self.results_path = write_results(source_path, self.results)
                except Exception as exc:
                    logging.warning("results_write_failed reason=%s", exc)
                capture.finish_run(run, status, reason)
                log_run_event(db, run, "info", f"run_finished status={status}")
                return self.results
            finally:
                self.run_state.running = False
                db.close()

    @staticmethod
    def _final_status(results: List[StepResult]) -> tuple[str, Optional[str]]:
        if any(r.failure_class == FailureClass.FATAL.value for r in results):
            return "aborted", "browser session unusable"
        if any(r.status == StepStatus.STOPPED for r in results):
            return "stopped", "stop_requested"
        return "finished", None

    def start(self, source_path: str | Path) -> asyncio.Task:
        """Schedule a run in the background on the running loop."""
        if self.running or (self._task is not None and not self._task.done()):
            raise RunInProgressError("a run is already in progress")
        # reset before scheduling so a stop() issued right after start() is kept
        self.run_state.reset()
        self._task = asyncio.create_task(self.run(source_path))
        self._task.add_done_callback(self._log_task_result)
        return self._task

    @staticmethod
    def _log_task_result(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logging.error("run_crashed reason=%s", exc)

    def run_blocking(self, source_path: str | Path) -> List[StepResult]:
        """Synchronous wrapper for CLI usage."""

        return asyncio.run(self.run(source_path))

    def pause(self) -> None:
        self.run_state.pause()

    def resume(self) -> None:
        self.run_state.resume()

    def stop(self) -> None:
        self.run_state.stop()

    def status(self) -> dict:
        return {
            "currentStep": self.run_state.current_step_index,
            "totalSteps": self.run_state.total_steps,
            "running": self.run_state.running,
            "paused": self.run_state.paused,
            "stopped": self.run_state.stopped,
            "runId": self.current_run_id,
            "recentLogLines": self.log_handler.recent(50),
        }

    async def list_current_elements(self, limit: int | None = None) -> List[dict]:
        limit = limit or settings.max_listed_elements
        window = self.run_state.windows.active
        if window is None or window.closed:
            window = await self.run_state.windows.switch_to_most_recent_active()
        if window is None:
            return []
        enumerator = ContextEnumerator()
        matcher = ElementMatcher()
        items: List[dict] = []
        async with self.run_state.dom_lock:
            for context in await enumerator.enumerate(window):
                if context.kind == "overlay":
                    # overlay members are listed again as part of the document
                    continue
                items.extend(await matcher.inventory(context, limit - len(items)))
                if len(items) >= limit:
                    break
        return items[:limit]


_runner: AutomationRunner | None = None


def get_runner() -> AutomationRunner:
    global _runner
    if _runner is None:
        _runner = AutomationRunner()
    return _runner
