from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from playwright.async_api import Error as PlaywrightError

from ..config import settings
from .capture import CaptureManager
from .errors import FatalSessionError, RunStoppedError
from .readiness import ReadinessGate
from .records import Instruction, StepResult, StepStatus
from .resolver import ResolutionOrchestrator, ResolutionState
from .run_state import RunState
from .targets import RESOLVED_ACTIONS, StepAction, TargetDescriptor, parse_step_action

logger = logging.getLogger(__name__)

VISIBLE_TEXT_JS = "() => (document.body ? document.body.innerText : '') || ''"

ResultCallback = Callable[[int, StepResult], None]


def _result(instruction: Instruction, status: StepStatus, remarks: str = "", actual: str = "") -> StepResult:
    return StepResult(
        step=instruction.step,
        action=instruction.action,
        target=instruction.target,
        status=status,
        remarks=remarks,
        actual_output=actual,
        row_number=instruction.row_number,
    )


class StepController:
    """Runs instructions one at a time and records a result for each."""

    def __init__(
        self,
        run_state: RunState,
        browser: Any,
        capture: CaptureManager,
        resolver: ResolutionOrchestrator | None = None,
        readiness: ReadinessGate | None = None,
        on_result: ResultCallback | None = None,
        step_delay_ms: int | None = None,
        open_retries: int | None = None,
        open_retry_delay_ms: int | None = None,
    ) -> None:
        self.run_state = run_state
        self.browser = browser
        self.capture = capture
        self.readiness = readiness or ReadinessGate()
        self.resolver = resolver or ResolutionOrchestrator(run_state, readiness=self.readiness)
        self.on_result = on_result
        self.step_delay_ms = step_delay_ms if step_delay_ms is not None else settings.step_delay_ms
        self.open_retries = open_retries if open_retries is not None else settings.open_retries
        self.open_retry_delay_ms = (
            open_retry_delay_ms if open_retry_delay_ms is not None else settings.open_retry_delay_ms
        )
        self._handlers: Dict[StepAction, Callable[[Instruction], Awaitable[StepResult]]] = {
            StepAction.OPEN: self._open,
            StepAction.CLICK: self._resolve,
            StepAction.FILL: self._resolve,
            StepAction.SELECT: self._resolve,
            StepAction.WAIT: self._wait,
            StepAction.VERIFY: self._verify,
            StepAction.SCREENSHOT: self._screenshot,
        }

    @property
    def windows(self):
        return self.run_state.windows

    async def run(self, instructions: List[Instruction]) -> List[StepResult]:
        self.run_state.total_steps = len(instructions)
        self.run_state.running = True
        results: List[StepResult] = []
        try:
            for index, instruction in enumerate(instructions, start=1):
                self.run_state.current_step_index = index
                try:
                    result = await self.execute_step(instruction)
                except FatalSessionError as exc:
                    logger.error("run_aborted step=%s reason=%s", instruction.step, exc)
                    result = _result(instruction, StepStatus.FAIL, f"Fatal: {exc}", "Browser session unusable")
                    result.failure_class = exc.failure_class.value
                    await self._attach_artifacts(result)
                    self._emit(index, result, results)
                    break

                self._emit(index, result, results)
                if result.status == StepStatus.STOPPED:
                    for rest_index, rest in enumerate(instructions[index:], start=index + 1):
                        self._emit(rest_index, _result(rest, StepStatus.STOPPED, "Not run: stop requested"), results)
                    break

                if index < len(instructions):
                    try:
                        await self.run_state.sleep(self.step_delay_ms)
                    except RunStoppedError:
                        for rest_index, rest in enumerate(instructions[index:], start=index + 1):
                            self._emit(
                                rest_index, _result(rest, StepStatus.STOPPED, "Not run: stop requested"), results
                            )
                        break
        finally:
            self.run_state.running = False
        return results

    async def execute_step(self, instruction: Instruction) -> StepResult:
        if not instruction.should_execute:
            logger.info("step_skipped step=%s flag=%s", instruction.step, instruction.execute)
            return _result(instruction, StepStatus.SKIPPED, "Execution flag not set")

        action = parse_step_action(instruction.action)
        if action is None:
            return _result(instruction, StepStatus.SKIPPED, f"Unknown action: {instruction.action}")

        logger.info("step_start step=%s action=%s target=%s", instruction.step, action.value, instruction.target)
        try:
            await self.run_state.checkpoint()
            result = await self._handlers[action](instruction)
        except RunStoppedError:
            result = _result(instruction, StepStatus.STOPPED, "Stopped by user")
        except FatalSessionError:
            raise
        except Exception as exc:
            logger.warning("step_error step=%s reason=%s", instruction.step, exc)
            result = _result(instruction, StepStatus.FAIL, str(exc) or exc.__class__.__name__, "Step raised an error")

        # a click may have opened or closed a window
        await self.windows.switch_to_most_recent_active()
        if result.status in (StepStatus.PASS, StepStatus.FAIL):
            await self._attach_artifacts(result)
        logger.info("step_done step=%s status=%s remarks=%s", instruction.step, result.status.value, result.remarks)
        return result

    def _emit(self, index: int, result: StepResult, results: List[StepResult]) -> None:
        results.append(result)
        if self.on_result is not None:
            try:
                self.on_result(index, result)
            except Exception as exc:
                logger.warning("result_callback_failed step=%s reason=%s", result.step, exc)

    async def _attach_artifacts(self, result: StepResult) -> None:
        try:
            result.screenshot, result.page_source = await self.capture.capture_artifacts(
                result.step, self.windows.active_page, failed=result.status == StepStatus.FAIL
            )
        except Exception as exc:
            logger.warning("artifact_capture_failed step=%s reason=%s", result.step, exc)

    async def _page(self) -> Any:
        page = self.windows.active_page
        if page is None:
            node = await self.windows.switch_to_most_recent_active()
            page = node.page if node is not None else None
        if page is None:
            raise FatalSessionError("no open browser window is available")
        return page

    async def _open(self, instruction: Instruction) -> StepResult:
        url = instruction.target or instruction.data
        if not url:
            return _result(instruction, StepStatus.FAIL, "No URL given")
        last_error = ""
        for attempt in range(1, self.open_retries + 1):
            await self.run_state.checkpoint()
            page = await self._page()
            try:
                logger.info("navigation_attempt url=%s attempt=%s/%s", url, attempt, self.open_retries)
                await self.browser.goto(page, url)
                await self.windows.switch_to_most_recent_active()
                await self.readiness.await_settled(await self._page())
                return _result(instruction, StepStatus.PASS, f"Opened on attempt {attempt}", f"Opened: {url}")
            except PlaywrightError as exc:
                last_error = str(exc).splitlines()[0] if str(exc) else exc.__class__.__name__
                logger.warning("navigation_failed url=%s attempt=%s reason=%s", url, attempt, last_error)
                if attempt < self.open_retries:
                    await self.run_state.sleep(self.open_retry_delay_ms)
        return _result(instruction, StepStatus.FAIL, last_error, f"Failed to open: {url}")

    async def _resolve(self, instruction: Instruction) -> StepResult:
        step_action = parse_step_action(instruction.action)
        action = RESOLVED_ACTIONS[step_action]
        if not instruction.target.strip():
            return _result(instruction, StepStatus.FAIL, "No target given")
        descriptor = TargetDescriptor(
            target=instruction.target,
            action=action,
            value=instruction.data if step_action != StepAction.CLICK else None,
        )
        outcome = await self.resolver.resolve(descriptor)
        if outcome.status == ResolutionState.STOPPED:
            return _result(instruction, StepStatus.STOPPED, outcome.remark)
        if outcome.success:
            shown = instruction.data if step_action == StepAction.SELECT else instruction.target
            verb = {StepAction.CLICK: "Clicked", StepAction.FILL: "Filled", StepAction.SELECT: "Selected"}[step_action]
            return _result(instruction, StepStatus.PASS, outcome.remark, f"{verb}: {shown}")
        result = _result(instruction, StepStatus.FAIL, outcome.remark, f"Failed to {action.value}: {instruction.target}")
        result.failure_class = outcome.failure.value if outcome.failure else None
        return result

    async def _wait(self, instruction: Instruction) -> StepResult:
        raw = instruction.data or instruction.target or "1000"
        try:
            ms = int(float(raw))
        except ValueError:
            return _result(instruction, StepStatus.FAIL, f"Invalid wait duration: {raw}")
        await self.run_state.sleep(ms)
        return _result(instruction, StepStatus.PASS, "", f"Waited {ms} ms")

    async def _verify(self, instruction: Instruction) -> StepResult:
        expected = instruction.data or instruction.target
        if not expected:
            return _result(instruction, StepStatus.FAIL, "Nothing to verify")
        page = await self._page()
        needle = " ".join(expected.split()).lower()
        for frame in self._frames(page):
            await self.run_state.checkpoint()
            try:
                html = await frame.content()
                text = await frame.evaluate(VISIBLE_TEXT_JS)
            except PlaywrightError as exc:
                logger.debug("verify_frame_skipped reason=%s", exc)
                continue
            if expected in html or needle in " ".join(str(text).split()).lower():
                return _result(instruction, StepStatus.PASS, "", f"Verified: {expected}")
        return _result(instruction, StepStatus.FAIL, "Text not found on page", f"Missing: {expected}")

    async def _screenshot(self, instruction: Instruction) -> StepResult:
        await self._page()
        return _result(instruction, StepStatus.PASS, "", "Screenshot captured")

    @staticmethod
    def _frames(page: Any) -> List[Any]:
        try:
            main = page.main_frame
            return [main] + [f for f in page.frames if f is not main]
        except Exception:
            return []
