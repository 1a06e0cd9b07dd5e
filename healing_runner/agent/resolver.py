from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from ..config import settings
from .actions import ActionExecutor, ActionOutcome
from .contexts import ContextEnumerator, SearchContext
from .dom_scanner import Candidate, ElementMatcher, MatchRank
from .errors import FailureClass, FatalSessionError, RunStoppedError, StaleContextError
from .readiness import ReadinessGate
from .run_state import RunState
from .targets import Action, TargetDescriptor
from .windows import WindowNode, plan_window_order

logger = logging.getLogger(__name__)


class SearchPhase(str, Enum):
    OVERLAY = "overlay"
    DOCUMENT = "document"
    DEEP_SCAN = "deep_scan"
    OTHER_WINDOWS = "other_windows"


SEARCH_PHASES: Tuple[SearchPhase, ...] = (
    SearchPhase.OVERLAY,
    SearchPhase.DOCUMENT,
    SearchPhase.DEEP_SCAN,
    SearchPhase.OTHER_WINDOWS,
)


class ResolutionState(str, Enum):
    SEARCHING = "searching"
    FOUND = "found"
    ACTING = "acting"
    DONE = "done"
    EXHAUSTED = "exhausted"
    FAILED = "failed"
    STOPPED = "stopped"


_VERBS = {Action.CLICK: "Clicked", Action.FILL: "Filled", Action.SELECT: "Selected"}


@dataclass
class ResolutionOutcome:
    descriptor: TargetDescriptor
    status: ResolutionState
    candidate: Optional[Candidate] = None
    technique: Optional[str] = None
    phase: Optional[SearchPhase] = None
    attempts: int = 0
    failure: Optional[FailureClass] = None
    states: List[ResolutionState] = field(default_factory=list)
    window_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == ResolutionState.DONE

    @property
    def remark(self) -> str:
        target = self.descriptor.text
        if self.status == ResolutionState.DONE and self.candidate is not None:
            verb = _VERBS.get(self.descriptor.action, "Resolved")
            text = f"{verb} '{target}' via {self.technique} in {self.candidate.context.describe()}"
            if self.attempts > 1:
                text += f" on attempt {self.attempts}"
            return text
        if self.status == ResolutionState.STOPPED:
            return "Stopped by user"
        if self.failure == FailureClass.STALE:
            return f"Window or element went stale while resolving '{target}'"
        if self.failure == FailureClass.ACTION_REJECTED:
            return f"Found '{target}' but every interaction technique failed"
        return f"No element matching '{target}' found after {self.attempts} attempts"


@dataclass
class _Hit:
    candidate: Candidate
    outcome: ActionOutcome
    phase: SearchPhase


class ResolutionOrchestrator:
    """Finds the described element across windows and contexts and acts on it.

    Each attempt walks SEARCH_PHASES in order. Attempts repeat, with a short
    poll for dynamically created content in between, until one succeeds or
    the retry budget is spent.
    """

    def __init__(
        self,
        run_state: RunState,
        enumerator: ContextEnumerator | None = None,
        matcher: ElementMatcher | None = None,
        executor: ActionExecutor | None = None,
        readiness: ReadinessGate | None = None,
        retries: int | None = None,
        dynamic_wait_ms: int | None = None,
        dynamic_poll_ms: int | None = None,
        readiness_budget_ms: int | None = None,
    ) -> None:
        self.run_state = run_state
        self.enumerator = enumerator or ContextEnumerator()
        self.matcher = matcher or ElementMatcher()
        self.executor = executor or ActionExecutor()
        self.readiness = readiness or ReadinessGate()
        self.retries = retries if retries is not None else settings.action_retries
        self.dynamic_wait_ms = dynamic_wait_ms if dynamic_wait_ms is not None else settings.dynamic_wait_ms
        self.dynamic_poll_ms = dynamic_poll_ms if dynamic_poll_ms is not None else settings.dynamic_poll_ms
        self.readiness_budget_ms = (
            readiness_budget_ms if readiness_budget_ms is not None else settings.readiness_budget_ms
        )
        self._rejected = False

    @property
    def windows(self):
        return self.run_state.windows

    async def resolve(self, descriptor: TargetDescriptor, retries: int | None = None) -> ResolutionOutcome:
        retries = max(1, retries if retries is not None else self.retries)
        outcome = ResolutionOutcome(descriptor=descriptor, status=ResolutionState.SEARCHING)
        stale_seen = False
        self._rejected = False
        settled_window: WindowNode | None = None

        try:
            for attempt in range(1, retries + 1):
                outcome.attempts = attempt
                outcome.states.append(ResolutionState.SEARCHING)
                await self.run_state.checkpoint()
                window = await self._current_window()
                if window is not settled_window:
                    await self.readiness.await_settled(window.page, self.readiness_budget_ms)
                    settled_window = window

                try:
                    hit = await self._attempt(window, descriptor, outcome)
                except StaleContextError as exc:
                    stale_seen = True
                    logger.warning(
                        "resolution_stale target=%s attempt=%s window=%s reason=%s",
                        descriptor.text,
                        attempt,
                        window.id,
                        exc,
                    )
                    await self.windows.switch_to_most_recent_active()
                    continue

                if hit is not None:
                    outcome.status = ResolutionState.DONE
                    outcome.states.append(ResolutionState.DONE)
                    outcome.candidate = hit.candidate
                    outcome.technique = hit.outcome.technique
                    outcome.phase = hit.phase
                    outcome.window_id = hit.candidate.context.window_id
                    logger.info(
                        "resolution_done target=%s phase=%s technique=%s attempt=%s where=%s",
                        descriptor.text,
                        hit.phase.value,
                        hit.outcome.technique,
                        attempt,
                        hit.candidate.context.describe(),
                    )
                    return outcome

                logger.info("resolution_attempt_missed target=%s attempt=%s/%s", descriptor.text, attempt, retries)
                if attempt < retries:
                    await self._wait_for_dynamic_content(descriptor)
        except RunStoppedError:
            outcome.status = ResolutionState.STOPPED
            outcome.states.append(ResolutionState.STOPPED)
            return outcome

        outcome.states.extend([ResolutionState.EXHAUSTED, ResolutionState.FAILED])
        outcome.status = ResolutionState.FAILED
        if stale_seen:
            outcome.failure = FailureClass.STALE
        elif self._rejected:
            outcome.failure = FailureClass.ACTION_REJECTED
        else:
            outcome.failure = FailureClass.NOT_FOUND
        logger.warning(
            "resolution_failed target=%s attempts=%s failure=%s",
            descriptor.text,
            outcome.attempts,
            outcome.failure.value,
        )
        return outcome

    async def _current_window(self) -> WindowNode:
        tracker = self.windows
        priority = tracker.priority_window
        if priority is not None:
            tracker.focus(priority)
        active = tracker.active
        if active is None or active.closed:
            active = await tracker.switch_to_most_recent_active()
        if active is None:
            raise FatalSessionError("no open browser window is available")
        return active

    async def _attempt(
        self, window: WindowNode, descriptor: TargetDescriptor, outcome: ResolutionOutcome
    ) -> Optional[_Hit]:
        contexts = await self._contexts(window)
        overlays = [c for c in contexts if c.kind == "overlay"]
        documents = [c for c in contexts if c.kind != "overlay"]

        for phase in SEARCH_PHASES:
            await self.run_state.checkpoint()
            if phase == SearchPhase.OVERLAY:
                hit = await self._search_contexts(overlays, descriptor, outcome, phase)
            elif phase == SearchPhase.DOCUMENT:
                hit = await self._search_contexts(documents, descriptor, outcome, phase)
            elif phase == SearchPhase.DEEP_SCAN:
                candidates = await self._deep_scan(window, descriptor)
                hit = await self._act(candidates, descriptor, outcome, phase)
            else:
                if len(self.windows.active_windows()) <= 1:
                    continue
                hit = await self._search_other_windows(window, descriptor, outcome)
            if hit is not None:
                return hit
        return None

    async def _contexts(self, window: WindowNode) -> List[SearchContext]:
        async with self.run_state.dom_lock:
            return await self.enumerator.enumerate(window)

    async def _match(self, context: SearchContext, descriptor: TargetDescriptor) -> List[Candidate]:
        async with self.run_state.dom_lock:
            return await self.matcher.match(context, descriptor)

    async def _deep_scan(self, window: WindowNode, descriptor: TargetDescriptor) -> List[Candidate]:
        async with self.run_state.dom_lock:
            return await self.matcher.deep_scan(window, descriptor)

    async def _search_contexts(
        self,
        contexts: List[SearchContext],
        descriptor: TargetDescriptor,
        outcome: ResolutionOutcome,
        phase: SearchPhase,
    ) -> Optional[_Hit]:
        """Act on exact matches as soon as a context yields one; weaker matches
        from every context are tried afterwards, best rank first."""
        deferred: List[Tuple[int, Candidate]] = []
        for position, context in enumerate(contexts):
            await self.run_state.checkpoint()
            candidates = await self._match(context, descriptor)
            exact = [c for c in candidates if c.rank == MatchRank.EXACT]
            if exact:
                hit = await self._act(exact, descriptor, outcome, phase)
                if hit is not None:
                    return hit
            deferred.extend((position, c) for c in candidates if c.rank != MatchRank.EXACT)

        if not deferred:
            return None
        deferred.sort(key=lambda item: (item[1].rank, item[0], item[1].order))
        return await self._act([c for _, c in deferred], descriptor, outcome, phase)

    async def _act(
        self,
        candidates: List[Candidate],
        descriptor: TargetDescriptor,
        outcome: ResolutionOutcome,
        phase: SearchPhase,
    ) -> Optional[_Hit]:
        if not candidates:
            return None
        outcome.states.append(ResolutionState.FOUND)
        hidden: List[Candidate] = []
        for candidate in candidates:
            await self.run_state.checkpoint()
            outcome.states.append(ResolutionState.ACTING)
            result = await self.executor.perform(candidate, descriptor.action, descriptor.value)
            if result.success:
                return _Hit(candidate=candidate, outcome=result, phase=phase)
            if result.error == "hidden":
                hidden.append(candidate)
                continue
            self._rejected = True
            logger.info(
                "candidate_rejected target=%s candidate=%s tried=%s",
                descriptor.text,
                candidate.describe(),
                ",".join(result.attempts),
            )

        for candidate in hidden:
            await self.run_state.checkpoint()
            outcome.states.append(ResolutionState.ACTING)
            result = await self.executor.perform(candidate, descriptor.action, descriptor.value, allow_hidden=True)
            if result.success:
                return _Hit(candidate=candidate, outcome=result, phase=phase)
            self._rejected = True
        return None

    async def _search_other_windows(
        self, current: WindowNode, descriptor: TargetDescriptor, outcome: ResolutionOutcome
    ) -> Optional[_Hit]:
        tracker = self.windows
        order = plan_window_order(tracker.nodes, tracker.latest, tracker.root, exclude=current)
        logger.debug("other_windows_order target=%s order=%s", descriptor.text, [n.id for n in order])
        for node in order:
            await self.run_state.checkpoint()
            try:
                await self.readiness.await_settled(node.page, min(5000, self.readiness_budget_ms))
                contexts = await self._contexts(node)
                hit = await self._search_contexts(contexts, descriptor, outcome, SearchPhase.OTHER_WINDOWS)
                if hit is None:
                    candidates = await self._deep_scan(node, descriptor)
                    hit = await self._act(candidates, descriptor, outcome, SearchPhase.OTHER_WINDOWS)
            except StaleContextError as exc:
                logger.info("other_window_stale window=%s reason=%s", node.id, exc)
                continue
            if hit is not None:
                tracker.focus(node)
                return hit
        return None

    async def _wait_for_dynamic_content(self, descriptor: TargetDescriptor) -> bool:
        tracker = self.windows
        pages = []
        for node in (tracker.priority_window, tracker.active):
            if node is not None and not node.closed and all(node.page is not p for p in pages):
                pages.append(node.page)

        await self.run_state.sleep(self.dynamic_poll_ms)
        if not pages:
            return False

        async def _target_present() -> bool:
            for page in pages:
                try:
                    frames = list(page.frames)[: self.enumerator.max_frames + 1]
                except Exception:
                    continue
                for frame in frames:
                    async with self.run_state.dom_lock:
                        present = await self.matcher.exists(frame, descriptor)
                    if present:
                        return True
            return False

        appeared = await self.run_state.poll_until(_target_present, self.dynamic_wait_ms, self.dynamic_poll_ms)
        logger.debug("dynamic_wait target=%s appeared=%s", descriptor.text, appeared)
        return appeared
