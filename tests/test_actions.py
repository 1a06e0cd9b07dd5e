import asyncio

import pytest
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from healing_runner.agent.actions import (
    DISPATCH_CLICK_JS,
    NATIVE_CLICK_JS,
    PROBE_JS,
    READ_VALUE_JS,
    SELECT_OPTION_JS,
    SET_VALUE_JS,
    ActionExecutor,
)
from healing_runner.agent.contexts import SearchContext
from healing_runner.agent.dom_scanner import Candidate, MatchRank, NodeInfo
from healing_runner.agent.errors import StaleContextError
from healing_runner.agent.targets import Action


class FakeHandle:
    def __init__(self, connected=True, visible=True, fail=(), script_results=None, probe_error=None):
        self.connected = connected
        self.visible = visible
        self.fail = set(fail)
        self.script_results = script_results or {}
        self.probe_error = probe_error
        self.calls = []

    async def evaluate(self, script, arg=None):
        if script == PROBE_JS:
            if self.probe_error:
                raise self.probe_error
            return {"connected": self.connected, "visible": self.visible}
        self.calls.append(("evaluate", script, arg))
        if script in self.fail:
            raise PlaywrightError("Evaluation failed")
        return self.script_results.get(script, True)

    async def click(self, timeout=None, force=False):
        name = "click_forced" if force else "click"
        self.calls.append((name, timeout))
        if name in self.fail:
            raise PlaywrightTimeoutError("Timeout 3000ms exceeded: element is not visible")

    async def fill(self, value, timeout=None, force=False):
        name = "fill_forced" if force else "fill"
        self.calls.append((name, value))
        if name in self.fail:
            raise PlaywrightTimeoutError("Timeout 3000ms exceeded")

    async def select_option(self, value=None, label=None, timeout=None, force=False):
        name = "select_forced" if force else "select"
        self.calls.append((name, value or label))
        if name in self.fail:
            raise PlaywrightError("Element is not a <select> element")
        return [value or label]


class FakePage:
    def __init__(self, closed=False):
        self.closed = closed

    def is_closed(self):
        return self.closed


class FakeFrame:
    def __init__(self, page):
        self.page = page


def _candidate(handle, page=None, visible=True):
    ctx = SearchContext(window_id="w1", frame=FakeFrame(page or FakePage()), kind="document")
    return Candidate(
        handle=handle,
        context=ctx,
        rank=MatchRank.EXACT,
        node=NodeInfo(ref=0, tag="button", text="Submit", visible=visible),
        order=0,
        matched_on="text",
    )


def _executor(sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return ActionExecutor(technique_timeout_ms=100, settle_ms=800, sleep=fake_sleep)


def test_standard_click_succeeds_and_settles():
    sleeps = []
    handle = FakeHandle()

    outcome = asyncio.run(_executor(sleeps).perform(_candidate(handle), Action.CLICK))

    assert outcome.success is True
    assert outcome.technique == "standard"
    assert outcome.attempts == ["standard"]
    assert sleeps == [0.8]


def test_click_chain_falls_through_to_event_dispatch():
    sleeps = []
    handle = FakeHandle(fail={"click", "click_forced", NATIVE_CLICK_JS})

    outcome = asyncio.run(_executor(sleeps).perform(_candidate(handle), Action.CLICK))

    assert outcome.success is True
    assert outcome.technique == "event_dispatch"
    assert outcome.attempts == ["standard", "forced", "direct_mutation", "event_dispatch"]
    assert handle.calls[-1][1] == DISPATCH_CLICK_JS


def test_all_techniques_failing_reports_rejection():
    sleeps = []
    handle = FakeHandle(fail={"click", "click_forced", NATIVE_CLICK_JS, DISPATCH_CLICK_JS})

    outcome = asyncio.run(_executor(sleeps).perform(_candidate(handle), Action.CLICK))

    assert outcome.success is False
    assert len(outcome.attempts) == 4
    assert sleeps == []


def test_fill_direct_mutation_requires_value_to_stick():
    sleeps = []
    handle = FakeHandle(fail={"fill", "fill_forced"}, script_results={SET_VALUE_JS: True})

    outcome = asyncio.run(_executor(sleeps).perform(_candidate(handle), Action.FILL, "a@b.com"))

    assert outcome.success is True
    assert outcome.technique == "direct_mutation"
    assert ("evaluate", SET_VALUE_JS, "a@b.com") in handle.calls


def test_select_uses_option_lookup_when_driver_select_fails():
    sleeps = []
    handle = FakeHandle(fail={"select", "select_forced"}, script_results={SELECT_OPTION_JS: True})

    outcome = asyncio.run(_executor(sleeps).perform(_candidate(handle), Action.SELECT, "Canada"))

    assert outcome.success is True
    assert outcome.technique == "direct_mutation"


def test_hidden_candidate_is_rejected_unless_allowed():
    sleeps = []
    handle = FakeHandle(visible=False)
    executor = _executor(sleeps)

    refused = asyncio.run(executor.perform(_candidate(handle), Action.CLICK))
    allowed = asyncio.run(executor.perform(_candidate(handle), Action.CLICK, allow_hidden=True))

    assert refused.success is False and refused.error == "hidden"
    assert refused.attempts == []
    assert allowed.success is True


def test_detached_candidate_is_stale():
    handle = FakeHandle(connected=False)

    with pytest.raises(StaleContextError):
        asyncio.run(_executor([]).perform(_candidate(handle), Action.CLICK))


def test_closed_window_before_action_is_stale():
    handle = FakeHandle(probe_error=PlaywrightError("Target page, context or browser has been closed"))

    with pytest.raises(StaleContextError):
        asyncio.run(_executor([]).perform(_candidate(handle, page=FakePage(closed=True)), Action.CLICK))


def test_click_that_closes_its_own_window_counts_as_success():
    page = FakePage()

    class ClosingHandle(FakeHandle):
        async def click(self, timeout=None, force=False):
            page.closed = True
            raise PlaywrightError("Target page, context or browser has been closed")

    outcome = asyncio.run(_executor([]).perform(_candidate(ClosingHandle(), page=page), Action.CLICK))

    assert outcome.success is True
    assert outcome.technique == "standard"


def test_unsupported_action_raises():
    with pytest.raises(ValueError):
        asyncio.run(_executor([]).perform(_candidate(FakeHandle()), Action.VERIFY))


def test_fill_falls_back_to_keyboard_typing():
    class FakeKeyboard:
        def __init__(self):
            self.typed = []

        async def type(self, text, delay=None):
            self.typed.append(text)

    page = FakePage()
    page.keyboard = FakeKeyboard()

    class TypingHandle(FakeHandle):
        async def owner_frame(self):
            return FakeFrame(page)

        async def focus(self):
            self.calls.append(("focus", None))

    handle = TypingHandle(
        fail={"fill", "fill_forced"},
        script_results={SET_VALUE_JS: False, READ_VALUE_JS: "a@b.com"},
    )

    outcome = asyncio.run(_executor([]).perform(_candidate(handle, page=page), Action.FILL, "a@b.com"))

    assert outcome.success is True
    assert outcome.technique == "event_dispatch"
    assert page.keyboard.typed == ["a@b.com"]
    assert ("focus", None) in handle.calls
