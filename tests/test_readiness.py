import asyncio

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from healing_runner.agent.readiness import DOCUMENT_READY_JS, LOADING_GONE_JS, ReadinessGate


class FakeClock:
    def __init__(self, step=0.0):
        self.now = 0.0
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now


class FakeFrame:
    def __init__(self, fail=False):
        self.fail = fail
        self.waits = []

    async def wait_for_load_state(self, state, timeout=None):
        self.waits.append((state, timeout))
        if self.fail:
            raise PlaywrightTimeoutError("Timeout exceeded")


class FakePage:
    def __init__(self, frames=None, slow=(), closed=False):
        self.frames = frames or [FakeFrame()]
        self.slow = set(slow)
        self.closed = closed
        self.calls = []

    def is_closed(self):
        return self.closed

    async def wait_for_load_state(self, state, timeout=None):
        self.calls.append((state, timeout))
        if state in self.slow:
            raise PlaywrightTimeoutError("Timeout exceeded while waiting for networkidle")

    async def wait_for_function(self, script, arg=None, timeout=None, polling=None):
        name = "loading" if script == LOADING_GONE_JS else "ready" if script == DOCUMENT_READY_JS else script
        self.calls.append((name, timeout))
        if name in self.slow:
            raise PlaywrightTimeoutError("Timeout exceeded while waiting for function")


def _gate(clock=None):
    return ReadinessGate(
        network_idle_ms=15000,
        frame_load_ms=5000,
        loading_indicator_ms=8000,
        document_state_ms=3000,
        clock=clock or FakeClock(),
    )


def test_settled_page_runs_every_wait():
    page = FakePage(frames=[FakeFrame(), FakeFrame()])

    assert asyncio.run(_gate().await_settled(page, budget_ms=30000)) is True
    assert [name for name, _ in page.calls] == ["networkidle", "loading", "ready"]
    assert all(frame.waits == [("domcontentloaded", 5000)] for frame in page.frames)


def test_network_never_idle_is_not_an_error():
    page = FakePage(slow={"networkidle"})

    assert asyncio.run(_gate().await_settled(page, budget_ms=30000)) is False
    assert [name for name, _ in page.calls] == ["networkidle", "loading", "ready"]


def test_frame_timeout_does_not_abort_remaining_waits():
    page = FakePage(frames=[FakeFrame(fail=True), FakeFrame()])

    assert asyncio.run(_gate().await_settled(page)) is False
    assert page.frames[1].waits
    assert ("ready", 3000) in page.calls


def test_sub_waits_are_capped_by_remaining_budget():
    page = FakePage()

    asyncio.run(_gate().await_settled(page, budget_ms=4000))

    assert page.calls[0] == ("networkidle", 4000)
    assert page.frames[0].waits == [("domcontentloaded", 4000)]


def test_exhausted_budget_skips_waits():
    page = FakePage()
    clock = FakeClock(step=10.0)

    assert asyncio.run(_gate(clock).await_settled(page, budget_ms=5000)) is False
    assert page.calls == []


def test_closed_or_missing_page_returns_false():
    assert asyncio.run(_gate().await_settled(None)) is False
    assert asyncio.run(_gate().await_settled(FakePage(closed=True))) is False
