import asyncio
import logging

import pytest
from openpyxl import Workbook, load_workbook

from healing_runner.agent.contexts import OVERLAY_ROOTS_JS, SHADOW_ROOTS_JS
from healing_runner.agent.orchestrator import AutomationRunner, RunInProgressError
from healing_runner.agent.records import StepStatus
from healing_runner.agent.run_state import RecentLogHandler
from healing_runner.models import Run


class DummySession:
    def __init__(self):
        self.added = []

    def add(self, obj):
        self.added.append(obj)

    def commit(self):
        return None

    def refresh(self, obj, *_args, **_kwargs):
        return obj

    def close(self):
        return None


class DummyStorage:
    def save_bytes(self, key, data):
        return f"RESULTS/{key}"


class FakeFrame:
    async def content(self):
        return "<html><body><h1>Welcome back</h1></body></html>"

    async def evaluate(self, _script, _arg=None):
        return "Welcome back"


class FakePage:
    url = "https://shop.example/"

    def __init__(self):
        self.main_frame = FakeFrame()
        self.frames = [self.main_frame]
        self.closed = False

    def is_closed(self):
        return self.closed

    def on(self, *_args):
        return None

    async def bring_to_front(self):
        return None

    async def wait_for_load_state(self, state, timeout=None):
        return None

    async def title(self):
        return "Shop"

    async def screenshot(self, full_page=True):
        return b"png"

    async def content(self):
        return await self.main_frame.content()


class FakeBrowserSession:
    instances = []

    def __init__(self, tracker):
        self.tracker = tracker
        self.page = FakePage()
        self.closed = False
        FakeBrowserSession.instances.append(self)

    async def start(self):
        self.tracker.register_root(self.page)
        return self.page

    async def close(self):
        self.closed = True


def _workbook(path, rows):
    wb = Workbook()
    ws = wb.active
    ws.append(["Step", "Action", "Target", "Data", "Execute"])
    for row in rows:
        ws.append(row)
    wb.save(path)
    return path


def _runner():
    return AutomationRunner(
        browser_factory=FakeBrowserSession,
        session_factory=DummySession,
        storage_factory=DummyStorage,
        log_handler=RecentLogHandler(capacity=50),
    )


def test_run_executes_sheet_and_writes_results(tmp_path, monkeypatch, caplog):
    caplog.set_level(logging.INFO)
    monkeypatch.chdir(tmp_path)
    source = _workbook(
        tmp_path / "steps.xlsx",
        [
            [1, "VERIFY", "", "Welcome back", "Yes"],
            [2, "WAIT", "", "10", "Yes"],
            [3, "CLICK", "Delete account", None, "No"],
        ],
    )
    runner = _runner()

    results = runner.run_blocking(source)

    assert [r.status for r in results] == [StepStatus.PASS, StepStatus.PASS, StepStatus.SKIPPED]
    assert results[0].screenshot == "RESULTS/screenshots/1.png"
    assert FakeBrowserSession.instances[-1].closed is True
    assert runner.running is False
    ws = load_workbook(runner.results_path).active
    assert [ws.cell(row=r, column=6).value for r in (2, 3, 4)] == ["PASS", "PASS", "SKIPPED"]
    status = runner.status()
    assert status["totalSteps"] == 3
    assert any("window_tree MAIN" in line for line in status["recentLogLines"])


def test_final_status_reflects_stop_and_fatal():
    from healing_runner.agent.records import StepResult

    stopped = [StepResult(step="1", action="CLICK", target="A", status=StepStatus.STOPPED)]
    fatal = [StepResult(step="1", action="CLICK", target="A", status=StepStatus.FAIL, failure_class="fatal")]

    assert AutomationRunner._final_status(stopped) == ("stopped", "stop_requested")
    assert AutomationRunner._final_status(fatal)[0] == "aborted"
    assert AutomationRunner._final_status([])[0] == "finished"


def test_start_rejects_a_second_run(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    source = _workbook(tmp_path / "steps.xlsx", [[1, "WAIT", "", "10", "Yes"]])
    runner = _runner()

    async def scenario():
        task = runner.start(source)
        with pytest.raises(RunInProgressError):
            runner.start(source)
        return await task

    results = asyncio.run(scenario())

    assert [r.status for r in results] == [StepStatus.PASS]


def test_unreadable_workbook_does_not_leave_runner_busy(tmp_path):
    runner = _runner()

    with pytest.raises(FileNotFoundError):
        runner.run_blocking(tmp_path / "missing.xlsx")
    assert runner.running is False


def test_stop_right_after_start_stops_every_step(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    source = _workbook(
        tmp_path / "steps.xlsx",
        [
            [1, "WAIT", "", "10", "Yes"],
            [2, "VERIFY", "", "Welcome back", "Yes"],
        ],
    )
    runner = _runner()
    sessions = []

    def session_factory():
        sessions.append(DummySession())
        return sessions[-1]

    runner.session_factory = session_factory

    async def scenario():
        task = runner.start(source)
        runner.stop()
        return await task

    results = asyncio.run(scenario())

    assert [r.status for r in results] == [StepStatus.STOPPED, StepStatus.STOPPED]
    run = next(obj for obj in sessions[0].added if isinstance(obj, Run))
    assert run.status == "stopped"
    assert run.stop_requested is True
    assert runner.running is False


def test_next_start_clears_previous_stop(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    source = _workbook(tmp_path / "steps.xlsx", [[1, "WAIT", "", "10", "Yes"]])
    runner = _runner()
    runner.stop()

    async def scenario():
        return await runner.start(source)

    results = asyncio.run(scenario())

    assert [r.status for r in results] == [StepStatus.PASS]


class ListingFrame:
    child_frames = []

    def __init__(self):
        self.scripts = []

    async def evaluate(self, script, _arg=None):
        self.scripts.append(script)
        if script == OVERLAY_ROOTS_JS:
            return 0
        if script == SHADOW_ROOTS_JS:
            return []
        return [{"ref": 0, "tag": "button", "text": "Save", "visible": True}]


def test_element_listing_waits_for_running_search():
    runner = _runner()
    page = FakePage()
    page.main_frame = ListingFrame()
    runner.run_state.windows.register_root(page)

    async def scenario():
        async with runner.run_state.dom_lock:
            listing = asyncio.create_task(runner.list_current_elements(10))
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            untouched = page.main_frame.scripts == []
        return untouched, await listing

    untouched, items = asyncio.run(scenario())

    assert untouched is True
    assert [item["label"] for item in items] == ["Save"]
    assert items[0]["type"] == "button"
