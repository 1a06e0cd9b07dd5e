import asyncio

import pytest
from playwright.async_api import Error as PlaywrightError

from healing_runner.agent.contexts import SearchContext
from healing_runner.agent.dom_scanner import (
    COLLECT_JS,
    DEEP_SCAN_JS,
    RELEASE_REFS_JS,
    RESOLVE_REF_JS,
    ElementMatcher,
    MatchRank,
)
from healing_runner.agent.errors import StaleContextError
from healing_runner.agent.targets import Action, TargetDescriptor


class FakeHandle:
    def __init__(self, ref):
        self.ref = ref
        self.disposed = False

    def as_element(self):
        return self if self.ref is not None else None

    async def dispose(self):
        self.disposed = True


class FakeFrame:
    def __init__(self, descriptors=None, deep=None, error=None, count=0):
        self.descriptors = descriptors or []
        self.deep = deep or []
        self.error = error
        self.count = count
        self.calls = []

    async def evaluate(self, script, arg=None):
        self.calls.append((script, arg))
        if self.error:
            raise self.error
        if script == COLLECT_JS:
            if arg.get("countOnly"):
                return self.count
            return self.descriptors
        if script == DEEP_SCAN_JS:
            return self.deep
        return None

    async def evaluate_handle(self, script, arg):
        assert script == RESOLVE_REF_JS
        _token, ref = arg
        return FakeHandle(ref)


class FakePage:
    def __init__(self, frame):
        self.main_frame = frame

    def is_closed(self):
        return False


class FakeWindow:
    id = "w1"
    closed = False

    def __init__(self, frame):
        self.page = FakePage(frame)


def _descriptor(ref, **kwargs):
    data = {"ref": ref, "tag": "button", "visible": True}
    data.update(kwargs)
    return data


def test_match_orders_candidates_by_rank_then_dom_order():
    frame = FakeFrame(
        [
            _descriptor(0, text="Submit later"),
            _descriptor(1, text="Pre-submit", className="x"),
            _descriptor(2, text="Submit"),
        ]
    )
    ctx = SearchContext(window_id="w1", frame=frame, kind="document")
    matcher = ElementMatcher()

    candidates = asyncio.run(matcher.match(ctx, TargetDescriptor("Submit", Action.CLICK)))

    assert [c.node.ref for c in candidates] == [2, 0, 1]
    assert candidates[0].rank == MatchRank.EXACT
    assert candidates[0].handle.ref == 2
    assert candidates[0].context is ctx
    _, args = frame.calls[0]
    assert args["pool"] == "click"
    assert args["needle"] == "submit"


def test_match_uses_fill_pool_and_label_for_fill():
    frame = FakeFrame([_descriptor(0, tag="input", label="Email")])
    ctx = SearchContext(window_id="w1", frame=frame, kind="overlay", root_index=1, registry="r1")

    candidates = asyncio.run(ElementMatcher().match(ctx, TargetDescriptor("Email", Action.FILL, "a@b.com")))

    assert len(candidates) == 1
    assert candidates[0].matched_on == "label"
    _, args = frame.calls[0]
    assert args.pop("token")
    assert args == {"kind": "overlay", "index": 1, "registry": "r1", "pool": "fill", "needle": "email"}


def test_match_returns_empty_when_scope_is_gone():
    frame = FakeFrame()
    frame.descriptors = None
    ctx = SearchContext(window_id="w1", frame=frame, kind="shadow", root_index=0)

    assert asyncio.run(ElementMatcher().match(ctx, TargetDescriptor("Go", Action.CLICK))) == []


def test_match_raises_stale_when_frame_was_detached():
    frame = FakeFrame(error=PlaywrightError("Frame was detached"))
    ctx = SearchContext(window_id="w1", frame=frame, kind="frame", frame_path=(0,), depth=1)

    with pytest.raises(StaleContextError):
        asyncio.run(ElementMatcher().match(ctx, TargetDescriptor("Go", Action.CLICK)))


def test_match_swallows_other_script_errors():
    frame = FakeFrame(error=PlaywrightError("Evaluation failed: SecurityError"))
    ctx = SearchContext(window_id="w1", frame=frame, kind="document")

    assert asyncio.run(ElementMatcher().match(ctx, TargetDescriptor("Go", Action.CLICK))) == []


def test_deep_scan_reports_deep_context():
    frame = FakeFrame(deep=[_descriptor(0, tag="span", text="Approve")])
    window = FakeWindow(frame)

    candidates = asyncio.run(ElementMatcher().deep_scan(window, TargetDescriptor("approve", Action.CLICK)))

    assert len(candidates) == 1
    assert candidates[0].context.kind == "deep"
    assert "deep scan" in candidates[0].describe()


def test_exists_counts_matches_without_resolving_handles():
    frame = FakeFrame(count=2)

    assert asyncio.run(ElementMatcher().exists(frame, TargetDescriptor("Save", Action.CLICK))) is True
    assert asyncio.run(ElementMatcher().exists(FakeFrame(count=0), TargetDescriptor("Save", Action.CLICK))) is False
    failing = FakeFrame(error=PlaywrightError("Target page, context or browser has been closed"))
    assert asyncio.run(ElementMatcher().exists(failing, TargetDescriptor("Save", Action.CLICK))) is False


def test_inventory_lists_interactive_elements_with_context():
    frame = FakeFrame(
        [
            _descriptor(0, tag="a", text="Home"),
            _descriptor(1, tag="input", label="Email", elementId="email", visible=False),
        ]
    )
    ctx = SearchContext(window_id="w2", frame=frame, kind="document")

    items = asyncio.run(ElementMatcher().inventory(ctx, 10))

    assert [item["type"] for item in items] == ["link", "input"]
    assert items[1]["label"] == "Email"
    assert items[1]["visible"] is False
    assert items[0]["context"] == "main document of window w2"


class SharedRegistryFrame:
    """Keeps collected elements in one page-wide store, like the real scripts do."""

    def __init__(self, elements):
        self.elements = elements
        self.store = {}

    async def evaluate(self, script, arg=None):
        await asyncio.sleep(0)
        if script == RELEASE_REFS_JS:
            self.store.pop(arg, None)
            return None
        assert script == COLLECT_JS
        if arg["pool"] == "any":
            picked = list(self.elements)
        else:
            picked = [el for el in self.elements if el["pool"] == arg["pool"] and arg["needle"] in el["text"].lower()]
        if arg.get("token"):
            self.store[arg["token"]] = picked
        return [_descriptor(i, tag=el["tag"], text=el["text"], elementId=el["id"]) for i, el in enumerate(picked)]

    async def evaluate_handle(self, script, arg):
        await asyncio.sleep(0)
        token, ref = arg
        return SimpleHandle(self.store[token][ref]["id"])


class SimpleHandle:
    def __init__(self, element_id):
        self.element_id = element_id

    def as_element(self):
        return self


def test_concurrent_inventory_does_not_redirect_match():
    frame = SharedRegistryFrame(
        [
            {"id": "search-box", "tag": "input", "text": "", "pool": "fill"},
            {"id": "home", "tag": "a", "text": "Home", "pool": "click"},
            {"id": "submit", "tag": "button", "text": "Submit", "pool": "click"},
        ]
    )
    ctx = SearchContext(window_id="w1", frame=frame, kind="document")

    async def scenario():
        return await asyncio.gather(
            ElementMatcher().match(ctx, TargetDescriptor("Submit", Action.CLICK)),
            ElementMatcher().inventory(ctx, 300),
        )

    candidates, items = asyncio.run(scenario())

    assert [c.handle.element_id for c in candidates] == ["submit"]
    assert len(items) == 3
    assert frame.store == {}
