from __future__ import annotations

import logging
import time
import weakref
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional

from playwright.async_api import Error as PlaywrightError

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class WindowNode:
    id: str
    page: Any
    level: int
    opened_at: float
    sequence: int
    parent_ref: Optional[weakref.ReferenceType] = None
    children: List["WindowNode"] = field(default_factory=list)
    title: str = ""
    url: str = ""

    @property
    def parent(self) -> Optional["WindowNode"]:
        return self.parent_ref() if self.parent_ref is not None else None

    @property
    def closed(self) -> bool:
        try:
            return bool(self.page.is_closed())
        except Exception:
            return True

    @property
    def is_root(self) -> bool:
        return self.parent_ref is None

    async def refresh(self) -> None:
        """Best-effort refresh of the cached title and url."""
        if self.closed:
            return
        try:
            self.url = self.page.url
            self.title = await self.page.title()
        except PlaywrightError as exc:
            logger.debug("window_refresh_failed window=%s reason=%s", self.id, exc)

    def label(self) -> str:
        return "MAIN" if self.is_root else f"SUB(L{self.level})"


class WindowHierarchyTracker:
    """Registry of every window the browser session opened.

    Only this class mutates the registry and the latest/active pointers; the
    rest of the engine reads them.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._nodes: list[WindowNode] = []
        self._by_page: dict[int, WindowNode] = {}
        self._sequence = 0
        self.root: WindowNode | None = None
        self.latest: WindowNode | None = None
        self.active: WindowNode | None = None

    @property
    def nodes(self) -> list[WindowNode]:
        return list(self._nodes)

    def register_root(self, page: Any) -> WindowNode:
        if self.root is not None and self.root.page is not page:
            logger.info("window_root_replaced old=%s", self.root.id)
            self._nodes.clear()
            self._by_page.clear()
            self.root = None
            self.latest = None
            self.active = None
        existing = self._by_page.get(id(page))
        if existing is not None:
            return existing
        node = self._new_node(page, parent=None)
        self.root = node
        self.latest = node
        self.active = node
        return node

    def on_window_opened(self, page: Any, parent_page: Any | None = None) -> WindowNode:
        if self.root is None:
            return self.register_root(page)

        parent = self._by_page.get(id(parent_page)) if parent_page is not None else None
        existing = self._by_page.get(id(page))
        if existing is not None:
            if parent is not None and parent is not existing and existing.parent is not parent and not existing.is_root:
                self._reparent(existing, parent)
            return existing

        node = self._new_node(page, parent=parent or self.root)
        self.latest = node
        logger.info(
            "window_opened id=%s level=%s parent=%s url=%s",
            node.id,
            node.level,
            node.parent.id if node.parent else None,
            node.url,
        )
        return node

    def attach(self, page: Any) -> None:
        """Track popups opened by ``page`` as its children."""

        def _on_popup(popup: Any) -> None:
            self.on_window_opened(popup, page)

        page.on("popup", _on_popup)

    def watch_context(self, context: Any) -> None:
        def _on_page(page: Any) -> None:
            self.on_window_opened(page)

        context.on("page", _on_page)

    def node_for(self, page: Any) -> WindowNode | None:
        return self._by_page.get(id(page))

    def active_windows(self) -> list[WindowNode]:
        open_nodes = [node for node in self._nodes if not node.closed]
        return sorted(open_nodes, key=lambda n: (n.opened_at, n.sequence), reverse=True)

    @property
    def priority_window(self) -> WindowNode | None:
        if self.latest is None or self.latest.closed:
            return None
        return self.latest

    @property
    def active_page(self) -> Any | None:
        if self.active is None or self.active.closed:
            return None
        return self.active.page

    def focus(self, node: WindowNode) -> None:
        if node.closed:
            return
        if self.active is not node:
            logger.info("window_focus id=%s level=%s", node.id, node.level)
        self.active = node

    async def switch_to_most_recent_active(self, load_timeout_ms: int = 5000) -> WindowNode | None:
        candidates = self.active_windows()
        if not candidates:
            self.active = None
            return None
        newest = candidates[0]
        if self.active is newest:
            return newest
        self.focus(newest)
        try:
            await newest.page.bring_to_front()
            await newest.page.wait_for_load_state("domcontentloaded", timeout=load_timeout_ms)
        except PlaywrightError as exc:
            logger.warning("window_switch_settle_failed id=%s reason=%s", newest.id, exc)
        await newest.refresh()
        return newest

    def hierarchy_lines(self) -> list[str]:
        lines: list[str] = []
        if self.root is None:
            return lines
        stack: list[WindowNode] = [self.root]
        while stack:
            node = stack.pop()
            state = "closed" if node.closed else "open"
            marker = " *latest" if node is self.latest else ""
            lines.append(f"{'  ' * node.level}{node.label()} {node.id} [{state}] {node.url}{marker}".rstrip())
            stack.extend(reversed(node.children))
        return lines

    def _new_node(self, page: Any, parent: WindowNode | None) -> WindowNode:
        self._sequence += 1
        try:
            url = page.url
        except Exception:
            url = ""
        node = WindowNode(
            id=f"w{self._sequence}",
            page=page,
            level=0 if parent is None else parent.level + 1,
            opened_at=self._clock(),
            sequence=self._sequence,
            parent_ref=weakref.ref(parent) if parent is not None else None,
            url=url or "",
        )
        if parent is not None:
            parent.children.append(node)
        self._nodes.append(node)
        self._by_page[id(page)] = node
        self.attach(page)
        return node

    def _reparent(self, node: WindowNode, parent: WindowNode) -> None:
        old = node.parent
        if old is not None and node in old.children:
            old.children.remove(node)
        parent.children.append(node)
        node.parent_ref = weakref.ref(parent)
        stack = [node]
        while stack:
            current = stack.pop()
            owner = current.parent
            current.level = owner.level + 1 if owner is not None else 0
            stack.extend(current.children)


def plan_window_order(
    windows: Iterable[WindowNode],
    latest: WindowNode | None,
    root: WindowNode | None,
    exclude: WindowNode | None = None,
) -> list[WindowNode]:
    """Order in which other windows are searched.

    The latest window and its descendants come first, then the remaining
    windows by recency, each followed by its own subtree (newest child
    first), and the root window last. Closed and excluded windows are
    skipped but their children are still walked.
    """

    def recency(node: WindowNode) -> tuple[float, int]:
        return node.opened_at, node.sequence

    nodes = list(windows)
    starts: list[WindowNode] = []
    if latest is not None:
        starts.append(latest)
    if root is not None:
        starts.extend(sorted(root.children, key=recency, reverse=True))
    # anything not reachable from the root, newest first
    starts.extend(sorted((n for n in nodes if n is not root), key=recency, reverse=True))

    order: list[WindowNode] = []
    seen: set[int] = set()
    for start in starts:
        stack = [start]
        while stack:
            node = stack.pop()
            if id(node) in seen or node is root:
                continue
            seen.add(id(node))
            if not node.closed and node is not exclude:
                order.append(node)
            stack.extend(child for child in node.children if id(child) not in seen)

    if root is not None and not root.closed and root is not exclude:
        order.append(root)
    return order
