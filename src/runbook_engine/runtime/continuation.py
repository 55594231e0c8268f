"""The continuation: an ordered queue of remaining work for one workflow level.

Entries reference tree nodes by step id / iterate key, so the queue is plain
data that can be persisted and re-attached to a re-parsed workflow.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from runbook_engine.workflow.index import TreeIndex
from runbook_engine.workflow.model import TreeNode


@dataclass(frozen=True, slots=True)
class StepRef:
    step_id: str
    depth: int


@dataclass(frozen=True, slots=True)
class IterateRef:
    """An iterate block that has not started yet."""

    key: str
    depth: int


@dataclass(frozen=True, slots=True)
class ConvergenceWatchpoint:
    """Re-evaluates ``until`` after pass ``pass_index`` has finished."""

    key: str
    depth: int
    pass_index: int
    max_passes: int


@dataclass(frozen=True, slots=True)
class ListWatchpoint:
    """Moves a list loop to the item after ``index`` once the current pass finishes."""

    key: str
    depth: int
    items: tuple[str, ...]
    index: int
    loop_var: str


PendingNode = StepRef | IterateRef | ConvergenceWatchpoint | ListWatchpoint


class Continuation:
    """Remaining work of one workflow level plus its executed-step counter."""

    def __init__(
        self,
        index: TreeIndex,
        nodes: Iterable[PendingNode] = (),
        *,
        step_index: int = 0,
    ) -> None:
        self.index = index
        self.step_index = step_index
        self._queue: deque[PendingNode] = deque(nodes)

    @classmethod
    def from_nodes(cls, index: TreeIndex, nodes: Sequence[TreeNode]) -> Continuation:
        return cls(index, cls._refs(index, nodes, 0))

    @staticmethod
    def _refs(index: TreeIndex, nodes: Sequence[TreeNode], depth: int) -> list[PendingNode]:
        refs: list[PendingNode] = []
        for node in nodes:
            if node.iterate is not None:
                refs.append(IterateRef(key=index.key_for(node.iterate), depth=depth))
            elif node.step is not None:
                refs.append(StepRef(step_id=node.step.id, depth=depth))
        return refs

    def __len__(self) -> int:
        return len(self._queue)

    def has_next(self) -> bool:
        return bool(self._queue)

    def pop(self) -> PendingNode:
        return self._queue.popleft()

    def push_front(self, nodes: Sequence[TreeNode], depth: int) -> None:
        self._extend_front(self._refs(self.index, nodes, depth))

    def push_convergence_pass(self, key: str, pass_index: int, max_passes: int, depth: int) -> None:
        block = self.index.iterate(key)
        entries = self._refs(self.index, block.steps, depth + 1)
        entries.append(
            ConvergenceWatchpoint(key=key, depth=depth, pass_index=pass_index, max_passes=max_passes)
        )
        self._extend_front(entries)

    def push_list_pass(
        self, key: str, items: Sequence[str], index: int, loop_var: str, depth: int
    ) -> None:
        block = self.index.iterate(key)
        entries = self._refs(self.index, block.steps, depth + 1)
        entries.append(
            ListWatchpoint(key=key, depth=depth, items=tuple(items), index=index, loop_var=loop_var)
        )
        self._extend_front(entries)

    def _extend_front(self, entries: list[PendingNode]) -> None:
        self._queue.extendleft(reversed(entries))

    def clear(self) -> None:
        self._queue.clear()

    def snapshot(self) -> tuple[PendingNode, ...]:
        return tuple(self._queue)
