"""Lookup tables over a workflow tree.

Queued work refers to tree nodes by stable identifiers (step ids and iterate
keys) rather than by object, so a persisted queue can be re-attached to a
freshly parsed copy of the same workflow file.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field

from runbook_engine.errors import WorkflowValidationError
from runbook_engine.workflow.model import IterateBlock, Step, TreeNode


def iterate_key(block: IterateBlock, path: str) -> str:
    """Durable key of an iterate block.

    Explicit ``id`` first, then the id of the first nested step, then the
    block's positional path within the tree.
    """

    if block.id:
        return block.id
    first = block.steps[0]
    if first.step is not None:
        return first.step.id
    return f"{path}/iterate"


def walk(tree: Sequence[TreeNode], prefix: str = "tree") -> Iterator[tuple[str, TreeNode]]:
    """Yield ``(path, node)`` for every node, depth first, in declaration order."""

    for i, node in enumerate(tree):
        path = f"{prefix}[{i}]"
        yield path, node
        if node.iterate is not None:
            yield from walk(node.iterate.steps, f"{path}/steps")
        for j, branch in enumerate(node.branches):
            yield from walk(branch.steps, f"{path}/branches[{j}]/steps")


def flatten_steps(tree: Sequence[TreeNode]) -> list[Step]:
    return [node.step for _, node in walk(tree) if node.step is not None]


def collect_step_ids(tree: Sequence[TreeNode]) -> list[str]:
    return [step.id for step in flatten_steps(tree)]


@dataclass(frozen=True, slots=True)
class TreeIndex:
    steps: dict[str, TreeNode]
    iterates: dict[str, IterateBlock]
    order: tuple[str, ...]
    _keys: dict[int, str] = field(repr=False)

    @classmethod
    def build(cls, tree: Sequence[TreeNode]) -> TreeIndex:
        steps: dict[str, TreeNode] = {}
        iterates: dict[str, IterateBlock] = {}
        keys: dict[int, str] = {}
        order: list[str] = []

        for path, node in walk(tree):
            if node.step is not None:
                step_id = node.step.id
                if step_id in steps:
                    raise WorkflowValidationError(f"duplicate step id {step_id!r} at {path}")
                steps[step_id] = node
                order.append(step_id)
            if node.iterate is not None:
                key = iterate_key(node.iterate, path)
                if key in iterates:
                    raise WorkflowValidationError(f"duplicate iterate key {key!r} at {path}")
                iterates[key] = node.iterate
                keys[id(node.iterate)] = key

        return cls(steps=steps, iterates=iterates, order=tuple(order), _keys=keys)

    def node(self, step_id: str) -> TreeNode:
        return self.steps[step_id]

    def step(self, step_id: str) -> Step:
        node = self.steps[step_id]
        assert node.step is not None
        return node.step

    def iterate(self, key: str) -> IterateBlock:
        return self.iterates[key]

    def key_for(self, block: IterateBlock) -> str:
        """Key of a block belonging to the tree this index was built from."""

        try:
            return self._keys[id(block)]
        except KeyError:
            raise KeyError("iterate block is not part of this tree") from None
