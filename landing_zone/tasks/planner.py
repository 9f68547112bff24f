# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# stdlib
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from logging import getLogger

# project
from tasks.errors import GraphCycle, UnsatisfiableGraph
from tasks.graph import ResourceNode, find_cycle

log = getLogger(__name__)


@dataclass(frozen=True)
class Plan:
    batches: tuple[tuple[ResourceNode, ...], ...]
    """Ordered batches, nodes within a batch are independent of each other"""

    def __iter__(self) -> Iterator[tuple[ResourceNode, ...]]:
        return iter(self.batches)

    def __len__(self) -> int:
        return len(self.batches)

    def nodes(self) -> list[ResourceNode]:
        return [node for batch in self.batches for node in batch]

    def batch_index(self) -> dict[str, int]:
        return {node.id: i for i, batch in enumerate(self.batches) for node in batch}

    def render(self) -> str:
        lines = []
        for i, batch in enumerate(self.batches):
            lines.append(f"batch {i}:")
            lines.extend(f"  {node.id} ({node.context.value})" for node in batch)
        return "\n".join(lines)


def plan(nodes: Iterable[ResourceNode]) -> Plan:
    """Kahn's algorithm, grouping every node whose dependencies are all planned into the same batch.
    Batches are ordered by kind priority then key, so identical graphs always produce identical plans."""
    remaining = {node.id: node for node in nodes}
    for node in remaining.values():
        for dependency in sorted(node.dependencies):
            if dependency not in remaining:
                raise UnsatisfiableGraph(dependency, node.id)

    planned: set[str] = set()
    batches: list[tuple[ResourceNode, ...]] = []
    while remaining:
        ready = [node for node in remaining.values() if node.dependencies <= planned]
        if not ready:
            raise GraphCycle(find_cycle(remaining) or sorted(remaining))
        batch = tuple(sorted(ready, key=lambda n: n.sort_key))
        for node in batch:
            del remaining[node.id]
            planned.add(node.id)
        batches.append(batch)

    log.debug("Planned %s nodes in %s batches", len(planned), len(batches))
    return Plan(tuple(batches))
