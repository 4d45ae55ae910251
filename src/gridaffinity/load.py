"""Replica load arithmetic.

``LoadModel`` computes how many replica slots each node should hold for a
given partition count, backup count and cluster size.  It is pure and cheap
to construct, so the planner builds a fresh one per run.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gridaffinity.ownership import OwnershipTable


@dataclass(frozen=True)
class LoadModel:
    """Ideal and bounding replica counts for one topology size.

    Parameters
    ----------
    partitions : int
        Number of partitions ``P``.
    backups : int
        Configured backups ``B``.
    nodes : int
        Number of alive nodes ``N``.

    Examples
    --------
    >>> model = LoadModel(partitions=256, backups=1, nodes=3)
    >>> model.replicas_per_partition, model.total_slots
    (2, 512)
    >>> model.ideal_per_node, model.min_per_node, model.max_per_node
    (171, 170, 171)
    """

    partitions: int
    backups: int
    nodes: int

    @property
    def replicas_per_partition(self) -> int:
        return min(self.backups + 1, self.nodes)

    @property
    def total_slots(self) -> int:
        return self.partitions * self.replicas_per_partition

    @property
    def ideal_per_node(self) -> int:
        """Rounded average slots per node (half rounds up)."""
        if self.nodes == 0:
            return 0
        return math.floor(self.total_slots / self.nodes + 0.5)

    @property
    def min_per_node(self) -> int:
        if self.nodes == 0:
            return 0
        return self.total_slots // self.nodes

    @property
    def max_per_node(self) -> int:
        if self.nodes == 0:
            return 0
        return -(-self.total_slots // self.nodes)

    @property
    def min_primaries_per_node(self) -> int:
        if self.nodes == 0:
            return 0
        return self.partitions // self.nodes

    @property
    def max_primaries_per_node(self) -> int:
        if self.nodes == 0:
            return 0
        return -(-self.partitions // self.nodes)

    @property
    def is_degenerate(self) -> bool:
        """Whether every node must own every partition (``N <= B + 1``)."""
        return self.nodes <= self.backups + 1

    def within_bounds(self, count: int) -> bool:
        return self.min_per_node <= count <= self.max_per_node

    def deviation(self, count: int) -> int:
        """Percent distance of *count* from the ideal, rounded."""
        if self.ideal_per_node == 0:
            return 0
        return round(abs(count - self.ideal_per_node) / self.ideal_per_node * 100)

    def spread(self, table: OwnershipTable) -> int:
        """Difference between the most and least loaded node of *table*."""
        counts = [table.count_for(n) for n in table.topology.nodes]
        if not counts:
            return 0
        return max(counts) - min(counts)

    def is_balanced(self, table: OwnershipTable) -> bool:
        """Whether every node of *table* lies within ``[min, max]`` slots."""
        return all(
            self.within_bounds(table.count_for(n)) for n in table.topology.nodes
        )
