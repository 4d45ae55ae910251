"""Partition ownership tables and diffing.

An ``OwnershipTable`` maps every partition to its ordered owner nodes for one
topology version: index 0 is the primary, the rest are backups.  Tables are
immutable and validated on construction, so a table that exists is a table
that can be published.

``OwnershipTable.diff`` and ``transfers`` describe what changed between two
consecutive tables, which is what the rebalancing layer needs to schedule
bulk partition transfers.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from functools import cached_property

from gridaffinity.errors import ConfigurationError, InvariantViolation
from gridaffinity.topology import Node, TopologySnapshot

type Owners = tuple[Node, ...]


@dataclass(frozen=True)
class PartitionChange:
    """Owner change of a single partition between two tables.

    Parameters
    ----------
    partition : int
        Partition id.
    old_owners : Owners
        Owners in the older table.
    new_owners : Owners
        Owners in the newer table.
    """

    partition: int
    old_owners: Owners
    new_owners: Owners

    @property
    def supply_to(self) -> Owners:
        """New owners that did not hold the partition before."""
        return tuple(n for n in self.new_owners if n not in self.old_owners)

    @property
    def dropped(self) -> Owners:
        """Old owners that no longer hold the partition."""
        return tuple(n for n in self.old_owners if n not in self.new_owners)

    @property
    def primary_changed(self) -> bool:
        old = self.old_owners[0] if self.old_owners else None
        new = self.new_owners[0] if self.new_owners else None
        return old != new

    @property
    def moves_data(self) -> bool:
        return bool(self.supply_to)


@dataclass(frozen=True)
class PartitionTransfer:
    """Data movement required for one partition.

    Parameters
    ----------
    partition : int
        Partition id.
    supply_from : Owners
        Previous owners still alive that can stream the data, primary first.
        Empty when the partition has no surviving copy.
    supply_to : Owners
        Nodes that must receive the partition.
    """

    partition: int
    supply_from: Owners
    supply_to: Owners


@dataclass(frozen=True)
class OwnershipTable:
    """Immutable partition to owner-list mapping for one topology version.

    Every owner list has exactly ``min(backups + 1, topology.size)`` entries,
    no duplicates, and only nodes from *topology*.  Violations raise
    ``InvariantViolation``.

    Parameters
    ----------
    topology : TopologySnapshot
        The topology the table was computed for.
    backups : int
        Configured backups for the cache.
    assignments : tuple[Owners, ...]
        Owner list per partition, indexed by partition id.

    Examples
    --------
    >>> a, b = Node("a", 1), Node("b", 2)
    >>> table = OwnershipTable(TopologySnapshot(1, (a, b)), 0, ((a,), (b,)))
    >>> table.owners_of(1)
    (Node(id='b', order=2),)
    >>> table.count_for(a)
    1
    """

    topology: TopologySnapshot
    backups: int
    assignments: tuple[Owners, ...]

    def __post_init__(self) -> None:
        expected = min(self.backups + 1, self.topology.size)
        alive = frozenset(self.topology.nodes)
        for partition, owners in enumerate(self.assignments):
            if len(owners) != expected:
                msg = (
                    f"Partition {partition} has {len(owners)} owners, "
                    f"expected {expected}"
                )
                raise InvariantViolation(msg)
            if len(set(owners)) != len(owners):
                msg = f"Partition {partition} lists an owner twice: {owners}"
                raise InvariantViolation(msg)
            strangers = [n for n in owners if n not in alive]
            if strangers:
                msg = (
                    f"Partition {partition} is owned by nodes outside "
                    f"topology {self.topology.version}: {strangers}"
                )
                raise InvariantViolation(msg)

    @classmethod
    def empty(
        cls, partitions: int, topology: TopologySnapshot, backups: int = 0
    ) -> OwnershipTable:
        """Table for an empty topology: every partition has no owners."""
        if topology.size:
            msg = "Only an empty topology yields an empty ownership table"
            raise InvariantViolation(msg)
        return cls(topology, backups, tuple(() for _ in range(partitions)))

    @property
    def partitions(self) -> int:
        return len(self.assignments)

    @property
    def version(self) -> int:
        return self.topology.version

    def owners_of(self, partition: int) -> Owners:
        return self.assignments[partition]

    def primary_of(self, partition: int) -> Node | None:
        owners = self.assignments[partition]
        return owners[0] if owners else None

    def backups_of(self, partition: int) -> Owners:
        return self.assignments[partition][1:]

    @cached_property
    def _slot_counts(self) -> Counter[Node]:
        return Counter(n for owners in self.assignments for n in owners)

    @cached_property
    def _primary_counts(self) -> Counter[Node]:
        return Counter(owners[0] for owners in self.assignments if owners)

    def count_for(self, node: Node) -> int:
        """Total replica slots (primary and backup) held by *node*."""
        return self._slot_counts[node]

    def primary_count_for(self, node: Node) -> int:
        return self._primary_counts[node]

    def backup_count_for(self, node: Node) -> int:
        return self._slot_counts[node] - self._primary_counts[node]

    def partitions_of(self, node: Node) -> tuple[int, ...]:
        return tuple(p for p, owners in enumerate(self.assignments) if node in owners)

    def primary_partitions(self, node: Node) -> tuple[int, ...]:
        return tuple(
            p for p, owners in enumerate(self.assignments)
            if owners and owners[0] == node
        )

    def backup_partitions(self, node: Node) -> tuple[int, ...]:
        return tuple(
            p for p, owners in enumerate(self.assignments) if node in owners[1:]
        )

    def is_primary(self, node: Node, partition: int) -> bool:
        return self.primary_of(partition) == node

    def is_backup(self, node: Node, partition: int) -> bool:
        return node in self.backups_of(partition)

    def map_partitions_to_nodes(
        self, partitions: Iterable[int]
    ) -> dict[Node, list[int]]:
        """Group *partitions* by their primary node.

        Partitions without an owner (empty topology) are omitted.
        """
        grouped: dict[Node, list[int]] = {}
        for partition in partitions:
            primary = self.primary_of(partition)
            if primary is not None:
                grouped.setdefault(primary, []).append(partition)
        return grouped

    def diff(self, other: OwnershipTable) -> tuple[PartitionChange, ...]:
        """Return the partitions whose owner list differs in *other*.

        *self* is the older table and *other* the newer one.  Changes are
        ordered by partition id.  A pure reordering of owners (promotion)
        is reported too, with ``moves_data`` false.

        Raises
        ------
        ConfigurationError
            If the tables cover a different number of partitions.
        """
        if other.partitions != self.partitions:
            msg = (
                f"Cannot diff tables with {self.partitions} and "
                f"{other.partitions} partitions"
            )
            raise ConfigurationError(msg)
        return tuple(
            PartitionChange(p, old, new)
            for p, (old, new) in enumerate(zip(self.assignments, other.assignments))
            if old != new
        )

    def __str__(self) -> str:
        loads = ", ".join(
            f"{n}={self.count_for(n)}/{self.primary_count_for(n)}"
            for n in self.topology.nodes
        )
        return f"OwnershipTable({self.topology.version}: {loads})"


def transfers(
    old: OwnershipTable | None, new: OwnershipTable
) -> Iterator[PartitionTransfer]:
    """Yield the partition transfers needed to go from *old* to *new*.

    Only partitions that gain at least one owner are yielded.  When *old* is
    ``None`` (first activation) every owner of *new* is a receiver with no
    supplier.

    Examples
    --------
    >>> a, b = Node("a", 1), Node("b", 2)
    >>> old = OwnershipTable(TopologySnapshot(1, (a,)), 0, ((a,), (a,)))
    >>> new = OwnershipTable(TopologySnapshot(2, (a, b)), 0, ((a,), (b,)))
    >>> list(transfers(old, new))
    [PartitionTransfer(partition=1, supply_from=(Node(id='a', order=1),), supply_to=(Node(id='b', order=2),))]
    """
    if old is None:
        for partition, owners in enumerate(new.assignments):
            if owners:
                yield PartitionTransfer(partition, (), owners)
        return

    for change in old.diff(new):
        if not change.moves_data:
            continue
        supply_from = tuple(n for n in change.old_owners if n in new.topology)
        yield PartitionTransfer(change.partition, supply_from, change.supply_to)
