"""Fair partition rebalancing.

``RebalancePlanner`` turns the previous ownership table, the new topology and
the triggering event into the next ownership table.  The computation is a
pure function of its inputs: every cluster member runs it independently and
must arrive at the same table, so nodes are always visited in join order and
partitions in ascending id.  No set or dict iteration order leaks into the
result.

A run goes through four passes:

1. carry over previous owners that are still alive (a departed primary is
   replaced by promoting its first backup),
2. fill the opened slots with the least loaded eligible node,
3. move single slots from the most to the least loaded node until every
   node holds between ``floor`` and ``ceil`` of the average,
4. swap owner positions so primaries are spread as evenly as possible.

When the cluster has no more nodes than replicas, every node owns every
partition in join order and the passes are skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from gridaffinity.errors import ConfigurationError
from gridaffinity.load import LoadModel
from gridaffinity.ownership import OwnershipTable
from gridaffinity.topology import DiscoveryEvent, EventKind, Node, TopologySnapshot

logger = logging.getLogger("gridaffinity.planner")


@dataclass
class _Workspace:
    """Mutable scratch state of a single planner run."""

    nodes: tuple[Node, ...]
    owners: list[list[Node]]
    counts: dict[Node, int] = field(init=False)
    primaries: dict[Node, int] = field(init=False)

    def __post_init__(self) -> None:
        self.counts = {n: 0 for n in self.nodes}
        self.primaries = {n: 0 for n in self.nodes}
        for owners in self.owners:
            for node in owners:
                self.counts[node] += 1
            if owners:
                self.primaries[owners[0]] += 1

    def least_loaded(self, exclude: list[Node] | None = None) -> Node | None:
        candidates = [n for n in self.nodes if not exclude or n not in exclude]
        if not candidates:
            return None
        return min(candidates, key=lambda n: (self.counts[n], n))

    def most_loaded(self) -> Node:
        return min(self.nodes, key=lambda n: (-self.counts[n], n))


class RebalancePlanner:
    """Deterministic planner for one cache's partition ownership.

    Parameters
    ----------
    partitions : int
        Number of partitions.
    backups : int
        Number of backup replicas per partition.

    Examples
    --------
    >>> planner = RebalancePlanner(partitions=8, backups=1)
    >>> topo = TopologySnapshot(1, (Node("a", 1), Node("b", 2), Node("c", 3)))
    >>> table = planner.plan(None, topo)
    >>> [table.count_for(n) for n in topo.nodes]
    [6, 5, 5]
    """

    def __init__(self, partitions: int, backups: int) -> None:
        assert backups >= 0, f"backups must be non-negative, got {backups}"
        self._partitions = partitions
        self._backups = backups

    @property
    def partitions(self) -> int:
        return self._partitions

    @property
    def backups(self) -> int:
        return self._backups

    def plan(
        self,
        previous: OwnershipTable | None,
        topology: TopologySnapshot,
        event: DiscoveryEvent | None = None,
    ) -> OwnershipTable:
        """Compute the ownership table for *topology*.

        Parameters
        ----------
        previous : OwnershipTable | None
            Table of the preceding topology version, ``None`` on first
            activation.
        topology : TopologySnapshot
            Alive nodes at the new version.
        event : DiscoveryEvent | None
            The change that produced *topology*.  Only used for diagnostics;
            the result depends on the previous table and the topology.

        Returns
        -------
        OwnershipTable

        Raises
        ------
        ConfigurationError
            If *previous* covers a different number of partitions.
        """
        if previous is not None and previous.partitions != self._partitions:
            msg = (
                f"Previous assignment has {previous.partitions} partitions, "
                f"cache is configured with {self._partitions}"
            )
            raise ConfigurationError(msg)

        self._check_event(topology, event)

        if topology.size == 0:
            logger.debug("Topology %s is empty, no partition has owners", topology)
            return OwnershipTable.empty(self._partitions, topology, self._backups)

        model = LoadModel(self._partitions, self._backups, topology.size)
        if model.is_degenerate:
            logger.debug(
                "Topology %s has at most %d nodes, every node owns every partition",
                topology, self._backups + 1,
            )
            canonical = tuple(topology.nodes)
            return OwnershipTable(
                topology,
                self._backups,
                tuple(canonical for _ in range(self._partitions)),
            )

        work = _Workspace(
            nodes=topology.nodes,
            owners=self._carry_over(previous, topology, model),
        )
        filled = self._fill(work, model)
        moved = self._balance(work, model)
        swapped = self._balance_primaries(work, model)

        table = OwnershipTable(
            topology,
            self._backups,
            tuple(tuple(owners) for owners in work.owners),
        )
        logger.debug(
            "Assigned %d partitions for %s [event=%s, filled=%d, moved=%d, "
            "swapped=%d, min=%d, max=%d, ideal=%d]",
            self._partitions, topology, event, filled, moved, swapped,
            min(work.counts.values()), max(work.counts.values()),
            model.ideal_per_node,
        )
        return table

    def _check_event(
        self, topology: TopologySnapshot, event: DiscoveryEvent | None
    ) -> None:
        if event is None:
            return
        if event.kind is EventKind.joined and event.node not in topology:
            logger.warning(
                "Node %s joined but is absent from topology %s", event.node, topology
            )
        elif event.kind.is_departure and event.node in topology:
            logger.warning(
                "Node %s %s but is still present in topology %s",
                event.node, event.kind.name, topology,
            )

    def _carry_over(
        self,
        previous: OwnershipTable | None,
        topology: TopologySnapshot,
        model: LoadModel,
    ) -> list[list[Node]]:
        if previous is None:
            return [[] for _ in range(self._partitions)]

        alive = frozenset(topology.nodes)
        replicas = model.replicas_per_partition
        owners: list[list[Node]] = []
        for prev in previous.assignments:
            # Removing a departed primary promotes the first surviving backup.
            kept = [n for n in prev if n in alive]
            owners.append(kept[:replicas])
        return owners

    def _fill(self, work: _Workspace, model: LoadModel) -> int:
        """Give every partition its full replica count."""
        replicas = model.replicas_per_partition
        filled = 0
        for owners in work.owners:
            while len(owners) < replicas:
                node = work.least_loaded(exclude=owners)
                if node is None:
                    break
                if not owners:
                    work.primaries[node] += 1
                owners.append(node)
                work.counts[node] += 1
                filled += 1
        return filled

    def _balance(self, work: _Workspace, model: LoadModel) -> int:
        """Move slots from the most to the least loaded node.

        While the donor holds at least two slots more than the receiver there
        is a partition owned by the donor and not by the receiver, so the
        loop always reaches ``[min_per_node, max_per_node]``.
        """
        moves = 0
        limit = model.total_slots
        while moves < limit:
            donor = work.most_loaded()
            receiver = work.least_loaded()
            assert receiver is not None
            if (
                work.counts[donor] <= model.max_per_node
                and work.counts[receiver] >= model.min_per_node
            ):
                break
            if work.counts[donor] - work.counts[receiver] < 2:
                break
            if not self._donate(work, donor, receiver):
                logger.warning(
                    "No partition of %s can be donated to %s", donor, receiver
                )
                break
            moves += 1
        return moves

    def _donate(self, work: _Workspace, donor: Node, receiver: Node) -> bool:
        primary_candidate: int | None = None
        for partition, owners in enumerate(work.owners):
            if donor not in owners or receiver in owners:
                continue
            slot = owners.index(donor)
            if slot > 0:
                owners[slot] = receiver
                logger.debug(
                    "Partition %d: backup %s -> %s", partition, donor, receiver
                )
                work.counts[donor] -= 1
                work.counts[receiver] += 1
                return True
            if primary_candidate is None:
                primary_candidate = partition

        if primary_candidate is None:
            return False

        owners = work.owners[primary_candidate]
        del owners[0]
        owners.append(receiver)
        # With no backups the receiver becomes primary, otherwise the
        # first backup is promoted.
        work.primaries[donor] -= 1
        work.primaries[owners[0]] += 1
        work.counts[donor] -= 1
        work.counts[receiver] += 1
        logger.debug(
            "Partition %d: primary %s -> %s", primary_candidate, donor, owners[0]
        )
        return True

    def _balance_primaries(self, work: _Workspace, model: LoadModel) -> int:
        """Spread primaries by reordering owners within partitions.

        The node with the fewest primaries takes over a partition where it is
        backup.  The displaced primary may in turn take over another
        partition, until the chain reaches a node holding at least two more
        primaries than the receiver.  Every shift lowers the sum of squared
        primary counts, and once no chain exists for any node the counts are
        as even as the owner sets allow, which with balanced slot counts is
        ``[min_primaries_per_node, max_primaries_per_node]``.
        """
        if model.replicas_per_partition < 2:
            return 0
        swaps = 0
        while True:
            ranked = sorted(work.nodes, key=lambda n: (work.primaries[n], n))
            highest = work.primaries[ranked[-1]]
            receivers = [n for n in ranked if work.primaries[n] + 2 <= highest]
            backed: dict[Node, list[int]] = {n: [] for n in work.nodes}
            for partition, owners in enumerate(work.owners):
                for node in owners[1:]:
                    backed[node].append(partition)

            for receiver in receivers:
                path = self._promotion_path(work, backed, receiver)
                if path is not None:
                    break
            else:
                return swaps

            donor = work.owners[path[-1][0]][0]
            for partition, taker in path:
                owners = work.owners[partition]
                slot = owners.index(taker)
                owners[0], owners[slot] = taker, owners[0]
                logger.debug(
                    "Partition %d: promoted %s over %s",
                    partition, taker, owners[slot],
                )
            work.primaries[receiver] += 1
            work.primaries[donor] -= 1
            swaps += len(path)

    def _promotion_path(
        self,
        work: _Workspace,
        backed: dict[Node, list[int]],
        receiver: Node,
    ) -> list[tuple[int, Node]] | None:
        """Find partitions along which one primary can shift to *receiver*.

        Returns ``(partition, taker)`` pairs starting at *receiver*; each
        taker is backup of its partition and replaces that partition's
        primary, which is the taker of the next pair.  The primary of the last
        partition holds at least two more primaries than *receiver*.
        """
        target = work.primaries[receiver] + 2
        reached: dict[Node, tuple[int, Node] | None] = {receiver: None}
        frontier = [receiver]
        while frontier:
            following: list[Node] = []
            for node in frontier:
                for partition in backed[node]:
                    primary = work.owners[partition][0]
                    if primary in reached:
                        continue
                    reached[primary] = (partition, node)
                    if work.primaries[primary] >= target:
                        return self._trace(reached, primary)
                    following.append(primary)
            frontier = following
        return None

    @staticmethod
    def _trace(
        reached: dict[Node, tuple[int, Node] | None], donor: Node
    ) -> list[tuple[int, Node]]:
        path: list[tuple[int, Node]] = []
        step = reached[donor]
        while step is not None:
            path.append(step)
            step = reached[step[1]]
        path.reverse()
        return path
