"""Affinity function entry point.

``AffinityFunction`` validates the cache settings, runs the
``RebalancePlanner`` for each topology version and keeps the latest table as
the *previous* assignment for the next call.  Results are published by
swapping a single reference, so readers on other threads always observe a
complete, immutable ``OwnershipTable``.

Writers must be serialized per instance by the caller: topology versions are
expected in increasing order, one ``assign`` at a time.  Tables are kept for
the last ``history_size`` versions; for every version ever assigned the
instance also remembers its topology and the version it was planned from, so
an evicted version is replayed by replanning from its nearest cached ancestor
and yields the table published the first time.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Iterable
from dataclasses import dataclass

from gridaffinity.config import AffinityConfig, GridConfig, validate_affinity
from gridaffinity.errors import ConfigurationError, ReplayError
from gridaffinity.ownership import OwnershipTable, Owners
from gridaffinity.planner import RebalancePlanner
from gridaffinity.topology import DiscoveryEvent, Node, TopologySnapshot

logger = logging.getLogger("gridaffinity.affinity")


@dataclass(frozen=True)
class _Planned:
    """Topology of an assigned version and the version it was planned from."""

    topology: TopologySnapshot
    parent: int | None


class AffinityFunction:
    """Fair partition affinity for one cache.

    Parameters
    ----------
    partitions : int
        Number of partitions, must be positive.
    backups : int
        Backup replicas per partition, must be non-negative.
    name : str
        Cache name, used in log messages.
    history_size : int
        Number of past assignments kept for replayed versions.

    Raises
    ------
    ConfigurationError
        If *partitions* or *backups* is out of range.

    Examples
    --------
    >>> aff = AffinityFunction(partitions=16, backups=1)
    >>> a, b = Node("a", 1), Node("b", 2)
    >>> topo = TopologySnapshot(1, (a,))
    >>> aff.assign(topo, DiscoveryEvent.joined(a)).owners_of(0)
    (Node(id='a', order=1),)
    >>> table = aff.assign(topo.with_node(b), DiscoveryEvent.joined(b))
    >>> table.owners_of(0)
    (Node(id='a', order=1), Node(id='b', order=2))
    """

    def __init__(
        self,
        partitions: int,
        backups: int = 0,
        *,
        name: str = "default",
        history_size: int = 100,
    ) -> None:
        validate_affinity(partitions, backups)
        if history_size < 1:
            msg = f"history_size must be positive, got {history_size}"
            raise ConfigurationError(msg)
        self._name = name
        self._planner = RebalancePlanner(partitions, backups)
        self._history_size = history_size
        self._history: OrderedDict[int, OwnershipTable] = OrderedDict()
        self._lineage: dict[int, _Planned] = {}
        self._current: OwnershipTable | None = None

    @classmethod
    def from_config(
        cls, config: AffinityConfig | GridConfig, name: str = "default"
    ) -> AffinityFunction:
        """Build the affinity function for cache *name* from *config*."""
        settings = (
            config.resolve_cache(name) if isinstance(config, GridConfig) else config
        )
        return cls(
            settings.partitions,
            settings.backups,
            name=name,
            history_size=settings.history_size,
        )

    @property
    def name(self) -> str:
        return self._name

    @property
    def partitions(self) -> int:
        return self._planner.partitions

    @property
    def backups(self) -> int:
        return self._planner.backups

    @property
    def current(self) -> OwnershipTable | None:
        """The most recently published table, ``None`` before the first call."""
        return self._current

    def assignment(self, version: int) -> OwnershipTable | None:
        """Return the cached table for topology *version*, if still kept."""
        return self._history.get(version)

    def assign(
        self, topology: TopologySnapshot, event: DiscoveryEvent | None = None
    ) -> OwnershipTable:
        """Compute, publish and return the table for *topology*.

        Parameters
        ----------
        topology : TopologySnapshot
            Alive nodes at the new version.
        event : DiscoveryEvent | None
            The change that produced *topology*.

        Returns
        -------
        OwnershipTable

        Raises
        ------
        ConfigurationError
            If *topology* is ``None``.
        ReplayError
            If *topology* is older than the current version and cannot be
            reproduced from the versions assigned so far.
        """
        if topology is None:
            msg = f"Cache {self._name!r}: topology must not be None"
            raise ConfigurationError(msg)

        cached = self._history.get(topology.version)
        if cached is not None and cached.topology == topology:
            return cached

        current = self._current
        if current is None or topology.version > current.version:
            parent = current.version if current is not None else None
            table = self._planner.plan(current, topology, event)
        else:
            parent = self._replay_parent(topology, current.version)
            table = self._planner.plan(self._rebuild(parent), topology, event)

        self._lineage[topology.version] = _Planned(topology, parent)
        self._remember(table)
        if current is None or topology.version >= current.version:
            self._current = table
        return table

    def _replay_parent(self, topology: TopologySnapshot, latest: int) -> int | None:
        version = topology.version
        planned = self._lineage.get(version)
        if planned is None:
            msg = (
                f"Cache {self._name!r}: topology version {version} is older than "
                f"current version {latest} and was never assigned"
            )
            raise ReplayError(msg)

        if planned.topology == topology:
            logger.warning(
                "Cache %r: topology version %d was evicted from history, "
                "replaying it from version %s",
                self._name, version, planned.parent,
            )
        elif version == latest:
            logger.warning(
                "Cache %r: topology of current version %d changed from %s to %s, "
                "recomputing from version %s",
                self._name, version, planned.topology, topology, planned.parent,
            )
        else:
            msg = (
                f"Cache {self._name!r}: topology version {version} was assigned "
                f"for {planned.topology} and cannot be reassigned for {topology} "
                f"behind current version {latest}"
            )
            raise ReplayError(msg)
        return planned.parent

    def _rebuild(self, version: int | None) -> OwnershipTable | None:
        """Return the table of *version*, replanning evicted ancestors."""
        pending: list[TopologySnapshot] = []
        while version is not None and version not in self._history:
            planned = self._lineage[version]
            pending.append(planned.topology)
            version = planned.parent

        table = self._history[version] if version is not None else None
        for topology in reversed(pending):
            table = self._planner.plan(table, topology)
        return table

    def _remember(self, table: OwnershipTable) -> None:
        self._history[table.version] = table
        self._history.move_to_end(table.version)
        while len(self._history) > self._history_size:
            self._history.popitem(last=False)

    def partition(self, key_hash: int) -> int:
        """Map an already computed key hash to its partition id."""
        return abs(key_hash) % self.partitions

    def owners_of(self, partition: int) -> Owners:
        """Owners of *partition* in the current table, primary first."""
        current = self._current
        if current is None:
            return ()
        return current.owners_of(partition)

    def map_key_to_nodes(self, key_hash: int) -> Owners:
        """Owners of the partition a key hash maps to, primary first."""
        return self.owners_of(self.partition(key_hash))

    def primary_for(self, key_hash: int) -> Node | None:
        owners = self.map_key_to_nodes(key_hash)
        return owners[0] if owners else None

    def map_keys_to_nodes(self, key_hashes: Iterable[int]) -> dict[Node, list[int]]:
        """Group key hashes by the primary node of their partition.

        Keys whose partition has no owner are left out, so the result is empty
        before the first assignment or for an empty topology.

        Examples
        --------
        >>> aff = AffinityFunction(partitions=4)
        >>> _ = aff.assign(TopologySnapshot(1, (Node("a", 1), Node("b", 2))))
        >>> {n.id: keys for n, keys in aff.map_keys_to_nodes([0, 1, 4, 6]).items()}
        {'a': [0, 4, 6], 'b': [1]}
        """
        current = self._current
        if current is None:
            return {}
        keys = list(key_hashes)
        partitions = sorted({self.partition(k) for k in keys})
        primaries = {
            partition: node
            for node, owned in current.map_partitions_to_nodes(partitions).items()
            for partition in owned
        }
        grouped: dict[Node, list[int]] = {}
        for key in keys:
            node = primaries.get(self.partition(key))
            if node is not None:
                grouped.setdefault(node, []).append(key)
        return grouped

    def reset(self) -> None:
        """Forget the current table and all history."""
        self._history.clear()
        self._lineage.clear()
        self._current = None

    def __repr__(self) -> str:
        return (
            f"AffinityFunction(name={self._name!r}, partitions={self.partitions}, "
            f"backups={self.backups})"
        )
