from __future__ import annotations

import logging
import re

import pytest

from gridaffinity import (
    AffinityConfig,
    AffinityFunction,
    ConfigurationError,
    DiscoveryEvent,
    GridConfig,
    Node,
    OwnershipTable,
    RebalancePlanner,
    ReplayError,
    TopologySnapshot,
)
from gridaffinity.config import CacheConfig


A, B, C, D = Node("a", 1), Node("b", 2), Node("c", 3), Node("d", 4)


def _replay(aff: AffinityFunction, topologies: list[TopologySnapshot]) -> list[OwnershipTable]:
    return [aff.assign(t) for t in topologies]


@pytest.fixture
def history() -> list[TopologySnapshot]:
    v1 = TopologySnapshot(1, (A,))
    v2 = v1.with_node(B)
    v3 = v2.with_node(C)
    v4 = v3.with_node(D)
    v5 = v4.without_node(B)
    return [v1, v2, v3, v4, v5]


class TestValidation:
    @pytest.mark.parametrize("partitions", [0, -1])
    def test_rejects_non_positive_partitions(self, partitions: int) -> None:
        with pytest.raises(ConfigurationError, match="partitions"):
            AffinityFunction(partitions)

    def test_rejects_negative_backups(self) -> None:
        with pytest.raises(ConfigurationError, match="backups"):
            AffinityFunction(16, -1)

    @pytest.mark.parametrize("partitions", ["16", 16.0, True])
    def test_rejects_non_integer_partitions(self, partitions: object) -> None:
        with pytest.raises(ConfigurationError):
            AffinityFunction(partitions)  # type: ignore[arg-type]

    def test_rejects_non_positive_history(self) -> None:
        with pytest.raises(ConfigurationError, match="history_size"):
            AffinityFunction(16, history_size=0)

    def test_rejects_missing_topology(self) -> None:
        aff = AffinityFunction(16)
        with pytest.raises(ConfigurationError, match="topology"):
            aff.assign(None)  # type: ignore[arg-type]

    def test_empty_topology_is_not_an_error(self) -> None:
        aff = AffinityFunction(4, 1)
        table = aff.assign(TopologySnapshot(1))
        assert table.assignments == ((), (), (), ())


class TestAssign:
    def test_publishes_current(self, history: list[TopologySnapshot]) -> None:
        aff = AffinityFunction(32, 1)
        assert aff.current is None
        tables = _replay(aff, history)
        assert aff.current is tables[-1]
        assert aff.current.version == 5

    def test_uses_previous_assignment(self, history: list[TopologySnapshot]) -> None:
        aff = AffinityFunction(32, 1)
        tables = _replay(aff, history[:3])
        grown = aff.assign(history[3], DiscoveryEvent.joined(D))
        # only the new node receives data
        for change in tables[-1].diff(grown):
            assert change.supply_to in ((), (D,))

    def test_replaying_a_version_returns_cached_table(
        self, history: list[TopologySnapshot]
    ) -> None:
        aff = AffinityFunction(32, 1)
        tables = _replay(aff, history)
        assert aff.assign(history[2]) is tables[2]
        assert aff.current is tables[-1]

    def test_members_agree_without_coordination(
        self, history: list[TopologySnapshot]
    ) -> None:
        first = _replay(AffinityFunction(64, 2), history)
        second = _replay(AffinityFunction(64, 2), history)
        assert first == second

    def test_replay_after_eviction_returns_published_table(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        topologies = [TopologySnapshot(1, (A, B, C))]
        for order in range(4, 10):
            topologies.append(topologies[-1].with_node(Node(f"n{order}", order)))
        aff = AffinityFunction(64, 1, history_size=2)
        tables = _replay(aff, topologies)
        assert aff.assignment(3) is None

        with caplog.at_level(logging.WARNING, logger="gridaffinity.affinity"):
            replayed = aff.assign(topologies[2])
        assert "evicted from history" in caplog.text
        assert replayed == tables[2]
        assert tables[2].diff(replayed) == ()
        # an old version never replaces the current table
        assert aff.current is tables[-1]

        for topology, table in zip(topologies, tables):
            assert aff.assign(topology) == table

    def test_degenerate_version_replays_after_eviction(
        self, history: list[TopologySnapshot]
    ) -> None:
        aff = AffinityFunction(32, 1, history_size=2)
        tables = _replay(aff, history)
        assert aff.assignment(1) is None
        assert aff.assign(history[1]) == tables[1]

    def test_never_assigned_old_version_is_rejected(self) -> None:
        aff = AffinityFunction(32, 1)
        aff.assign(TopologySnapshot(1, (A, B, C)))
        aff.assign(TopologySnapshot(5, (A, B, C, D)))
        with pytest.raises(ReplayError, match="never assigned"):
            aff.assign(TopologySnapshot(3, (A, B, D)))
        assert aff.current.version == 5

    def test_old_version_with_other_topology_is_rejected(
        self, history: list[TopologySnapshot]
    ) -> None:
        aff = AffinityFunction(32, 1)
        _replay(aff, history)
        with pytest.raises(ReplayError, match="cannot be reassigned"):
            aff.assign(TopologySnapshot(3, (A, B, D)))

    def test_current_version_with_new_topology_is_replanned(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        e = Node("e", 5)
        aff = AffinityFunction(32, 1)
        first = aff.assign(TopologySnapshot(1, (A, B, C)))
        aff.assign(TopologySnapshot(2, (A, B, C, D)))

        corrected = TopologySnapshot(2, (A, B, C, e))
        with caplog.at_level(logging.WARNING, logger="gridaffinity.affinity"):
            table = aff.assign(corrected)
        assert "changed from" in caplog.text
        assert "evicted" not in caplog.text
        assert table == RebalancePlanner(32, 1).plan(first, corrected)
        assert aff.current is table

    def test_reset_forgets_everything(self, history: list[TopologySnapshot]) -> None:
        aff = AffinityFunction(32, 1)
        _replay(aff, history)
        aff.reset()
        assert aff.current is None
        assert aff.assignment(5) is None
        assert aff.owners_of(0) == ()


class TestRouting:
    def test_partition_of_key_hash(self) -> None:
        aff = AffinityFunction(16)
        assert aff.partition(35) == 3
        assert aff.partition(-35) == 3
        assert aff.partition(0) == 0

    def test_lookups_before_first_assignment(self) -> None:
        aff = AffinityFunction(16)
        assert aff.owners_of(3) == ()
        assert aff.map_key_to_nodes(123) == ()
        assert aff.primary_for(123) is None

    def test_lookups_follow_current_table(self) -> None:
        aff = AffinityFunction(16, 1)
        table = aff.assign(TopologySnapshot(1, (A, B, C)))
        for key_hash in (0, 7, -42, 1_000_003):
            partition = aff.partition(key_hash)
            assert aff.map_key_to_nodes(key_hash) == table.owners_of(partition)
            assert aff.primary_for(key_hash) == table.primary_of(partition)

    def test_map_keys_groups_by_primary(self) -> None:
        aff = AffinityFunction(16, 1)
        table = aff.assign(TopologySnapshot(1, (A, B, C)))
        keys = [0, 7, -42, 1_000_003, 16, 23]
        grouped = aff.map_keys_to_nodes(keys)

        assert sorted(k for ks in grouped.values() for k in ks) == sorted(keys)
        for node, node_keys in grouped.items():
            for key in node_keys:
                assert table.primary_of(aff.partition(key)) == node
        # keys keep their input order within a node
        owner_keys = grouped[table.primary_of(0)]
        assert owner_keys.index(0) < owner_keys.index(16)

    def test_map_keys_without_owners_is_empty(self) -> None:
        aff = AffinityFunction(16, 1)
        assert aff.map_keys_to_nodes([1, 2, 3]) == {}
        aff.assign(TopologySnapshot(1))
        assert aff.map_keys_to_nodes([1, 2, 3]) == {}


class TestFromConfig:
    def test_from_affinity_config(self) -> None:
        aff = AffinityFunction.from_config(AffinityConfig(partitions=64, backups=2))
        assert aff.partitions == 64
        assert aff.backups == 2
        assert aff.name == "default"

    def test_from_grid_config_resolves_cache(self) -> None:
        config = GridConfig(
            defaults=AffinityConfig(partitions=128),
            caches=(CacheConfig(pattern=re.compile("^orders$"), overrides={"backups": 3}),),
        )
        aff = AffinityFunction.from_config(config, "orders")
        assert aff.partitions == 128
        assert aff.backups == 3
        assert repr(aff) == "AffinityFunction(name='orders', partitions=128, backups=3)"
