"""Shared fixtures and assertions for affinity tests."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from gridaffinity import LoadModel, Node, OwnershipTable, TopologySnapshot


def make_node(order: int) -> Node:
    return Node(f"node-{order}", order=order)


type Verifier = Callable[[OwnershipTable, int, int], LoadModel]


def verify_assignment(
    table: OwnershipTable, backups: int, partitions: int
) -> LoadModel:
    """Assert the ownership invariants and the balance bound of *table*."""
    topology = table.topology
    size = topology.size
    model = LoadModel(partitions, backups, size)

    assert table.partitions == partitions
    for partition in range(partitions):
        owners = table.owners_of(partition)
        assert len(owners) == min(backups + 1, size)
        assert len(set(owners)) == len(owners)
        assert all(n in topology for n in owners)

    if size == 0:
        return model

    counts = [table.count_for(n) for n in topology.nodes]
    assert sum(counts) == model.total_slots
    assert max(counts) - min(counts) < (backups + 1) * size
    for count in counts:
        assert abs(count - model.ideal_per_node) <= 1, (
            f"count={count}, ideal={model.ideal_per_node}"
        )
    return model


def verify_primaries(
    table: OwnershipTable, backups: int, partitions: int
) -> LoadModel:
    """Assert every node of *table* holds a fair share of primaries.

    Tables where every node owns every partition put all primaries on the
    first node and are skipped.
    """
    model = LoadModel(partitions, backups, table.topology.size)
    if model.nodes == 0 or model.is_degenerate:
        return model
    low, high = model.min_primaries_per_node, model.max_primaries_per_node
    for node in table.topology.nodes:
        count = table.primary_count_for(node)
        assert low <= count <= high, f"{node}: primaries={count}, bounds={low}..{high}"
    return model


@pytest.fixture
def verify() -> Verifier:
    return verify_assignment


@pytest.fixture
def verify_primary_share() -> Verifier:
    return verify_primaries


@pytest.fixture
def node_factory() -> Callable[[int], Node]:
    return make_node


@pytest.fixture
def three_nodes() -> TopologySnapshot:
    """Topology ``v1`` with nodes a, b, c joined in that order."""
    return TopologySnapshot(1, (Node("a", 1), Node("b", 2), Node("c", 3)))
