"""Rolling Topology — fair affinity while nodes join and leave.

Grows a cluster one node at a time, fails one node, and prints how many
replica slots each node holds and which partitions have to be streamed.

    v1  [n1]            every partition on n1
    v2  [n1 n2]         n1 primary, n2 backup everywhere (N <= backups + 1)
    v3  [n1 n2 n3]      n3 takes a third of the slots, backups first
    v4  [n1 n2 n3 n4]   ...
    v5  [n1 n3 n4]      n2 fails, its backups are promoted, holes refilled

Configuration:
  AffinityConfig(
      partitions=64,  # fixed for the cache lifetime
      backups=1,      # one backup per partition
  )
"""

import logging

from gridaffinity import (
    AffinityConfig,
    AffinityFunction,
    DiscoveryEvent,
    Node,
    OwnershipTable,
    TopologySnapshot,
    transfers,
)


def show(table: OwnershipTable, previous: OwnershipTable | None) -> None:
    print(f"\n--- topology {table.topology} ---")
    for node in table.topology.nodes:
        print(
            f"  {node.id:>3}: {table.count_for(node):>3} slots, "
            f"{table.primary_count_for(node):>3} primaries"
        )
    moves = list(transfers(previous, table))
    print(f"  partitions to stream: {len(moves)}")
    for move in moves[:3]:
        sources = ",".join(n.id for n in move.supply_from) or "-"
        targets = ",".join(n.id for n in move.supply_to)
        print(f"    p{move.partition}: {sources} -> {targets}")


def main() -> None:
    logging.basicConfig(level=logging.DEBUG, format="%(name)s | %(message)s")
    affinity = AffinityFunction.from_config(AffinityConfig(partitions=64, backups=1))

    topology = TopologySnapshot(0)
    previous: OwnershipTable | None = None

    for order in range(1, 5):
        node = Node(f"n{order}", order)
        topology = topology.with_node(node)
        table = affinity.assign(topology, DiscoveryEvent.joined(node))
        show(table, previous)
        previous = table

    failed = topology.node_by_id("n2")
    assert failed is not None
    topology = topology.without_node(failed)
    table = affinity.assign(topology, DiscoveryEvent.failed(failed))
    show(table, previous)

    key_hash = 1_234_567
    owners = affinity.map_key_to_nodes(key_hash)
    print(
        f"\nkey hash {key_hash} -> partition {affinity.partition(key_hash)} "
        f"-> {[n.id for n in owners]}"
    )
    for node, keys in affinity.map_keys_to_nodes(range(10)).items():
        print(f"  primary {node.id}: key hashes {keys}")
    print("\n=== Done ===")


main()
