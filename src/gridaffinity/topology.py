"""Topology primitives supplied by the membership layer.

Provides ``Node``, ``TopologySnapshot``, ``EventKind`` and ``DiscoveryEvent``.
All values are frozen dataclasses.  Nodes are ordered by join order so that
every member of the cluster iterates them identically.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from functools import total_ordering

from gridaffinity.errors import ConfigurationError

type NodeId = str


@total_ordering
@dataclass(frozen=True)
class Node:
    """A cluster member as seen by the affinity engine.

    Ordered by ``(order, id)``.  The join order is the only tie-breaker the
    planner ever uses, so two members holding the same topology sort nodes
    the same way.

    Parameters
    ----------
    id : NodeId
        Opaque node identity (e.g. a UUID or ``"host:port"``).
    order : int
        Monotonically increasing join-order value assigned by discovery.

    Examples
    --------
    >>> Node("b", order=1) < Node("a", order=2)
    True
    """

    id: NodeId
    order: int

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Node):
            return NotImplemented
        return (self.order, self.id) < (other.order, other.id)

    def __str__(self) -> str:
        return f"{self.id}#{self.order}"


class EventKind(Enum):
    """Kind of topology change that triggered an assignment."""

    joined = auto()
    left = auto()
    failed = auto()

    @property
    def is_departure(self) -> bool:
        return self in (EventKind.left, EventKind.failed)


@dataclass(frozen=True)
class DiscoveryEvent:
    """A membership change reported by discovery.

    Parameters
    ----------
    kind : EventKind
        Whether the node joined, left gracefully, or failed.
    node : Node
        The node the event is about.

    Examples
    --------
    >>> DiscoveryEvent.joined(Node("n1", 1)).kind
    <EventKind.joined: 1>
    """

    kind: EventKind
    node: Node

    @classmethod
    def joined(cls, node: Node) -> DiscoveryEvent:
        return cls(EventKind.joined, node)

    @classmethod
    def left(cls, node: Node) -> DiscoveryEvent:
        return cls(EventKind.left, node)

    @classmethod
    def failed(cls, node: Node) -> DiscoveryEvent:
        return cls(EventKind.failed, node)


@dataclass(frozen=True)
class TopologySnapshot:
    """The set of alive nodes at one topology version.

    Nodes are stored in canonical join order regardless of the order they
    were supplied in.  Duplicate nodes are rejected.

    Parameters
    ----------
    version : int
        Strictly increasing topology version.
    nodes : tuple[Node, ...]
        Alive members.

    Examples
    --------
    >>> topo = TopologySnapshot(1, (Node("b", 2), Node("a", 1)))
    >>> [n.id for n in topo.nodes]
    ['a', 'b']
    >>> topo.with_node(Node("c", 3)).version
    2
    """

    version: int
    nodes: tuple[Node, ...] = field(default_factory=lambda: tuple[Node, ...]())

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.nodes))
        if len(set(ordered)) != len(ordered):
            msg = f"Topology {self.version} lists a node more than once"
            raise ConfigurationError(msg)
        object.__setattr__(self, "nodes", ordered)

    @property
    def size(self) -> int:
        return len(self.nodes)

    def __contains__(self, node: object) -> bool:
        return node in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def node_by_id(self, node_id: NodeId) -> Node | None:
        """Return the node with *node_id*, or ``None`` if it is not alive."""
        return next((n for n in self.nodes if n.id == node_id), None)

    def with_node(self, node: Node) -> TopologySnapshot:
        """Return the next version with *node* added."""
        return TopologySnapshot(self.version + 1, (*self.nodes, node))

    def without_node(self, node: Node) -> TopologySnapshot:
        """Return the next version with *node* removed."""
        return TopologySnapshot(
            self.version + 1, tuple(n for n in self.nodes if n != node)
        )

    def __str__(self) -> str:
        members = ", ".join(str(n) for n in self.nodes)
        return f"v{self.version}[{members}]"
