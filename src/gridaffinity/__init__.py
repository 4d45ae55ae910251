from gridaffinity.affinity import AffinityFunction
from gridaffinity.config import (
    AffinityConfig,
    CacheConfig,
    GridConfig,
    discover_config,
    load_config,
)
from gridaffinity.errors import ConfigurationError, InvariantViolation, ReplayError
from gridaffinity.load import LoadModel
from gridaffinity.ownership import (
    OwnershipTable,
    Owners,
    PartitionChange,
    PartitionTransfer,
    transfers,
)
from gridaffinity.planner import RebalancePlanner
from gridaffinity.topology import (
    DiscoveryEvent,
    EventKind,
    Node,
    NodeId,
    TopologySnapshot,
)

__all__ = [
    "AffinityConfig",
    "AffinityFunction",
    "CacheConfig",
    "ConfigurationError",
    "DiscoveryEvent",
    "EventKind",
    "GridConfig",
    "InvariantViolation",
    "LoadModel",
    "Node",
    "NodeId",
    "OwnershipTable",
    "Owners",
    "PartitionChange",
    "PartitionTransfer",
    "RebalancePlanner",
    "ReplayError",
    "TopologySnapshot",
    "discover_config",
    "load_config",
    "transfers",
]
