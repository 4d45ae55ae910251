"""Error types raised by the affinity engine."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid cache configuration or malformed input to the engine.

    Raised for ``partitions <= 0``, ``backups < 0``, a missing topology, or a
    previous assignment built for a different partition count.  Fatal at
    cache startup.
    """


class InvariantViolation(AssertionError):
    """An assignment breaks an ownership invariant.

    Raised when an owner list contains a duplicate node, a node outside the
    topology, or the wrong number of owners.  Never expected in correct
    operation; the table is rejected before it can be published.
    """


class ReplayError(LookupError):
    """A past topology version cannot be reproduced.

    Raised when ``assign`` receives a version older than the current one that
    this instance never assigned, or one it assigned for a different
    topology.  Returning a freshly planned table there would disagree with
    the table other members published for that version.
    """
