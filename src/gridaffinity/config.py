"""TOML-based configuration for affinity caches.

Provides ``load_config`` / ``discover_config`` for loading ``affinity.toml``
and frozen dataclasses for the per-cache affinity settings and the name
pattern overrides applied on top of the defaults.
"""

from __future__ import annotations

import re
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from gridaffinity.errors import ConfigurationError


__all__ = [
    "AffinityConfig",
    "CacheConfig",
    "GridConfig",
    "discover_config",
    "load_config",
]

CONFIG_FILE_NAME = "affinity.toml"


@dataclass(frozen=True)
class AffinityConfig:
    """Affinity settings of a single cache.

    Parameters
    ----------
    partitions : int
        Number of partitions, fixed for the cache's lifetime.
    backups : int
        Backup replicas per partition (``0`` keeps a single copy).
    history_size : int
        Number of past assignments kept for replayed topology versions.

    Raises
    ------
    ConfigurationError
        If ``partitions <= 0``, ``backups < 0`` or ``history_size < 1``.

    Examples
    --------
    >>> AffinityConfig(partitions=1024, backups=2)
    AffinityConfig(partitions=1024, backups=2, history_size=100)
    """

    partitions: int = 256
    backups: int = 0
    history_size: int = 100

    def __post_init__(self) -> None:
        validate_affinity(self.partitions, self.backups)
        if self.history_size < 1:
            msg = f"history_size must be positive, got {self.history_size}"
            raise ConfigurationError(msg)


def validate_affinity(partitions: object, backups: object) -> None:
    """Reject partition and backup counts the engine cannot work with."""
    if not isinstance(partitions, int) or isinstance(partitions, bool):
        msg = f"partitions must be an integer, got {partitions!r}"
        raise ConfigurationError(msg)
    if not isinstance(backups, int) or isinstance(backups, bool):
        msg = f"backups must be an integer, got {backups!r}"
        raise ConfigurationError(msg)
    if partitions <= 0:
        msg = f"partitions must be positive, got {partitions}"
        raise ConfigurationError(msg)
    if backups < 0:
        msg = f"backups must be non-negative, got {backups}"
        raise ConfigurationError(msg)


@dataclass(frozen=True)
class CacheConfig:
    """Per-cache override matched by cache name.

    Parameters
    ----------
    pattern : re.Pattern[str]
        Regex matched against cache names via ``fullmatch``.
    overrides : dict[str, Any]
        Fields to override in ``AffinityConfig``.
    """

    pattern: re.Pattern[str]
    overrides: dict[str, Any]


@dataclass(frozen=True)
class GridConfig:
    """Top-level configuration: defaults plus per-cache overrides.

    Examples
    --------
    >>> cfg = GridConfig(defaults=AffinityConfig(backups=1))
    >>> cfg.resolve_cache("orders").backups
    1
    """

    defaults: AffinityConfig = field(default_factory=AffinityConfig)
    caches: tuple[CacheConfig, ...] = ()

    def resolve_cache(self, name: str) -> AffinityConfig:
        """Return the effective settings for cache *name*.

        The first ``CacheConfig`` whose pattern matches wins; its overrides
        are merged on top of ``defaults``.
        """
        for cache in self.caches:
            if cache.pattern.fullmatch(name):
                try:
                    return AffinityConfig(
                        **{**asdict(self.defaults), **cache.overrides}
                    )
                except TypeError as e:
                    msg = f"Invalid settings for cache {name!r}: {e}"
                    raise ConfigurationError(msg) from e
        return self.defaults


def discover_config(start: Path | None = None) -> Path | None:
    """Walk up from *start* (default: cwd) looking for ``affinity.toml``."""
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(path: Path | None = None) -> GridConfig:
    """Load a ``GridConfig`` from a TOML file.

    If *path* is ``None``, auto-discovers ``affinity.toml`` by walking up from
    the current working directory and returns the defaults when nothing is
    found.

    Raises
    ------
    FileNotFoundError
        If an explicit *path* is given but does not exist.
    ConfigurationError
        If the file holds unknown keys or invalid values.

    Examples
    --------
    >>> config = load_config(Path("affinity.toml"))
    >>> config.resolve_cache("orders").partitions
    256
    """
    if path is None:
        discovered = discover_config()
        if discovered is None:
            return GridConfig()
        path = discovered

    if not path.exists():
        msg = f"Config file not found: {path}"
        raise FileNotFoundError(msg)

    with path.open("rb") as f:
        raw = tomllib.load(f)

    try:
        defaults = AffinityConfig(**raw.get("defaults", {}))
    except TypeError as e:
        msg = f"Invalid [defaults] in {path}: {e}"
        raise ConfigurationError(msg) from e

    caches_raw: dict[str, Any] = raw.get("caches", {})
    caches: list[CacheConfig] = []
    for name, overrides in caches_raw.items():
        pattern = (
            re.compile(f"^{name}$")
            if re.fullmatch(r"[\w-]+", name)
            else re.compile(name)
        )
        caches.append(CacheConfig(pattern=pattern, overrides=dict(overrides)))

    return GridConfig(defaults=defaults, caches=tuple(caches))
