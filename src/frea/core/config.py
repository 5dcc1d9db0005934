from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal
from urllib.parse import urlparse

from frea.constants import (
    DEFAULT_CHANGES_URL,
    DEFAULT_REGISTRY_URL,
    TARBALL_CONTENT_TYPE,
)
from frea.core.errors import ConfigError


def source_id_for(changes_url: str) -> str:
    """Stable checkpoint document id for a change feed URL."""
    parsed = urlparse(changes_url)
    raw = f"{parsed.netloc}{parsed.path}".strip("/") or changes_url
    return re.sub(r"[^A-Za-z0-9._-]+", "_", raw).strip("_").lower()


def _require_positive(name: str, value: float) -> None:
    if value <= 0:
        raise ConfigError(f"{name} must be > 0 (got {value!r})")


@dataclass(frozen=True)
class FollowerConfig:
    """Configuration for the change feed follower."""

    changes_url: str = DEFAULT_CHANGES_URL
    source_id: str | None = None  # derived from changes_url when unset
    since: int | None = None  # overrides the stored checkpoint
    inactivity_timeout_s: float = 3600.0
    checkpoint_interval_s: float = 5.0
    publish_limit: int = 1  # events per window
    publish_window_s: float = 2.0
    reconnect_delay_s: float = 5.0

    def __post_init__(self) -> None:
        _require_positive("inactivity_timeout_s", self.inactivity_timeout_s)
        _require_positive("checkpoint_interval_s", self.checkpoint_interval_s)
        _require_positive("publish_limit", self.publish_limit)
        _require_positive("publish_window_s", self.publish_window_s)
        if self.since is not None and self.since < 0:
            raise ConfigError("since must be >= 0")

    @property
    def checkpoint_id(self) -> str:
        return self.source_id or source_id_for(self.changes_url)


@dataclass(frozen=True)
class DispatcherConfig:
    """Configuration for package dispatch (manifest resolution and fan-out)."""

    registry_url: str = DEFAULT_REGISTRY_URL
    fanout_concurrency: int = 16
    tarball_base_url: str | None = None  # rewrite dist.tarball to the mirror

    def __post_init__(self) -> None:
        _require_positive("fanout_concurrency", self.fanout_concurrency)


@dataclass(frozen=True)
class ReplicatorConfig:
    """Configuration for tarball replication."""

    digest_algorithm: str = "sha1"
    content_type: str = TARBALL_CONTENT_TYPE
    public: bool = True
    chunk_size: int = 64 * 1024

    def __post_init__(self) -> None:
        _require_positive("chunk_size", self.chunk_size)


@dataclass(frozen=True)
class MirrorConfig:
    """Top-level configuration shared by every process role."""

    store_root: Path = Path("./mirror")
    checkpoint_root: Path = Path("./checkpoints")
    spool_root: Path = Path("./spool")
    bus: Literal["local", "spool"] = "spool"
    store: Literal["fs", "s3"] = "fs"
    s3_bucket: str | None = None
    s3_prefix: str = ""
    s3_endpoint_url: str | None = None  # S3-compatible services
    s3_region: str | None = None
    timeout_s: int = 20
    max_connections: int = 64
    bus_concurrency: int = 8
    visibility_timeout_s: float = 240.0
    max_delivery_attempts: int = 5
    follower: FollowerConfig = field(default_factory=FollowerConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    replicator: ReplicatorConfig = field(default_factory=ReplicatorConfig)

    def __post_init__(self) -> None:
        if self.bus not in ("local", "spool"):
            raise ConfigError(f"unknown bus {self.bus!r}; expected 'local' or 'spool'")
        if self.store not in ("fs", "s3"):
            raise ConfigError(f"unknown store {self.store!r}; expected 'fs' or 's3'")
        if self.store == "s3" and not self.s3_bucket:
            raise ConfigError("the s3 store needs a bucket")
        _require_positive("timeout_s", self.timeout_s)
        _require_positive("max_connections", self.max_connections)
        _require_positive("bus_concurrency", self.bus_concurrency)
        _require_positive("visibility_timeout_s", self.visibility_timeout_s)
        _require_positive("max_delivery_attempts", self.max_delivery_attempts)
