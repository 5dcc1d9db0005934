"""Core data models, configuration, errors and interfaces.

This package provides:
- Data models (ChangeEvent, Message, ArtifactTask, Outcome variants)
- Configuration classes (MirrorConfig and its per-role sections)
- Error types raised at the process boundary
"""

from frea.core.config import DispatcherConfig, FollowerConfig, MirrorConfig, ReplicatorConfig
from frea.core.errors import CheckpointMissingError, CheckpointReadError, ConfigError, FreaError
from frea.core.models import (
    ArtifactTask,
    ChangeEvent,
    DispatchOutcome,
    Message,
    Outcome,
    ReplicationOutcome,
)

__all__ = [
    "DispatcherConfig",
    "FollowerConfig",
    "MirrorConfig",
    "ReplicatorConfig",
    "CheckpointMissingError",
    "CheckpointReadError",
    "ConfigError",
    "FreaError",
    "ArtifactTask",
    "ChangeEvent",
    "DispatchOutcome",
    "Message",
    "Outcome",
    "ReplicationOutcome",
]
