from __future__ import annotations

from .core.config import DispatcherConfig, FollowerConfig, MirrorConfig, ReplicatorConfig
from .core.models import ArtifactTask, ChangeEvent, Message, Outcome
from .core.use_cases.dispatch import Dispatcher
from .core.use_cases.follow import Follower
from .core.use_cases.replicate import Replicator

__version__ = "0.1.0"

__all__ = [
    "Follower",
    "Dispatcher",
    "Replicator",
    "MirrorConfig",
    "FollowerConfig",
    "DispatcherConfig",
    "ReplicatorConfig",
    "ChangeEvent",
    "Message",
    "ArtifactTask",
    "Outcome",
    "__version__",
]
