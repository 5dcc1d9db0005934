"""Pipeline stages: follow the change feed, dispatch packages, replicate tarballs."""

from frea.core.use_cases.dispatch import Dispatcher
from frea.core.use_cases.follow import CursorTracker, Follower, FollowStats
from frea.core.use_cases.replicate import Replicator

__all__ = [
    "CursorTracker",
    "Dispatcher",
    "Follower",
    "FollowStats",
    "Replicator",
]
