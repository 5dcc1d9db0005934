from frea.api.services import run_dispatcher, run_follower, run_mirror, run_replicator

__all__ = [
    "run_dispatcher",
    "run_follower",
    "run_mirror",
    "run_replicator",
]
