"""Message buses connecting the pipeline stages.

- LocalBus: asyncio queues, every stage in one process
- SpoolBus: directory spool shared between processes
"""

from frea.bus.local import LocalBus
from frea.bus.spool import SpoolBus

__all__ = ["LocalBus", "SpoolBus"]
