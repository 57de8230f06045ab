from .backends import DatabaseQueueBackend, DisabledQueueBackend, MemoryQueueBackend, QueueBackend
from .queue import SYNC_PREFIX, JobQueue
from .runner import UnitContext, run_units

__all__ = [
    "DatabaseQueueBackend",
    "DisabledQueueBackend",
    "JobQueue",
    "MemoryQueueBackend",
    "QueueBackend",
    "SYNC_PREFIX",
    "UnitContext",
    "run_units",
]
