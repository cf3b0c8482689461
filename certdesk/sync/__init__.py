"""Console-side reconciliation against the ticket store."""

from .cache import SqliteFallbackCache
from .client import SyncClient
from .scheduler import SchedulerHandle

__all__ = ["SchedulerHandle", "SqliteFallbackCache", "SyncClient"]
