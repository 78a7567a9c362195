"""
Directory Sync - Package Entry Point

Exports the sync service and the result types returned to API handlers.
"""

from .results import PeopleSyncResult, PeopleSyncStats, SyncResult, SyncStats
from .service import DirectorySyncService, count_synced_entities, graph_client_factory
from .settings import PeopleSyncOptions

__all__ = [
    "DirectorySyncService",
    "count_synced_entities",
    "graph_client_factory",
    "PeopleSyncOptions",
    "PeopleSyncResult",
    "PeopleSyncStats",
    "SyncResult",
    "SyncStats",
]
