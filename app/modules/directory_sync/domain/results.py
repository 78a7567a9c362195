from dataclasses import asdict, dataclass, field, fields
from typing import Any


@dataclass(slots=True)
class SyncStats:
    groups_found: int = 0
    groups_synced: int = 0
    groups_removed: int = 0
    users_created: int = 0
    users_updated: int = 0
    users_deleted: int = 0
    people_created: int = 0
    people_updated: int = 0
    people_deleted: int = 0
    roles_assigned: int = 0
    roles_removed: int = 0
    managers_updated: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def counts(self) -> dict[str, int]:
        """Every counter, without the error list."""
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name != "errors"}

    def restore_counts(self, counts: dict[str, int]) -> None:
        for name, value in counts.items():
            setattr(self, name, value)


@dataclass(slots=True)
class SyncResult:
    success: bool
    message: str
    stats: SyncStats = field(default_factory=SyncStats)
    # Set when the run never started because another one holds the org lock.
    busy: bool = False


@dataclass(slots=True)
class PeopleSyncStats:
    groups_found: int = 0
    people_created: int = 0
    people_updated: int = 0
    people_deleted: int = 0
    synced_count: int = 0
    managers_updated: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class PeopleSyncResult:
    success: bool
    message: str
    stats: PeopleSyncStats = field(default_factory=PeopleSyncStats)
    busy: bool = False
