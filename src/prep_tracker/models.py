"""Data classes for queue items, conflicts and resolutions."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Coerce an ISO string, epoch milliseconds or datetime to an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class Strategy(str, Enum):
    SERVER_WINS = "server_wins"
    LOCAL_WINS = "local_wins"
    MERGE_LATEST_WINS = "merge_latest_wins"
    MERGE_BOTH = "merge_both"
    USER_CHOICE = "user_choice"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class SyncQueueItem:
    type: str
    operation: str
    data: Any
    priority: int = 1
    timestamp: str = field(default_factory=lambda: to_iso(utcnow()))
    attempts: int = 0
    max_attempts: int = 3
    id: Optional[int] = None

    def to_record(self) -> dict:
        record = {
            "type": self.type,
            "operation": self.operation,
            "data": self.data,
            "priority": self.priority,
            "timestamp": self.timestamp,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
        }
        if self.id is not None:
            record["id"] = self.id
        return record

    @classmethod
    def from_record(cls, record: dict) -> "SyncQueueItem":
        return cls(
            id=record.get("id"),
            type=record["type"],
            operation=record["operation"],
            data=record.get("data"),
            priority=record.get("priority", 1),
            timestamp=record.get("timestamp") or to_iso(utcnow()),
            attempts=record.get("attempts", 0),
            max_attempts=record.get("maxAttempts", 3),
        )


@dataclass
class DrainResult:
    synced: int = 0
    failed: int = 0
    dropped: int = 0
    skipped: bool = False


@dataclass
class Conflict:
    type: str
    field: str
    local_value: Any
    server_value: Any
    local_timestamp: Any = None
    server_timestamp: Any = None
    severity: Severity = Severity.MEDIUM


@dataclass
class Resolution:
    field: str
    resolved_value: Any
    strategy: str
    winner: Optional[str] = None
    status: str = "resolved"
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"
