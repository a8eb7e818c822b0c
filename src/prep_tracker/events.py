"""Notifications published by the tracker for whatever UI is listening."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from prep_tracker.models import Conflict, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AchievementUnlocked:
    key: str
    title: str
    description: str


@dataclass(frozen=True)
class SyncStatusChanged:
    status: str  # "syncing", "synced", "failed", "offline", "online"
    detail: Optional[str] = None
    at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ConflictNeedsChoice:
    conflict: Conflict


@dataclass(frozen=True)
class SyncItemDropped:
    item_id: Any
    type: str
    operation: str
    attempts: int


@dataclass(frozen=True)
class StorageDegraded:
    reason: str


Listener = Callable[[Any], None]


class EventBus:
    """Fire-and-forget observer registry.

    A listener that raises is logged and skipped; it never affects the
    tracker or the other listeners.
    """

    def __init__(self):
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Listener failed handling {type(event).__name__}")
