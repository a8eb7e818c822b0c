"""Durable queue of mutations waiting to reach the remote service."""
import logging
from typing import Callable, Optional

from prep_tracker.errors import InvalidDocument, MaxRetriesExceeded, SyncError
from prep_tracker.models import DrainResult, SyncQueueItem, parse_timestamp
from prep_tracker.schemas import ProgressDocument, SettingsDocument, load_document
from prep_tracker.service import ProgressService
from prep_tracker.store import LocalStore

logger = logging.getLogger(__name__)

COLLECTION = "syncQueue"


class SyncQueue:
    """
    Priority-then-FIFO queue persisted in the ``syncQueue`` collection.

    A failed item is retried on later drains until it has been attempted
    ``max_attempts`` times, then it is dropped and ``on_drop`` is called.
    """

    def __init__(
        self,
        store: LocalStore,
        service: ProgressService,
        max_attempts: int = 3,
        on_drop: Optional[Callable[[SyncQueueItem, MaxRetriesExceeded], None]] = None,
    ):
        self.store = store
        self.service = service
        self.max_attempts = max_attempts
        self.on_drop = on_drop
        self._draining = False

    @property
    def is_draining(self) -> bool:
        return self._draining

    async def enqueue(self, type: str, operation: str, data, priority: int = 1) -> SyncQueueItem:
        item = SyncQueueItem(
            type=type,
            operation=operation,
            data=data,
            priority=priority,
            max_attempts=self.max_attempts,
        )
        record = await self.store.put(COLLECTION, item.to_record())
        item.id = record["id"]
        logger.info(f"Added {operation} {type} to sync queue")
        return item

    async def items(self) -> list[SyncQueueItem]:
        """Pending items, highest priority first, oldest first within a priority."""
        records = await self.store.get_all(COLLECTION)
        items = [SyncQueueItem.from_record(r) for r in records if "type" in r]
        items.sort(key=lambda i: (-i.priority, parse_timestamp(i.timestamp), i.id or 0))
        return items

    async def drain(self, user_id: Optional[str] = None) -> DrainResult:
        """
        Push every pending item once.

        Only the items present when the drain starts are processed. A drain
        started while another is in flight returns immediately with
        ``skipped=True``.
        """
        if self._draining:
            logger.debug("Sync queue drain already in progress")
            return DrainResult(skipped=True)
        self._draining = True
        result = DrainResult()
        try:
            items = await self.items()
            if not items:
                logger.debug("Sync queue is empty")
                return result
            logger.info(f"Processing {len(items)} items in sync queue")
            for item in items:
                try:
                    await self._apply(item, user_id)
                except (SyncError, InvalidDocument) as e:
                    await self._record_failure(item, e, result)
                    continue
                await self.store.delete(COLLECTION, item.id)
                result.synced += 1
            logger.info(
                f"Sync queue processed: {result.synced} synced, "
                f"{result.failed} failed, {result.dropped} dropped"
            )
            return result
        finally:
            self._draining = False

    async def status(self) -> dict:
        items = await self.items()
        oldest = min((i.timestamp for i in items), key=parse_timestamp, default=None)
        return {
            "count": len(items),
            "pendingSync": len(items) > 0,
            "oldestItemTimestamp": oldest,
        }

    async def clear(self) -> None:
        await self.store.clear(COLLECTION)

    async def _apply(self, item: SyncQueueItem, user_id: Optional[str]) -> None:
        data = item.data or {}
        owner = (data.get("userId") or user_id) if isinstance(data, dict) else user_id
        if item.type == "progress":
            if item.operation == "update":
                await self.service.push_progress(owner, load_document(ProgressDocument, data))
            else:
                await self.service.push_activity(owner, item.operation, data)
        elif item.type == "settings":
            if item.operation == "update":
                await self.service.push_settings(owner, load_document(SettingsDocument, data))
            else:
                logger.warning(f"Unknown settings operation: {item.operation}")
        else:
            logger.warning(f"Unknown sync type: {item.type}")

    async def _record_failure(self, item: SyncQueueItem, error: Exception, result: DrainResult) -> None:
        item.attempts += 1
        logger.error(f"Failed to sync item {item.id} (attempt {item.attempts}/{item.max_attempts}): {error}")
        if item.attempts >= item.max_attempts:
            await self.store.delete(COLLECTION, item.id)
            result.dropped += 1
            dropped = MaxRetriesExceeded(item.id, item.attempts)
            logger.warning(f"Removing failed sync item: {dropped}")
            if self.on_drop:
                self.on_drop(item, dropped)
        else:
            await self.store.put(COLLECTION, item.to_record())
            result.failed += 1
