"""
Offline-first progress tracking.

ProgressTracker owns the live ProgressDocument for one user. Every study
action mutates it, persists it to the LocalStore and then tries to reach the
remote service; anything that cannot be delivered goes through the SyncQueue.
A sync pulls the remote copy, reconciles it through the ConflictResolver,
pushes the result and drains the queue.

Example:
    tracker = build_tracker()
    await tracker.initialize("42")
    await tracker.track_question_studied("q-17", "algorithms", "medium", 90_000)
    await tracker.sync()
"""
import asyncio
import logging
import uuid
from datetime import date, datetime
from typing import Callable, Optional

from prep_tracker.achievements import check_achievements
from prep_tracker.config import Settings, get_settings
from prep_tracker.conflicts import ConflictResolver
from prep_tracker.errors import InvalidDocument, StorageError, StorageUnavailable, SyncError
from prep_tracker.events import (
    AchievementUnlocked, ConflictNeedsChoice, EventBus, StorageDegraded, SyncItemDropped,
    SyncStatusChanged,
)
from prep_tracker.models import Conflict, Resolution, SyncQueueItem, parse_timestamp, to_iso, utcnow
from prep_tracker.schemas import (
    SETTINGS_CATEGORIES, DayCompletion, ProgressDocument, SettingsDocument, StudySession,
    TrackProgress, progress_key, settings_key,
)
from prep_tracker.service import HttpProgressService, ProgressService
from prep_tracker.store import LocalStore
from prep_tracker.streaks import update_streak
from prep_tracker.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

ANONYMOUS_ID_KEY = "anonymousUserId"
STREAK_SESSION_TYPES = ("study", "practice")
IMMEDIATE_FAILURE_PRIORITY = 2


class ProgressTracker:
    """Records study activity for one user and keeps it in sync with the server."""

    def __init__(
        self,
        store: LocalStore,
        queue: SyncQueue,
        resolver: ConflictResolver,
        service: ProgressService,
        events: Optional[EventBus] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        online: bool = True,
    ):
        self.store = store
        self.queue = queue
        self.resolver = resolver
        self.service = service
        self.events = events or EventBus()
        self.config = config or get_settings()
        self._clock = clock

        self.user_id: Optional[str] = None
        self.current_progress: Optional[ProgressDocument] = None
        self.current_settings: Optional[SettingsDocument] = None
        self.is_online = online
        self.in_sync = False
        self.last_sync_time: Optional[datetime] = None
        self.dropped_items = 0
        self._settings_dirty = False

        if self.queue.on_drop is None:
            self.queue.on_drop = self._on_item_dropped

    # ─────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────

    @property
    def is_ready(self) -> bool:
        return self.current_progress is not None

    async def initialize(self, user_id: Optional[str] = None) -> ProgressDocument:
        """
        Open local storage and load (or create) the user's document.

        Falls back to in-memory storage for the session when the database
        cannot be opened.

        Raises:
            InvalidDocument: if the persisted document fails validation
        """
        try:
            await self.store.init()
        except StorageUnavailable as e:
            logger.warning(f"Progress will not survive this session: {e}")
            self.store.use_memory()
            self.events.publish(StorageDegraded(str(e)))

        if user_id is None:
            user_id = await self._anonymous_user_id()
        self.user_id = str(user_id)

        record = await self.store.get("progress", progress_key(self.user_id))
        if record:
            self.current_progress = ProgressDocument.from_record(record)
            logger.info(f"Loaded offline progress for user {self.user_id}")
        else:
            self.current_progress = ProgressDocument(userId=self.user_id, lastModified=self._clock())
            await self._persist_progress()
            logger.info(f"Created new progress document for user {self.user_id}")

        settings_record = await self.store.get("settings", settings_key(self.user_id))
        if settings_record:
            self.current_settings = SettingsDocument.from_record(settings_record)
        else:
            self.current_settings = SettingsDocument()
        return self.get_current_progress()

    def use_service(self, service: ProgressService) -> None:
        """Point the tracker and its queue at a different remote backend."""
        self.service = service
        self.queue.service = service

    async def save_before_unload(self) -> None:
        if self.current_progress is not None:
            await self._persist_progress()
            logger.debug("Progress saved before shutdown")

    async def clear_offline_data(self) -> None:
        """Delete this user's offline progress and forget the live document."""
        if self.user_id is not None:
            await self.store.delete("progress", progress_key(self.user_id))
        self.current_progress = None
        logger.info("Offline progress data cleared")

    # ─────────────────────────────────────────────────────────────────
    # Study actions
    # ─────────────────────────────────────────────────────────────────

    async def track_day_completion(
        self, track_name: str, day_number: int, tasks=(), study_time: float = 0,
    ) -> ProgressDocument:
        doc = self._require_ready()
        backup = doc.model_copy(deep=True)
        now = self._clock()
        try:
            track = doc.tracks.get(track_name)
            if track is None:
                track = TrackProgress(totalDays=self.config.default_track_days)
                doc.tracks[track_name] = track
            existing = track.completedDays.get(day_number)
            if existing is None:
                track.completedDays[day_number] = DayCompletion(
                    completedAt=now, tasks=list(tasks), studyTime=study_time,
                )
            else:
                existing.tasks = list(tasks) or existing.tasks
                existing.studyTime = study_time or existing.studyTime
            track.currentDay = max(track.currentDay, day_number + 1)
            update_streak(doc.streaks, now.date())
            unlocked = await self._commit(doc, now)
        except Exception:
            self.current_progress = backup
            raise

        logger.info(f"Completed {track_name} day {day_number}")
        self._announce(unlocked)
        await self._push_or_enqueue("day_completion", {
            "userId": self.user_id,
            "trackName": track_name,
            "dayNumber": day_number,
            "tasks": list(tasks),
            "studyTime": study_time,
            "timestamp": to_iso(now),
        })
        return self.get_current_progress()

    async def track_question_studied(
        self, question_id, category: str, difficulty: Optional[str] = None, time_spent: float = 0,
    ) -> ProgressDocument:
        doc = self._require_ready()
        backup = doc.model_copy(deep=True)
        now = self._clock()
        question_id = str(question_id)
        try:
            stats = doc.statistics
            if question_id not in stats.questionsStudied:
                stats.questionsStudied.append(question_id)
            stats.categoriesExplored[category] = stats.categoriesExplored.get(category, 0) + 1
            stats.totalStudyTime += time_spent
            doc.sessions.append(StudySession(
                id=self._session_id(now),
                type="question_study",
                timestamp=now,
                questionId=question_id,
                category=category,
                difficulty=difficulty,
                timeSpent=time_spent,
            ))
            unlocked = await self._commit(doc, now)
        except Exception:
            self.current_progress = backup
            raise

        logger.debug(f"Studied question {question_id} in {category}")
        self._announce(unlocked)
        await self._push_or_enqueue("question_study", {
            "userId": self.user_id,
            "questionId": question_id,
            "category": category,
            "difficulty": difficulty,
            "timeSpent": time_spent,
            "timestamp": to_iso(now),
        })
        return self.get_current_progress()

    async def track_session_time(
        self, session_type: str, duration: float, metadata: Optional[dict] = None,
    ) -> ProgressDocument:
        doc = self._require_ready()
        backup = doc.model_copy(deep=True)
        now = self._clock()
        try:
            doc.sessions.append(StudySession(
                id=self._session_id(now),
                type=session_type,
                timestamp=now,
                duration=duration,
                metadata=dict(metadata or {}),
            ))
            doc.statistics.totalStudyTime += duration
            if session_type in STREAK_SESSION_TYPES:
                update_streak(doc.streaks, now.date())
            unlocked = await self._commit(doc, now)
        except Exception:
            self.current_progress = backup
            raise

        logger.debug(f"Recorded {session_type} session of {duration} ms")
        self._announce(unlocked)
        await self._push_or_enqueue("session_time", {
            "userId": self.user_id,
            "sessionType": session_type,
            "duration": duration,
            "metadata": dict(metadata or {}),
            "timestamp": to_iso(now),
        })
        return self.get_current_progress()

    def update_streak(self, study_date: Optional[date] = None) -> None:
        """Apply study activity on a date to the live document's streak (not persisted)."""
        doc = self._require_ready()
        update_streak(doc.streaks, study_date or self._clock().date())

    # ─────────────────────────────────────────────────────────────────
    # Sync
    # ─────────────────────────────────────────────────────────────────

    async def sync(self) -> bool:
        """
        Reconcile with the remote copy, push, then drain the queue.

        Returns False without doing anything when offline or when a sync is
        already running. Network errors are logged, never raised.
        """
        if self.in_sync:
            logger.debug("Sync already in progress")
            return False
        if not self.is_online:
            logger.debug("Offline, sync skipped")
            return False
        self._require_ready()

        self.in_sync = True
        self.events.publish(SyncStatusChanged("syncing", at=self._clock()))
        status, detail = "failed", None
        try:
            remote = await self._fetch_remote_progress()
            if remote is not None:
                await self._reconcile_progress(remote)
            pushed = await self._push_progress()
            settings_pushed = await self._sync_settings()
            drained = await self.queue.drain(self.user_id)

            self.last_sync_time = self._clock()
            if pushed and settings_pushed:
                status = "synced"
            detail = f"{drained.synced} queued synced, {drained.failed} failed, {drained.dropped} dropped"
            logger.info(f"Sync completed for user {self.user_id}: {detail}")
            return True
        finally:
            self.in_sync = False
            self.events.publish(SyncStatusChanged(status, detail, at=self._clock()))

    async def set_online(self, online: bool) -> None:
        was_online = self.is_online
        self.is_online = online
        self.events.publish(SyncStatusChanged("online" if online else "offline", at=self._clock()))
        if online and not was_online:
            logger.info("Back online, syncing offline progress")
            if self.is_ready:
                await self.sync()

    async def on_visibility_restored(self) -> None:
        if self.is_online and self.is_ready:
            await self.sync()

    async def run_auto_sync(self, stop_event: asyncio.Event, interval: Optional[float] = None) -> None:
        """Sync every ``interval`` seconds until ``stop_event`` is set."""
        interval = interval if interval is not None else self.config.sync_interval_seconds
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            if not self.is_online or self.in_sync or not self.is_ready:
                continue
            try:
                await self.sync()
            except StorageError:
                logger.exception("Periodic sync failed")

    async def resolve_pending_conflict(self, conflict: Conflict, choice: str) -> Resolution:
        """Apply the user's decision on a conflict that was left pending."""
        resolution = self.resolver.resolve_user_conflict(conflict, choice)
        if resolution.resolved_value is None:
            return resolution
        if conflict.type == "progress":
            doc = self._require_ready()
            backup = doc.model_copy(deep=True)
            now = self._clock()
            try:
                self._apply_progress_resolution(doc, resolution)
                unlocked = await self._commit(doc, now)
            except Exception:
                self.current_progress = backup
                raise
            self._announce(unlocked)
        elif conflict.type == "settings":
            self.current_settings.apply_field(resolution.field, resolution.resolved_value)
            await self._persist_settings(dirty=True)
        return resolution

    # ─────────────────────────────────────────────────────────────────
    # Settings
    # ─────────────────────────────────────────────────────────────────

    def get_settings(self) -> Optional[SettingsDocument]:
        if self.current_settings is None:
            return None
        return self.current_settings.model_copy(deep=True)

    async def update_setting(self, category: str, key: str, value) -> SettingsDocument:
        if category not in SETTINGS_CATEGORIES:
            raise ValueError(f"Unknown settings category {category!r}, expected one of {SETTINGS_CATEGORIES}")
        settings = self.current_settings
        if settings is None:
            raise RuntimeError("ProgressTracker.initialize() has not been called")
        backup = settings.model_copy(deep=True)
        try:
            settings.apply_field(f"{category}.{key}", value)
            await self._persist_settings(dirty=False)
        except Exception:
            self.current_settings = backup
            raise

        # The queue carries offline edits; a failed push is queued by _push_settings.
        if self.is_online:
            await self._push_settings()
        else:
            await self.queue.enqueue("settings", "update", settings.model_dump(mode="json"))
        return self.get_settings()

    # ─────────────────────────────────────────────────────────────────
    # Status
    # ─────────────────────────────────────────────────────────────────

    def get_current_progress(self) -> Optional[ProgressDocument]:
        """Deep copy of the live document; mutating it changes nothing."""
        if self.current_progress is None:
            return None
        return self.current_progress.model_copy(deep=True)

    async def get_sync_status(self) -> dict:
        queue_status = await self.queue.status()
        synced = self.current_progress is not None and self.current_progress.synced
        return {
            "isOnline": self.is_online,
            "syncInProgress": self.in_sync,
            "lastSyncTime": to_iso(self.last_sync_time) if self.last_sync_time else None,
            "pendingConflicts": self.resolver.has_pending_conflicts(),
            "droppedItems": self.dropped_items,
            "fullySynced": synced and queue_status["count"] == 0 and self.dropped_items == 0,
            "queueStatus": queue_status,
        }

    # ─────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────

    def _require_ready(self) -> ProgressDocument:
        if self.current_progress is None:
            raise RuntimeError("ProgressTracker.initialize() has not been called")
        return self.current_progress

    def _session_id(self, now: datetime) -> str:
        return f"session_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:8]}"

    async def _anonymous_user_id(self) -> str:
        record = await self.store.get("settings", ANONYMOUS_ID_KEY)
        if record and record.get("value"):
            return record["value"]
        anon_id = f"anon_{uuid.uuid4().hex}"
        await self.store.put("settings", {"key": ANONYMOUS_ID_KEY, "value": anon_id})
        logger.info(f"Created anonymous user id {anon_id}")
        return anon_id

    async def _commit(self, doc: ProgressDocument, now: datetime) -> list[str]:
        """Refresh derived statistics, unlock achievements and persist. Returns new unlocks."""
        self._update_completion_rate(doc)
        unlocked = check_achievements(doc, now)
        doc.synced = False
        await self._persist_progress()
        return unlocked

    def _update_completion_rate(self, doc: ProgressDocument) -> None:
        completed = sum(len(t.completedDays) for t in doc.tracks.values())
        total = sum(t.totalDays or self.config.default_track_days for t in doc.tracks.values())
        doc.statistics.completionRate = (completed / total) * 100 if total else 0

    async def _persist_progress(self) -> None:
        doc = self.current_progress
        stored = await self.store.put("progress", doc.to_record())
        doc.lastModified = parse_timestamp(stored["lastModified"])

    async def _persist_settings(self, dirty: bool) -> None:
        settings = self.current_settings
        stored = await self.store.put("settings", settings.to_record(self.user_id))
        settings.lastModified = parse_timestamp(stored["lastModified"])
        if dirty:
            self._settings_dirty = True

    def _announce(self, keys: list[str]) -> None:
        for key in keys:
            achievement = self.current_progress.achievements[key]
            logger.info(f"Achievement unlocked: {achievement.title}")
            self.events.publish(AchievementUnlocked(key, achievement.title, achievement.description))

    async def _push_or_enqueue(self, operation: str, payload: dict) -> None:
        if self.is_online:
            try:
                await self.service.push_activity(self.user_id, operation, payload)
                return
            except SyncError as e:
                logger.warning(f"Immediate sync of {operation} failed, queueing: {e}")
                await self.queue.enqueue("progress", operation, payload, priority=IMMEDIATE_FAILURE_PRIORITY)
                return
        await self.queue.enqueue("progress", operation, payload)

    def _on_item_dropped(self, item: SyncQueueItem, error) -> None:
        self.dropped_items += 1
        self.events.publish(SyncItemDropped(item.id, item.type, item.operation, item.attempts))

    async def _fetch_remote_progress(self) -> Optional[ProgressDocument]:
        try:
            return await self.service.fetch_progress(self.user_id)
        except (SyncError, InvalidDocument) as e:
            logger.warning(f"Could not fetch server progress, syncing local copy only: {e}")
            return None

    async def _reconcile_progress(self, remote: ProgressDocument) -> None:
        doc = self.current_progress
        self.resolver.discard_pending("progress")
        conflicts = self.resolver.detect_conflicts("progress", doc.to_snapshot(), remote.to_snapshot())
        if not conflicts:
            return
        logger.info(f"Detected {len(conflicts)} progress conflicts")
        resolutions = self.resolver.resolve_conflicts("progress", conflicts)
        for conflict, resolution in zip(conflicts, resolutions):
            if resolution.is_pending:
                self.events.publish(ConflictNeedsChoice(conflict))

        applied = [r for r in resolutions if not r.is_pending and r.resolved_value is not None]
        if not applied:
            return
        general = [r for r in applied if r.field == "general"]
        backup = doc.model_copy(deep=True)
        now = self._clock()
        try:
            for resolution in general[:1] or applied:
                self._apply_progress_resolution(doc, resolution)
            unlocked = await self._commit(doc, now)
        except Exception:
            self.current_progress = backup
            raise
        self._announce(unlocked)

    def _apply_progress_resolution(self, doc: ProgressDocument, resolution: Resolution) -> None:
        if resolution.resolved_value is None:
            return
        if resolution.field == "general":
            doc.apply_snapshot(resolution.resolved_value)
        else:
            doc.apply_field(resolution.field, resolution.resolved_value)

    async def _push_progress(self) -> bool:
        doc = self.current_progress
        if doc.synced:
            return True
        try:
            await self.service.push_progress(self.user_id, doc)
        except SyncError as e:
            logger.error(f"Failed to push progress for user {self.user_id}: {e}")
            return False
        doc.synced = True
        await self._persist_progress()
        return True

    async def _sync_settings(self) -> bool:
        settings = self.current_settings
        try:
            remote = await self.service.fetch_settings(self.user_id)
        except (SyncError, InvalidDocument) as e:
            logger.warning(f"Could not fetch server settings: {e}")
            remote = None

        if remote is not None:
            self.resolver.discard_pending("settings")
            local_snapshot = settings.to_snapshot()
            remote_snapshot = remote.to_snapshot()
            conflicts = self.resolver.detect_conflicts("settings", local_snapshot, remote_snapshot)
            resolutions = self.resolver.resolve_conflicts("settings", conflicts)
            changed = False
            for conflict, resolution in zip(conflicts, resolutions):
                if resolution.is_pending:
                    self.events.publish(ConflictNeedsChoice(conflict))
                elif resolution.resolved_value is not None:
                    settings.apply_field(resolution.field, resolution.resolved_value)
                    changed = True
                    if resolution.winner != "server":
                        self._settings_dirty = True

            # Keys only the server knows about never conflict; adopt them.
            for category in SETTINGS_CATEGORIES:
                local_category = local_snapshot.get(category) or {}
                for key, value in (remote_snapshot.get(category) or {}).items():
                    if key not in local_category:
                        settings.apply_field(f"{category}.{key}", value)
                        changed = True
            if changed:
                await self._persist_settings(dirty=False)

        if self._settings_dirty:
            return await self._push_settings()
        return True

    async def _push_settings(self) -> bool:
        try:
            await self.service.push_settings(self.user_id, self.current_settings)
        except SyncError as e:
            logger.warning(f"Failed to push settings, queueing: {e}")
            await self.queue.enqueue("settings", "update", self.current_settings.model_dump(mode="json"))
            self._settings_dirty = False
            return False
        self._settings_dirty = False
        return True


def build_tracker(
    config: Optional[Settings] = None,
    service: Optional[ProgressService] = None,
    events: Optional[EventBus] = None,
    clock: Callable[[], datetime] = utcnow,
) -> ProgressTracker:
    """Wire a ProgressTracker and its collaborators from configuration."""
    config = config or get_settings()
    store = LocalStore(config.db_path, clock=clock)
    if service is None:
        service = HttpProgressService(
            config.api_base_url,
            timeout=config.request_timeout,
            retry_attempts=config.retry_attempts,
            retry_max_wait=config.retry_max_wait,
        )
    queue = SyncQueue(store, service, max_attempts=config.queue_max_attempts)
    resolver = ConflictResolver(
        strategies={"progress": config.progress_strategy, "settings": config.settings_strategy},
        threshold_ms=config.conflict_threshold_ms,
        clock=clock,
    )
    return ProgressTracker(store, queue, resolver, service, events=events, config=config, clock=clock)
