"""Tests for the ProgressTracker orchestration."""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from prep_tracker.config import Settings
from prep_tracker.errors import InvalidDocument, StorageError
from prep_tracker.events import (
    AchievementUnlocked, ConflictNeedsChoice, StorageDegraded, SyncItemDropped, SyncStatusChanged,
)
from prep_tracker.schemas import (
    DayCompletion, ProgressDocument, SettingsDocument, Streaks, TrackProgress,
)
from prep_tracker.tracker import build_tracker


def record_events(tracker):
    events = []
    tracker.events.subscribe(events.append)
    return events


# ── Initialization ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_initialize_creates_and_persists_document(tracker, clock):
    doc = tracker.get_current_progress()
    assert doc.userId == "42"
    assert doc.lastModified == clock()
    record = await tracker.store.get("progress", "user_42")
    assert record["userId"] == "42"


@pytest.mark.asyncio
async def test_initialize_loads_existing_document(config, service, clock, tracker):
    await tracker.track_question_studied("q1", "arrays")

    reopened = build_tracker(config, service=service, clock=clock)
    await reopened.initialize("42")
    assert reopened.get_current_progress().statistics.questionsStudied == ["q1"]


@pytest.mark.asyncio
async def test_initialize_anonymous_id_is_stable(config, service, clock):
    first = build_tracker(config, service=service, clock=clock)
    await first.initialize()
    second = build_tracker(config, service=service, clock=clock)
    await second.initialize()
    assert first.user_id.startswith("anon_")
    assert first.user_id == second.user_id


@pytest.mark.asyncio
async def test_initialize_falls_back_to_memory(tmp_path, service, clock):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    config = Settings(_env_file=None, db_path=str(blocker / "offline.db"))
    tracker = build_tracker(config, service=service, clock=clock)
    events = record_events(tracker)

    await tracker.initialize("42")
    assert tracker.store.is_memory_only
    assert any(isinstance(e, StorageDegraded) for e in events)

    await tracker.track_session_time("study", 60_000)
    assert tracker.get_current_progress().statistics.totalStudyTime == 60_000


@pytest.mark.asyncio
async def test_initialize_rejects_malformed_document(config, service, clock, store):
    await store.put("progress", {"id": "user_42", "userId": "42", "streaks": {"current": "lots"}})
    tracker = build_tracker(config, service=service, clock=clock)
    with pytest.raises(InvalidDocument):
        await tracker.initialize("42")


@pytest.mark.asyncio
async def test_actions_before_initialize_raise(config, service):
    tracker = build_tracker(config, service=service)
    with pytest.raises(RuntimeError):
        await tracker.track_session_time("study", 1000)


# ── Study actions ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_track_day_completion(tracker, service, clock):
    doc = await tracker.track_day_completion("algorithms", 1, tasks=["arrays"], study_time=1_800_000)

    track = doc.tracks["algorithms"]
    assert track.completedDays[1].completedAt == clock()
    assert track.completedDays[1].tasks == ["arrays"]
    assert track.currentDay == 2
    assert track.totalDays == 30
    assert doc.streaks.current == 1
    assert doc.statistics.completionRate == pytest.approx(100 / 30)
    assert doc.synced is False
    assert service.activity[0][1] == "day_completion"
    assert service.activity[0][2]["dayNumber"] == 1


@pytest.mark.asyncio
async def test_repeat_day_completion_keeps_first_timestamp(tracker, clock):
    await tracker.track_day_completion("algorithms", 1, study_time=100)
    first = clock()
    clock.advance(hours=2)
    doc = await tracker.track_day_completion("algorithms", 1, study_time=500)
    assert doc.tracks["algorithms"].completedDays[1].completedAt == first
    assert doc.tracks["algorithms"].completedDays[1].studyTime == 500


@pytest.mark.asyncio
async def test_question_studied_twice_is_counted_once(tracker):
    await tracker.track_question_studied("q-17", "graphs", "hard", 30_000)
    doc = await tracker.track_question_studied("q-17", "graphs", "hard", 20_000)
    assert doc.statistics.questionsStudied == ["q-17"]
    assert doc.statistics.categoriesExplored == {"graphs": 2}
    assert doc.statistics.totalStudyTime == 50_000
    assert len(doc.sessions) == 2
    assert doc.sessions[0].id != doc.sessions[1].id


@pytest.mark.asyncio
async def test_numeric_question_ids_match_string_ids(tracker):
    await tracker.track_question_studied(17, "graphs")
    doc = await tracker.track_question_studied("17", "graphs")
    assert doc.statistics.questionsStudied == ["17"]


@pytest.mark.asyncio
async def test_session_time_updates_streak_only_for_study_and_practice(tracker):
    doc = await tracker.track_session_time("review", 60_000)
    assert doc.streaks.current == 0
    doc = await tracker.track_session_time("practice", 60_000, {"source": "mock interview"})
    assert doc.streaks.current == 1
    assert doc.sessions[-1].metadata == {"source": "mock interview"}
    assert doc.statistics.totalStudyTime == 120_000


@pytest.mark.asyncio
async def test_streak_grows_across_days(tracker, clock):
    for _ in range(3):
        await tracker.track_session_time("study", 60_000)
        clock.advance(days=1)
    doc = tracker.get_current_progress()
    assert doc.streaks.current == 3
    assert doc.achievements["streak_starter"].unlocked


@pytest.mark.asyncio
async def test_update_streak_same_day_is_idempotent(tracker, clock):
    tracker.update_streak(clock().date())
    tracker.update_streak(clock().date())
    streaks = tracker.get_current_progress().streaks
    assert (streaks.current, streaks.longest) == (1, 1)


@pytest.mark.asyncio
async def test_achievements_are_published_once(tracker):
    events = record_events(tracker)
    for i in range(12):
        await tracker.track_question_studied(f"q{i}", "arrays")
    unlocked = [e.key for e in events if isinstance(e, AchievementUnlocked)]
    assert unlocked == ["first_day", "question_solver"]


@pytest.mark.asyncio
async def test_offline_actions_are_queued(tracker, service):
    await tracker.set_online(False)
    await tracker.track_question_studied("q1", "arrays")
    await tracker.track_day_completion("algorithms", 1)

    assert service.activity == []
    items = await tracker.queue.items()
    assert [i.operation for i in items] == ["question_study", "day_completion"]
    assert all(i.priority == 1 for i in items)


@pytest.mark.asyncio
async def test_failed_immediate_push_is_queued_with_priority(tracker, service):
    service.failing = {"push_activity"}
    await tracker.track_session_time("study", 1000)
    items = await tracker.queue.items()
    assert len(items) == 1
    assert items[0].priority == 2


@pytest.mark.asyncio
async def test_storage_failure_restores_document(tracker):
    await tracker.track_question_studied("q1", "arrays")
    with patch.object(tracker.store, "put", AsyncMock(side_effect=StorageError("disk full"))):
        with pytest.raises(StorageError):
            await tracker.track_question_studied("q2", "graphs", time_spent=5000)

    doc = tracker.get_current_progress()
    assert doc.statistics.questionsStudied == ["q1"]
    assert "graphs" not in doc.statistics.categoriesExplored
    assert len(doc.sessions) == 1


@pytest.mark.asyncio
async def test_current_progress_is_a_copy(tracker):
    doc = tracker.get_current_progress()
    doc.statistics.questionsStudied.append("tampered")
    doc.streaks.current = 99
    live = tracker.get_current_progress()
    assert live.statistics.questionsStudied == []
    assert live.streaks.current == 0


# ── Sync ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_sync_pushes_document(tracker, service):
    events = record_events(tracker)
    await tracker.track_question_studied("q1", "arrays")
    assert await tracker.sync() is True

    assert service.progress["42"].statistics.questionsStudied == ["q1"]
    assert tracker.get_current_progress().synced
    status = await tracker.get_sync_status()
    assert status["fullySynced"]
    assert status["lastSyncTime"] is not None
    statuses = [e.status for e in events if isinstance(e, SyncStatusChanged)]
    assert statuses == ["syncing", "synced"]


@pytest.mark.asyncio
async def test_sync_skipped_when_offline_or_running(tracker, service):
    tracker.is_online = False
    assert await tracker.sync() is False
    tracker.is_online = True
    tracker.in_sync = True
    assert await tracker.sync() is False
    assert service.calls == []


@pytest.mark.asyncio
async def test_sync_applies_newer_server_copy(tracker, service, clock):
    await tracker.track_day_completion("algorithms", 1)
    service.progress["42"] = ProgressDocument(
        userId="42",
        tracks={"algorithms": TrackProgress(completedDays={
            1: DayCompletion(completedAt=clock()),
            2: DayCompletion(completedAt=clock()),
        }, currentDay=3)},
        streaks=Streaks(current=2, longest=2),
        lastModified=clock() + timedelta(hours=1),
    )

    await tracker.sync()
    doc = tracker.get_current_progress()
    assert set(doc.tracks["algorithms"].completedDays) == {1, 2}
    assert doc.tracks["algorithms"].currentDay == 3
    assert doc.streaks.current == 2
    assert set(service.progress["42"].tracks["algorithms"].completedDays) == {1, 2}


@pytest.mark.asyncio
async def test_sync_keeps_newer_local_copy(tracker, service, clock):
    service.progress["42"] = ProgressDocument(
        userId="42",
        streaks=Streaks(current=4, longest=4),
        lastModified=clock() - timedelta(hours=1),
    )
    await tracker.track_session_time("study", 60_000)
    await tracker.sync()
    assert tracker.get_current_progress().streaks.current == 1
    assert service.progress["42"].streaks.current == 1


@pytest.mark.asyncio
async def test_sync_never_revokes_achievements(tracker, service, clock):
    tracker.resolver.set_strategy("progress", "server_wins")
    await tracker.track_question_studied("q1", "arrays", time_spent=1000)
    service.progress["42"] = ProgressDocument(userId="42", lastModified=clock() + timedelta(minutes=5))

    await tracker.sync()
    doc = tracker.get_current_progress()
    assert doc.statistics.totalStudyTime == 0
    assert doc.achievements["first_day"].unlocked


@pytest.mark.asyncio
async def test_sync_treats_fetch_failure_as_absent(tracker, service):
    service.failing = {"fetch_progress", "fetch_settings"}
    await tracker.track_session_time("study", 1000)
    assert await tracker.sync() is True
    assert "42" in service.progress


@pytest.mark.asyncio
async def test_failed_push_leaves_document_unsynced_and_still_drains(tracker, service):
    events = record_events(tracker)
    await tracker.set_online(False)
    await tracker.track_question_studied("q1", "arrays")
    service.failing = {"push_progress"}

    await tracker.set_online(True)
    assert not tracker.get_current_progress().synced
    assert await tracker.queue.items() == []
    assert service.activity[0][1] == "question_study"
    statuses = [e.status for e in events if isinstance(e, SyncStatusChanged)]
    assert statuses[-1] == "failed"


@pytest.mark.asyncio
async def test_reconnect_drains_queue(tracker, service):
    await tracker.set_online(False)
    await tracker.track_day_completion("algorithms", 1)
    await tracker.track_day_completion("algorithms", 2)
    assert (await tracker.get_sync_status())["queueStatus"]["count"] == 2

    await tracker.set_online(True)
    assert [a[1] for a in service.activity] == ["day_completion", "day_completion"]
    status = await tracker.get_sync_status()
    assert status["queueStatus"]["count"] == 0
    assert status["fullySynced"]


@pytest.mark.asyncio
async def test_dropped_items_are_reported(tracker, service):
    events = record_events(tracker)
    await tracker.set_online(False)
    await tracker.track_question_studied("q1", "arrays")
    service.failing = {"push_activity"}

    await tracker.set_online(True)
    await tracker.sync()
    await tracker.sync()

    dropped = [e for e in events if isinstance(e, SyncItemDropped)]
    assert len(dropped) == 1
    assert dropped[0].attempts == 3
    status = await tracker.get_sync_status()
    assert status["droppedItems"] == 1
    assert not status["fullySynced"]
    assert status["queueStatus"]["count"] == 0


@pytest.mark.asyncio
async def test_user_choice_progress_conflict(tracker, service, clock):
    events = record_events(tracker)
    tracker.resolver.set_strategy("progress", "user_choice")
    await tracker.track_session_time("study", 60_000)
    service.progress["42"] = ProgressDocument(
        userId="42",
        streaks=Streaks(current=6, longest=6),
        lastModified=clock() + timedelta(minutes=10),
    )

    await tracker.sync()
    needs_choice = [e.conflict for e in events if isinstance(e, ConflictNeedsChoice)]
    assert {c.field for c in needs_choice} == {"general", "currentStreak", "totalStudyTime"}
    assert tracker.get_current_progress().streaks.current == 1

    general = next(c for c in needs_choice if c.field == "general")
    resolution = await tracker.resolve_pending_conflict(general, "server")
    assert resolution.winner == "server"
    doc = tracker.get_current_progress()
    assert doc.streaks.current == 6
    assert doc.statistics.totalStudyTime == 0
    assert len(tracker.resolver.get_pending_conflicts()) == 2


@pytest.mark.asyncio
async def test_repeated_sync_does_not_duplicate_pending_conflicts(tracker, service, clock):
    tracker.resolver.set_strategy("progress", "user_choice")
    await tracker.track_session_time("study", 60_000)
    service.failing = {"push_progress"}
    service.progress["42"] = ProgressDocument(userId="42", lastModified=clock() + timedelta(minutes=10))

    await tracker.sync()
    first = len(tracker.resolver.get_pending_conflicts())
    await tracker.sync()
    assert len(tracker.resolver.get_pending_conflicts()) == first


@pytest.mark.asyncio
async def test_visibility_restored_syncs_when_online(tracker):
    with patch.object(tracker, "sync", AsyncMock(return_value=True)) as sync:
        await tracker.on_visibility_restored()
        tracker.is_online = False
        await tracker.on_visibility_restored()
    assert sync.await_count == 1


@pytest.mark.asyncio
async def test_run_auto_sync_until_stopped(tracker):
    stop = asyncio.Event()
    with patch.object(tracker, "sync", AsyncMock(return_value=True)) as sync:
        task = asyncio.create_task(tracker.run_auto_sync(stop, interval=0.01))
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, timeout=1)
    assert sync.await_count >= 2


@pytest.mark.asyncio
async def test_run_auto_sync_survives_storage_errors(tracker):
    stop = asyncio.Event()
    with patch.object(tracker, "sync", AsyncMock(side_effect=StorageError("locked"))) as sync:
        task = asyncio.create_task(tracker.run_auto_sync(stop, interval=0.01))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)
    assert sync.await_count >= 2


# ── Settings ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_update_setting_online_pushes(tracker, service):
    settings = await tracker.update_setting("theme", "mode", "dark")
    assert settings.theme == {"mode": "dark"}
    assert service.settings["42"].theme == {"mode": "dark"}
    record = await tracker.store.get("settings", "settings_42")
    assert record["theme"] == {"mode": "dark"}


@pytest.mark.asyncio
async def test_update_setting_offline_is_queued(tracker, service):
    await tracker.set_online(False)
    await tracker.update_setting("study", "dailyGoal", 5)
    assert service.settings == {}
    await tracker.set_online(True)
    assert service.settings["42"].study == {"dailyGoal": 5}


@pytest.mark.asyncio
async def test_update_setting_unknown_category(tracker):
    with pytest.raises(ValueError):
        await tracker.update_setting("colors", "accent", "red")


@pytest.mark.asyncio
async def test_settings_conflict_waits_for_user(tracker, service):
    events = record_events(tracker)
    service.settings["42"] = SettingsDocument(theme={"mode": "light"}, notifications={"email": True})
    await tracker.set_online(False)
    await tracker.update_setting("theme", "mode", "dark")
    tracker.is_online = True

    await tracker.sync()
    conflicts = [e.conflict for e in events if isinstance(e, ConflictNeedsChoice)]
    assert [c.field for c in conflicts] == ["theme.mode"]
    settings = tracker.get_settings()
    assert settings.theme == {"mode": "dark"}
    assert settings.notifications == {"email": True}

    await tracker.resolve_pending_conflict(conflicts[0], "server")
    assert tracker.get_settings().theme == {"mode": "light"}
    assert not tracker.resolver.has_pending_conflicts()


@pytest.mark.asyncio
async def test_server_wins_keeps_local_only_settings(tracker, service):
    tracker.resolver.set_strategy("settings", "server_wins")
    service.settings["42"] = SettingsDocument(theme={"mode": "light"})
    await tracker.set_online(False)
    await tracker.update_setting("theme", "mode", "dark")
    await tracker.update_setting("theme", "font", "large")
    tracker.is_online = True

    await tracker.sync()
    assert tracker.get_settings().theme == {"mode": "light", "font": "large"}
    record = await tracker.store.get("settings", "settings_42")
    assert record["theme"] == {"mode": "light", "font": "large"}


@pytest.mark.asyncio
async def test_server_choice_for_missing_key_keeps_local_value(tracker, service):
    events = record_events(tracker)
    service.settings["42"] = SettingsDocument(theme={"mode": "light"})
    await tracker.set_online(False)
    await tracker.update_setting("theme", "accent", "teal")
    tracker.is_online = True

    await tracker.sync()
    conflict = next(e.conflict for e in events
                    if isinstance(e, ConflictNeedsChoice) and e.conflict.field == "theme.accent")
    await tracker.resolve_pending_conflict(conflict, "server")
    assert tracker.get_settings().theme == {"accent": "teal", "mode": "light"}


@pytest.mark.asyncio
async def test_settings_are_kept_per_user(tracker):
    await tracker.update_setting("theme", "mode", "dark")
    await tracker.clear_offline_data()
    await tracker.initialize("7")
    assert tracker.get_settings().theme == {}

    await tracker.initialize("42")
    assert tracker.get_settings().theme == {"mode": "dark"}


# ── Persistence helpers ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_save_before_unload(tracker, clock):
    clock.advance(minutes=3)
    await tracker.save_before_unload()
    record = await tracker.store.get("progress", "user_42")
    assert record["lastModified"] == clock().isoformat()


@pytest.mark.asyncio
async def test_clear_offline_data(tracker):
    await tracker.track_question_studied("q1", "arrays")
    await tracker.clear_offline_data()
    assert tracker.get_current_progress() is None
    assert await tracker.store.get("progress", "user_42") is None


@pytest.mark.asyncio
async def test_sync_status_shape(tracker):
    status = await tracker.get_sync_status()
    assert set(status) == {
        "isOnline", "syncInProgress", "lastSyncTime", "pendingConflicts",
        "droppedItems", "fullySynced", "queueStatus",
    }
    assert status["isOnline"] is True
    assert status["lastSyncTime"] is None
    assert status["fullySynced"] is False
