"""Field-wise merging of two diverged progress or settings snapshots."""
from collections.abc import Mapping
from datetime import datetime
from typing import Optional

from prep_tracker.errors import MergeFailure
from prep_tracker.models import to_iso, utcnow
from prep_tracker.schemas import SETTINGS_CATEGORIES

MAX_FIELDS = ("currentStreak", "longestStreak", "totalStudyTime")


def _require_mapping(name: str, value) -> None:
    if not isinstance(value, Mapping):
        raise MergeFailure(f"{name} is {type(value).__name__}, expected a mapping")


def session_key(session: Mapping) -> tuple:
    """Identity used to drop the same session seen on both sides."""
    duration = session.get("duration")
    if duration is None:
        duration = session.get("timeSpent")
    return (
        session.get("date") or session.get("timestamp"),
        duration,
        session.get("type"),
    )


def deduplicate_study_sessions(sessions: list) -> list:
    seen = set()
    result = []
    for session in sessions:
        key = session_key(session)
        if key in seen:
            continue
        seen.add(key)
        result.append(session)
    return result


def merge_progress_data(local: Mapping, server: Mapping, now: Optional[datetime] = None) -> dict:
    """
    Deep-merge two progress snapshots.

    Starts from the server copy, unions completed days (local entries win on
    the same key), keeps the larger streak and study-time values, unions
    sessions and studied questions, and keeps every unlocked achievement.

    Raises:
        MergeFailure: if either side is not a mapping
    """
    _require_mapping("local", local)
    _require_mapping("server", server)
    merged = dict(server)

    merged["completedDays"] = {
        **(server.get("completedDays") or {}),
        **(local.get("completedDays") or {}),
    }

    for name in MAX_FIELDS:
        if name in local or name in server:
            merged[name] = max(local.get(name) or 0, server.get(name) or 0)

    if "studySessions" in local or "studySessions" in server:
        merged["studySessions"] = deduplicate_study_sessions(
            [*(server.get("studySessions") or []), *(local.get("studySessions") or [])]
        )

    if "questionsStudied" in local or "questionsStudied" in server:
        merged["questionsStudied"] = list(dict.fromkeys(
            [*(server.get("questionsStudied") or []), *(local.get("questionsStudied") or [])]
        ))

    if "achievements" in local or "achievements" in server:
        achievements = dict(server.get("achievements") or {})
        for key, achievement in (local.get("achievements") or {}).items():
            theirs = achievements.get(key)
            if achievement.get("unlocked") and not (theirs and theirs.get("unlocked")):
                achievements[key] = achievement
        merged["achievements"] = achievements

    merged["lastModified"] = to_iso(now or utcnow())
    return merged


def merge_settings(local: Mapping, server: Mapping, now: Optional[datetime] = None) -> dict:
    """Shallow-merge each settings category; local keys override server keys."""
    _require_mapping("local", local)
    _require_mapping("server", server)
    merged = dict(server)
    for category in SETTINGS_CATEGORIES:
        if local.get(category):
            merged[category] = {**(server.get(category) or {}), **local[category]}
    merged["lastModified"] = to_iso(now or utcnow())
    return merged
