"""
Pydantic models for the documents that cross the storage and network boundary.

Field names match the JSON wire format used by the portal's REST API and by
the offline records, so documents round-trip without renaming.
"""
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from prep_tracker.errors import InvalidDocument

logger = logging.getLogger(__name__)

PROGRESS_FIELDS = (
    "completedDays",
    "currentStreak",
    "longestStreak",
    "totalStudyTime",
    "studySessions",
    "questionsStudied",
    "achievements",
)
SETTINGS_CATEGORIES = ("theme", "notifications", "display", "study")


def progress_key(user_id: str) -> str:
    return f"user_{user_id}"


def settings_key(user_id: str) -> str:
    return f"settings_{user_id}"


def _unique(values) -> list:
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


class DayCompletion(BaseModel):
    completedAt: datetime
    tasks: List[Any] = Field(default_factory=list)
    studyTime: float = 0


class TrackProgress(BaseModel):
    completedDays: Dict[int, DayCompletion] = Field(default_factory=dict)
    currentDay: int = 1
    totalDays: int = 30


class StudySession(BaseModel):
    id: str
    type: str
    timestamp: datetime
    duration: Optional[float] = None
    timeSpent: Optional[float] = None
    questionId: Optional[str] = None
    category: Optional[str] = None
    difficulty: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("questionId", mode="before")
    @classmethod
    def _question_id_as_str(cls, value):
        return None if value is None else str(value)


class Streaks(BaseModel):
    current: int = 0
    longest: int = 0
    lastStudyDate: Optional[date] = None
    studyDates: List[date] = Field(default_factory=list)

    @field_validator("studyDates")
    @classmethod
    def _sorted_dates(cls, value):
        return sorted(set(value))

    @model_validator(mode="after")
    def _longest_covers_current(self):
        if self.longest < self.current:
            self.longest = self.current
        return self


class Statistics(BaseModel):
    totalStudyTime: float = 0
    questionsStudied: List[str] = Field(default_factory=list)
    categoriesExplored: Dict[str, int] = Field(default_factory=dict)
    completionRate: float = 0

    @field_validator("questionsStudied", mode="before")
    @classmethod
    def _unique_ids(cls, value):
        return _unique(str(v) for v in (value or []))


class Achievement(BaseModel):
    unlocked: bool = False
    unlockedAt: Optional[datetime] = None
    title: str = ""
    description: str = ""


class ProgressDocument(BaseModel):
    """The per-user unit of synchronization."""

    userId: str
    tracks: Dict[str, TrackProgress] = Field(default_factory=dict)
    sessions: List[StudySession] = Field(default_factory=list)
    streaks: Streaks = Field(default_factory=Streaks)
    statistics: Statistics = Field(default_factory=Statistics)
    achievements: Dict[str, Achievement] = Field(default_factory=dict)
    lastModified: Optional[datetime] = None
    synced: bool = False

    @classmethod
    def from_record(cls, record: dict) -> "ProgressDocument":
        return load_document(cls, record)

    def to_record(self) -> dict:
        record = self.model_dump(mode="json")
        record["id"] = progress_key(self.userId)
        return record

    def to_snapshot(self) -> dict:
        """Flat view compared and merged by the conflict resolver."""
        completed = {}
        for track_name, track in self.tracks.items():
            for day, completion in track.completedDays.items():
                completed[f"{track_name}:{day}"] = completion.model_dump(mode="json")
        return {
            "completedDays": completed,
            "currentStreak": self.streaks.current,
            "longestStreak": self.streaks.longest,
            "totalStudyTime": self.statistics.totalStudyTime,
            "studySessions": [s.model_dump(mode="json") for s in self.sessions],
            "questionsStudied": list(self.statistics.questionsStudied),
            "achievements": {k: a.model_dump(mode="json") for k, a in self.achievements.items()},
            "lastModified": self.lastModified.isoformat() if self.lastModified else None,
        }

    def apply_snapshot(self, snapshot: dict) -> None:
        for name in PROGRESS_FIELDS:
            if name in snapshot:
                self.apply_field(name, snapshot[name])

    def apply_field(self, name: str, value: Any) -> None:
        """Write one resolved snapshot field back into the nested document."""
        if name == "completedDays":
            self._apply_completed_days(value or {})
        elif name == "currentStreak":
            self.streaks.current = int(value or 0)
            self.streaks.longest = max(self.streaks.longest, self.streaks.current)
        elif name == "longestStreak":
            self.streaks.longest = max(int(value or 0), self.streaks.current)
        elif name == "totalStudyTime":
            self.statistics.totalStudyTime = float(value or 0)
        elif name == "studySessions":
            self.sessions = [StudySession.model_validate(s) for s in value or []]
        elif name == "questionsStudied":
            self.statistics.questionsStudied = _unique(str(q) for q in value or [])
        elif name == "achievements":
            self._merge_achievements(value or {})
        else:
            logger.warning(f"Ignoring resolution for unknown progress field: {name}")

    def _apply_completed_days(self, flat: dict) -> None:
        by_track: Dict[str, Dict[int, DayCompletion]] = {}
        for key, completion in flat.items():
            track_name, _, day = str(key).rpartition(":")
            by_track.setdefault(track_name, {})[int(day)] = DayCompletion.model_validate(completion)
        for track_name in set(self.tracks) | set(by_track):
            track = self.tracks.setdefault(track_name, TrackProgress())
            track.completedDays = by_track.get(track_name, {})
            if track.completedDays:
                track.currentDay = max(track.currentDay, max(track.completedDays) + 1)

    def _merge_achievements(self, incoming: dict) -> None:
        for key, data in incoming.items():
            achievement = Achievement.model_validate(data)
            current = self.achievements.get(key)
            if achievement.unlocked and not (current and current.unlocked):
                self.achievements[key] = achievement


class SettingsDocument(BaseModel):
    """User preferences, grouped by category."""

    theme: Dict[str, Any] = Field(default_factory=dict)
    notifications: Dict[str, Any] = Field(default_factory=dict)
    display: Dict[str, Any] = Field(default_factory=dict)
    study: Dict[str, Any] = Field(default_factory=dict)
    lastModified: Optional[datetime] = None

    model_config = ConfigDict(extra="allow")

    @classmethod
    def from_record(cls, record: dict) -> "SettingsDocument":
        data = {k: v for k, v in record.items() if k != "key"}
        return load_document(cls, data)

    def to_record(self, user_id: str) -> dict:
        record = self.model_dump(mode="json")
        record["key"] = settings_key(user_id)
        return record

    def to_snapshot(self) -> dict:
        return self.model_dump(mode="json")

    def apply_field(self, path: str, value: Any) -> None:
        """Set a dotted ``category.key`` path or a top-level setting."""
        if "." in path:
            category, key = path.split(".", 1)
            section = getattr(self, category, None)
            if not isinstance(section, dict):
                section = {}
                setattr(self, category, section)
            section[key] = value
        else:
            setattr(self, path, value)


def load_document(model, data: dict):
    """Validate raw JSON into a document model, raising InvalidDocument on failure."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InvalidDocument(f"Invalid {model.__name__}: {e}") from e
