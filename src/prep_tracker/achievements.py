"""Achievement definitions and unlock evaluation."""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from prep_tracker.schemas import Achievement, ProgressDocument

MS_PER_HOUR = 1000 * 60 * 60


@dataclass(frozen=True)
class AchievementRule:
    key: str
    title: str
    description: str
    predicate: Callable[[ProgressDocument], bool]


ACHIEVEMENTS = (
    AchievementRule(
        "first_day", "First Steps", "Studied your first question",
        lambda doc: len(doc.statistics.questionsStudied) > 0,
    ),
    AchievementRule(
        "question_solver", "Question Solver", "Studied 10 questions",
        lambda doc: len(doc.statistics.questionsStudied) >= 10,
    ),
    AchievementRule(
        "category_explorer", "Category Explorer", "Explored 3 different categories",
        lambda doc: len(doc.statistics.categoriesExplored) >= 3,
    ),
    AchievementRule(
        "streak_starter", "Streak Starter", "3-day study streak",
        lambda doc: doc.streaks.current >= 3,
    ),
    AchievementRule(
        "streak_master", "Streak Master", "7-day study streak",
        lambda doc: doc.streaks.current >= 7,
    ),
    AchievementRule(
        "time_keeper", "Time Keeper", "5 hours of study time",
        lambda doc: doc.statistics.totalStudyTime / MS_PER_HOUR >= 5,
    ),
)


def check_achievements(doc: ProgressDocument, now: datetime) -> list[str]:
    """Unlock every newly satisfied achievement. Returns the keys unlocked by this call."""
    unlocked = []
    for rule in ACHIEVEMENTS:
        existing = doc.achievements.get(rule.key)
        if existing is not None and existing.unlocked:
            continue
        if rule.predicate(doc):
            doc.achievements[rule.key] = Achievement(
                unlocked=True,
                unlockedAt=now,
                title=rule.title,
                description=rule.description,
            )
            unlocked.append(rule.key)
    return unlocked
