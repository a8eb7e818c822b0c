"""Consecutive-day study streak calculation."""
from datetime import date, timedelta

from prep_tracker.schemas import Streaks


def update_streak(streaks: Streaks, study_date: date) -> Streaks:
    """Record study activity on a calendar date.

    Args:
        streaks: Streak state to update in place
        study_date: Day the activity happened

    Returns:
        The same Streaks object.

    Activity on the day after lastStudyDate extends the streak, activity on
    lastStudyDate itself changes nothing, and any gap restarts it at 1.
    Dates earlier than lastStudyDate are only added to studyDates.
    """
    if study_date not in streaks.studyDates:
        streaks.studyDates = sorted({*streaks.studyDates, study_date})

    last = streaks.lastStudyDate
    if last is None or study_date > last:
        if last == study_date - timedelta(days=1):
            streaks.current += 1
        else:
            streaks.current = 1
        streaks.lastStudyDate = study_date

    streaks.longest = max(streaks.longest, streaks.current)
    return streaks
