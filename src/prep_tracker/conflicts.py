"""
Conflict detection and resolution between local and remote snapshots.

The resolver is stateless apart from the list of conflicts waiting on a
user decision. It compares plain mapping snapshots (see
``ProgressDocument.to_snapshot``) and never touches storage; applying a
resolution is the caller's job.
"""
import json
import logging
from datetime import datetime
from typing import Callable, Optional

from prep_tracker.errors import MergeFailure
from prep_tracker.merge import merge_progress_data, merge_settings
from prep_tracker.models import (
    EPOCH, Conflict, Resolution, Severity, Strategy, parse_timestamp, utcnow,
)
from prep_tracker.schemas import SETTINGS_CATEGORIES

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_MS = 5000
DIVERGENCE_FIELDS = ("completedDays", "currentStreak", "longestStreak", "totalStudyTime")
FIELD_CONFLICT_FIELDS = ("completedDays", "currentStreak", "totalStudyTime")

DEFAULT_STRATEGIES = {
    "progress": Strategy.MERGE_LATEST_WINS.value,
    "settings": Strategy.USER_CHOICE.value,
    "questions": Strategy.SERVER_WINS.value,
    "tracks": Strategy.SERVER_WINS.value,
}

USER_CHOICES = ("local", "server", "merge")


def _serialized(value) -> str:
    return json.dumps(value if value is not None else {}, sort_keys=True, default=str)


class ConflictResolver:
    """Detects divergence between two copies of a record and picks a winner."""

    def __init__(
        self,
        strategies: Optional[dict] = None,
        threshold_ms: int = DEFAULT_THRESHOLD_MS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.strategies = {**DEFAULT_STRATEGIES, **(strategies or {})}
        self.threshold_ms = threshold_ms
        self.pending_conflicts: list[Conflict] = []
        self._clock = clock

    # ─────────────────────────────────────────────────────────────────
    # Detection
    # ─────────────────────────────────────────────────────────────────

    def detect_conflicts(self, data_type: str, local: Optional[dict], server: Optional[dict]) -> list[Conflict]:
        """Return every conflict between the two snapshots; empty if either is missing."""
        if not local or not server:
            return []
        if data_type == "progress":
            return self.detect_progress_conflicts(local, server)
        if data_type == "settings":
            return self.detect_settings_conflicts(local, server)
        logger.debug(f"No conflict detection implemented for type: {data_type}")
        return []

    def detect_progress_conflicts(self, local: dict, server: dict) -> list[Conflict]:
        conflicts = []
        local_time = parse_timestamp(local.get("lastModified"))
        server_time = parse_timestamp(server.get("lastModified"))

        if local_time and server_time:
            delta_ms = abs((local_time - server_time).total_seconds()) * 1000
            if delta_ms >= self.threshold_ms and self.has_progress_differences(local, server):
                conflicts.append(Conflict(
                    type="progress",
                    field="general",
                    local_value=local,
                    server_value=server,
                    local_timestamp=local.get("lastModified"),
                    server_timestamp=server.get("lastModified"),
                    severity=Severity.HIGH,
                ))

        for name in FIELD_CONFLICT_FIELDS:
            if local.get(name) != server.get(name):
                conflicts.append(Conflict(
                    type="progress",
                    field=name,
                    local_value=local.get(name),
                    server_value=server.get(name),
                    local_timestamp=local.get("lastModified"),
                    server_timestamp=server.get("lastModified"),
                    severity=Severity.MEDIUM,
                ))
        return conflicts

    def detect_settings_conflicts(self, local: dict, server: dict) -> list[Conflict]:
        conflicts = []
        for category in SETTINGS_CATEGORIES:
            local_cat = local.get(category)
            server_cat = server.get(category)
            if not local_cat or not server_cat:
                continue
            for key, value in local_cat.items():
                if value != server_cat.get(key):
                    conflicts.append(Conflict(
                        type="settings",
                        field=f"{category}.{key}",
                        local_value=value,
                        server_value=server_cat.get(key),
                        local_timestamp=local.get("lastModified"),
                        server_timestamp=server.get("lastModified"),
                        severity=Severity.LOW,
                    ))
        return conflicts

    @staticmethod
    def has_progress_differences(local: dict, server: dict) -> bool:
        return any(
            _serialized(local.get(name)) != _serialized(server.get(name))
            for name in DIVERGENCE_FIELDS
        )

    # ─────────────────────────────────────────────────────────────────
    # Resolution
    # ─────────────────────────────────────────────────────────────────

    def resolve_conflicts(self, data_type: str, conflicts: list[Conflict]) -> list[Resolution]:
        strategy = self.get_strategy(data_type)
        return [self.resolve_conflict(conflict, strategy) for conflict in conflicts]

    def resolve_conflict(self, conflict: Conflict, strategy: str) -> Resolution:
        logger.debug(f"Resolving {conflict.type} conflict on {conflict.field} with {strategy}")
        try:
            strategy = Strategy(strategy)
        except ValueError:
            logger.warning(f"Unknown strategy: {strategy}, defaulting to server_wins")
            return self.resolve_server_wins(conflict)

        if strategy is Strategy.LOCAL_WINS:
            return self.resolve_local_wins(conflict)
        if strategy is Strategy.MERGE_LATEST_WINS:
            return self.resolve_latest_wins(conflict)
        if strategy is Strategy.MERGE_BOTH:
            return self.resolve_merge_both(conflict)
        if strategy is Strategy.USER_CHOICE:
            return self.resolve_user_choice(conflict)
        return self.resolve_server_wins(conflict)

    def resolve_server_wins(self, conflict: Conflict) -> Resolution:
        return Resolution(
            field=conflict.field,
            resolved_value=conflict.server_value,
            strategy=Strategy.SERVER_WINS.value,
            winner="server",
            timestamp=self._clock(),
        )

    def resolve_local_wins(self, conflict: Conflict) -> Resolution:
        return Resolution(
            field=conflict.field,
            resolved_value=conflict.local_value,
            strategy=Strategy.LOCAL_WINS.value,
            winner="local",
            timestamp=self._clock(),
        )

    def resolve_latest_wins(self, conflict: Conflict) -> Resolution:
        local_time = parse_timestamp(conflict.local_timestamp) or EPOCH
        server_time = parse_timestamp(conflict.server_timestamp) or EPOCH
        use_local = local_time > server_time
        logger.debug(f"Latest wins ({'local' if use_local else 'server'}) for {conflict.field}")
        return Resolution(
            field=conflict.field,
            resolved_value=conflict.local_value if use_local else conflict.server_value,
            strategy=Strategy.MERGE_LATEST_WINS.value,
            winner="local" if use_local else "server",
            timestamp=self._clock(),
        )

    def resolve_merge_both(self, conflict: Conflict) -> Resolution:
        try:
            if conflict.type == "progress" and conflict.field == "general":
                merged = merge_progress_data(conflict.local_value, conflict.server_value, self._clock())
            elif conflict.type == "settings":
                merged = merge_settings(conflict.local_value, conflict.server_value, self._clock())
            else:
                return self.resolve_latest_wins(conflict)
        except (MergeFailure, TypeError, ValueError, AttributeError, KeyError) as e:
            logger.error(f"Failed to merge {conflict.field}, falling back to latest wins: {e}")
            return self.resolve_latest_wins(conflict)

        return Resolution(
            field=conflict.field,
            resolved_value=merged,
            strategy=Strategy.MERGE_BOTH.value,
            winner="both",
            timestamp=self._clock(),
        )

    def resolve_user_choice(self, conflict: Conflict) -> Resolution:
        self.pending_conflicts.append(conflict)
        logger.info(f"User choice needed for {conflict.field}")
        return Resolution(
            field=conflict.field,
            resolved_value=None,
            strategy=Strategy.USER_CHOICE.value,
            status="pending",
            timestamp=self._clock(),
        )

    def resolve_user_conflict(self, conflict: Conflict, choice: str) -> Resolution:
        """
        Settle a pending conflict with the user's decision.

        Args:
            conflict: A conflict previously returned as pending
            choice: "local", "server" or "merge"

        Raises:
            ValueError: for any other choice
        """
        if choice == "local":
            resolution = self.resolve_local_wins(conflict)
        elif choice == "server":
            resolution = self.resolve_server_wins(conflict)
        elif choice == "merge":
            resolution = self.resolve_merge_both(conflict)
        else:
            raise ValueError(f"Invalid choice {choice!r}, expected one of {USER_CHOICES}")

        for i, pending in enumerate(self.pending_conflicts):
            if pending is conflict:
                del self.pending_conflicts[i]
                break
        logger.info(f"User resolved conflict for {conflict.field} with choice: {choice}")
        return resolution

    # ─────────────────────────────────────────────────────────────────
    # Pending conflicts and strategy config
    # ─────────────────────────────────────────────────────────────────

    def has_pending_conflicts(self) -> bool:
        return len(self.pending_conflicts) > 0

    def get_pending_conflicts(self) -> list[Conflict]:
        return list(self.pending_conflicts)

    def clear_resolved_conflicts(self) -> None:
        self.pending_conflicts = []

    def discard_pending(self, data_type: str) -> None:
        """Forget pending conflicts of one type before they are detected again."""
        self.pending_conflicts = [c for c in self.pending_conflicts if c.type != data_type]

    def set_strategy(self, data_type: str, strategy: str) -> None:
        self.strategies[data_type] = strategy
        logger.info(f"Set {data_type} conflict strategy to: {strategy}")

    def get_strategy(self, data_type: str) -> str:
        return self.strategies.get(data_type, Strategy.SERVER_WINS.value)
