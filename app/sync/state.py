"""Sync state tracking for loop detection in bidirectional sync.

The manager keeps a short, bounded history of every propagation the engine
performs and, per ``calendar:event`` key, which calendar the latest write
came from. Before propagating a change it checks that history to avoid
echoing a change straight back to the calendar it came from.

Both checks are time-window heuristics rather than a causal protocol: a
legitimate edit made on the other side within the window can be dropped, and
cycles that do not follow the strict alternating pattern are not caught.
"""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_LOOP_WINDOW_MS = 300_000
DEFAULT_MAX_HISTORY = 1000
DEFAULT_CLOSENESS_MS = 60_000
PING_PONG_LENGTH = 4

OPERATIONS = ("create", "update", "delete")


@dataclass
class SyncOperation:
    """One attempted propagation from one calendar to another."""

    id: str
    source_calendar_id: str
    target_calendar_id: str
    event_id: str
    operation: str
    timestamp: float  # milliseconds
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ChangeOrigin:
    """Which calendar the latest engine write to an event came from."""

    origin_calendar_id: str
    timestamp: float  # milliseconds
    operation_id: str


class SyncStateManager:
    """In-memory history of sync operations used to suppress update loops."""

    def __init__(
        self,
        loop_detection_window_ms: int = DEFAULT_LOOP_WINDOW_MS,
        max_history_size: int = DEFAULT_MAX_HISTORY,
        closeness_threshold_ms: int = DEFAULT_CLOSENESS_MS,
        clock: Callable[[], float] = time.time,
    ):
        self.loop_detection_window_ms = loop_detection_window_ms
        self.max_history_size = max_history_size
        self.closeness_threshold_ms = closeness_threshold_ms
        self._clock = clock
        self.operations: list[SyncOperation] = []
        self.change_origin: dict[str, ChangeOrigin] = {}

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _is_recent(self, timestamp: float, now: Optional[float] = None) -> bool:
        now = self._now_ms() if now is None else now
        return now - timestamp < self.loop_detection_window_ms

    @staticmethod
    def _change_key(calendar_id: str, event_id: str) -> str:
        return f"{calendar_id}:{event_id}"

    def reset(self) -> None:
        """Forget all recorded operations."""
        self.operations = []
        self.change_origin = {}

    def record_operation(
        self,
        source_calendar_id: str,
        target_calendar_id: str,
        event_id: str,
        operation: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        """Record a propagation and mark the target event's change origin."""
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown sync operation: {operation}")

        timestamp = self._now_ms()
        operation_id = f"{target_calendar_id}:{event_id}:{operation}:{int(timestamp)}"

        self.operations.append(
            SyncOperation(
                id=operation_id,
                source_calendar_id=source_calendar_id,
                target_calendar_id=target_calendar_id,
                event_id=event_id,
                operation=operation,
                timestamp=timestamp,
                metadata=dict(metadata or {}),
            )
        )
        self.change_origin[self._change_key(target_calendar_id, event_id)] = ChangeOrigin(
            origin_calendar_id=source_calendar_id,
            timestamp=timestamp,
            operation_id=operation_id,
        )

        self.cleanup()
        return operation_id

    def would_create_loop(
        self,
        source_calendar_id: str,
        target_calendar_id: str,
        event_id: str,
    ) -> bool:
        """
        Check whether pushing ``event_id`` from source to target would echo a
        change that itself just arrived from the target.
        """
        recent = self.change_origin.get(self._change_key(source_calendar_id, event_id))
        if (
            recent is not None
            and recent.origin_calendar_id == target_calendar_id
            and self._is_recent(recent.timestamp)
        ):
            logger.info(
                f"Loop detected: {source_calendar_id} -> {target_calendar_id} for event {event_id}"
            )
            return True

        return self.detect_ping_pong(source_calendar_id, target_calendar_id, event_id)

    def detect_ping_pong(
        self,
        source_calendar_id: str,
        target_calendar_id: str,
        event_id: str,
    ) -> bool:
        """Detect the last four operations on an event bouncing between two calendars."""
        pair = {source_calendar_id, target_calendar_id}
        now = self._now_ms()

        recent = [
            op
            for op in reversed(self.operations)
            if op.event_id == event_id
            and {op.source_calendar_id, op.target_calendar_id} == pair
            and self._is_recent(op.timestamp, now)
        ][:PING_PONG_LENGTH]

        if len(recent) < PING_PONG_LENGTH:
            return False

        alternating = all(
            op.source_calendar_id == prev.target_calendar_id
            and op.target_calendar_id == prev.source_calendar_id
            for prev, op in zip(recent, recent[1:])
        )
        if alternating:
            logger.info(
                f"Ping-pong pattern detected for event {event_id} between "
                f"{source_calendar_id} and {target_calendar_id}"
            )
        return alternating

    def should_skip_sync(
        self,
        source_calendar_id: str,
        target_calendar_id: str,
        event_id: str,
        source_updated: datetime,
        target_updated: datetime,
    ) -> bool:
        """
        Check whether an apparent staleness is an artifact of our own write.

        True when the target event was just written by us from this same
        source and the two modification times are within the closeness
        threshold of each other.
        """
        recent = self.change_origin.get(self._change_key(target_calendar_id, event_id))
        if recent is None:
            return False

        if recent.origin_calendar_id != source_calendar_id or not self._is_recent(recent.timestamp):
            return False

        difference_ms = abs((source_updated - target_updated).total_seconds()) * 1000
        if difference_ms < self.closeness_threshold_ms:
            logger.info(
                f"Skipping sync to prevent loop: {source_calendar_id} -> "
                f"{target_calendar_id} for event {event_id}"
            )
            return True
        return False

    def cleanup(self) -> None:
        """Drop records older than the detection window and cap the history."""
        now = self._now_ms()

        self.operations = [op for op in self.operations if self._is_recent(op.timestamp, now)]
        self.change_origin = {
            key: change
            for key, change in self.change_origin.items()
            if self._is_recent(change.timestamp, now)
        }

        if len(self.operations) > self.max_history_size:
            self.operations = self.operations[-self.max_history_size:]

    def get_stats(self) -> dict[str, Any]:
        """Statistics over the recent operation history."""
        now = self._now_ms()
        recent = [op for op in self.operations if self._is_recent(op.timestamp, now)]

        by_type: dict[str, int] = defaultdict(int)
        groups: dict[tuple[str, str, str], int] = defaultdict(int)
        for op in recent:
            by_type[op.operation] += 1
            groups[(op.source_calendar_id, op.target_calendar_id, op.event_id)] += 1

        return {
            "total_operations": len(self.operations),
            "recent_operations": len(recent),
            "operations_by_type": dict(by_type),
            "potential_loops": sum(1 for count in groups.values() if count > 2),
        }
