"""Core sync engine: one orchestrated run of the bidirectional sync."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from app.config import Settings, SyncConfig, get_settings
from app.sync.errors import (
    CalendarAccessError,
    ErrorKind,
    EventSyncError,
    SyncError,
    classify_error,
)
from app.sync.forward import ForwardSyncEngine, PassResult
from app.sync.rate_limit import RequestGate
from app.sync.reverse import ReverseSyncEngine
from app.sync.state import SyncStateManager
from app.sync.times import utc_now

logger = logging.getLogger(__name__)

SUCCESS_RATE_THRESHOLD = 0.8
QUOTA_CRITICAL_THRESHOLD = 0.9
MAX_BACKOFF_DELAY = 300.0  # seconds

SYNC_LOCK_NAME = "calendar_sync"


class RunState(str, Enum):
    IDLE = "idle"
    ACQUIRING_LOCK = "acquiring-lock"
    LOADING_TARGET = "loading-target-snapshot"
    FORWARD_PASS = "forward-pass"
    REVERSE_PASS = "reverse-pass"
    SUMMARIZING = "summarizing"
    COMPLETED = "completed"


@dataclass
class SyncRunSummary:
    """Outcome of one run; the only thing a run ever returns."""

    success: bool = False
    status: str = "failed"  # success | partial | failed | skipped
    critical_errors: int = 0
    recoverable_errors: int = 0
    timestamp: str = ""
    started_at: Optional[str] = None
    sources_total: int = 0
    sources_synced: int = 0
    forward: dict[str, dict] = field(default_factory=dict)
    reverse: Optional[dict] = None
    errors: list[str] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status,
            "critical_errors": self.critical_errors,
            "recoverable_errors": self.recoverable_errors,
            "timestamp": self.timestamp,
            "started_at": self.started_at,
            "sources_total": self.sources_total,
            "sources_synced": self.sources_synced,
            "forward": self.forward,
            "reverse": self.reverse,
            "errors": self.errors,
        }


@dataclass
class RecoveryResult:
    success: bool
    message: str


class RecoveryPolicy:
    """Per-run retry bookkeeping and recovery strategies for calendar passes."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        backoff_multiplier: float = 2.0,
        gate: Optional[RequestGate] = None,
        client=None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.backoff_multiplier = backoff_multiplier
        self.gate = gate
        self.client = client
        self._sleep = sleep
        self.retry_attempts: dict[str, int] = {}

    def should_retry(self, error: SyncError, operation_key: str) -> bool:
        if not error.retryable:
            return False
        return self.retry_attempts.get(operation_key, 0) < self.max_retries

    def record_retry(self, operation_key: str) -> None:
        self.retry_attempts[operation_key] = self.retry_attempts.get(operation_key, 0) + 1

    def get_retry_delay(self, operation_key: str) -> float:
        attempts = self.retry_attempts.get(operation_key, 0)
        return min(self.base_delay * (self.backoff_multiplier ** attempts), MAX_BACKOFF_DELAY)

    def clear(self, operation_key: str) -> None:
        self.retry_attempts.pop(operation_key, None)

    async def attempt_recovery(self, error: SyncError) -> RecoveryResult:
        """Try to get back into a state where a retry can succeed."""
        if error.kind == ErrorKind.QUOTA_EXCEEDED:
            return await self._handle_quota_exceeded()
        if error.kind == ErrorKind.CALENDAR_ACCESS:
            return self._handle_calendar_access(error)
        if error.kind == ErrorKind.EVENT_SYNC:
            logger.info(f"Skipping problematic event: {getattr(error, 'event_id', None)}")
            return RecoveryResult(True, "Skipped problematic event")
        return RecoveryResult(False, "No recovery strategy available")

    async def _handle_quota_exceeded(self) -> RecoveryResult:
        delay = self.base_delay
        usage = self.gate.status() if self.gate else None

        if usage and usage["request_count"] >= usage["max_requests"] * QUOTA_CRITICAL_THRESHOLD:
            delay = max(usage["quota_reset_in_ms"] / 1000 + 1, self.base_delay * 5)
            logger.info(
                f"Near quota limit ({usage['request_count']}/{usage['max_requests']}), "
                f"waiting {delay:.1f}s for quota reset"
            )
        else:
            delay = min(self.base_delay * 4, MAX_BACKOFF_DELAY)
            logger.info(f"Quota exceeded, backing off for {delay:.1f}s")

        await self._sleep(delay)
        return RecoveryResult(True, f"Waited {delay:.1f}s for quota management")

    def _handle_calendar_access(self, error: SyncError) -> RecoveryResult:
        calendar_id = getattr(error, "calendar_id", None)
        if not calendar_id or self.client is None:
            return RecoveryResult(False, "Cannot verify calendar access")

        try:
            calendar = self.client.get_calendar(calendar_id)
        except Exception as e:
            return RecoveryResult(False, f"Calendar still inaccessible: {e}")

        if calendar is None:
            return RecoveryResult(False, f"Calendar {calendar_id} not found")
        return RecoveryResult(True, "Calendar access restored")


class SyncOrchestrator:
    """
    Drive one run: lock, target snapshot, forward pass per source, reverse
    pass, summary.

    ``run()`` never raises. The lock is released and the summary reported on
    every path except a failed lock acquisition, which has no side effects.
    ``lock`` provides ``try_acquire(timeout_ms)``, ``refresh()`` and
    ``release()``; it is refreshed on every state transition.
    """

    def __init__(
        self,
        client,
        config: SyncConfig,
        state: SyncStateManager,
        lock,
        progress=None,
        gate: Optional[RequestGate] = None,
        lock_timeout_ms: int = 30_000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = utc_now,
    ):
        self.client = client
        self.config = config
        self.state = state
        self.lock = lock
        self.progress = progress
        self.gate = gate
        self.lock_timeout_ms = lock_timeout_ms
        self._sleep = sleep
        self._now = now

        self.critical: list[SyncError] = []
        self.recoverable: list[SyncError] = []

    async def _report(self, state: RunState, message: str, **details: Any) -> None:
        # Each transition is also a heartbeat for the run lock
        try:
            await self.lock.refresh()
        except Exception as e:
            logger.warning(f"Failed to refresh sync lock: {e}")

        if self.progress is None:
            return
        try:
            await self.progress.report(state, message, **details)
        except Exception as e:
            logger.warning(f"Failed to report sync progress: {e}")

    async def run(self) -> SyncRunSummary:
        """Run one sync pass and return its summary."""
        try:
            acquired = await self.lock.try_acquire(self.lock_timeout_ms)
        except Exception as e:
            error = classify_error(e)
            logger.error(f"Could not acquire sync lock: {error}")
            return SyncRunSummary(
                critical_errors=1,
                timestamp=self._now().isoformat(),
                sources_total=len(self.config.source_calendar_ids),
                errors=[f"Could not acquire sync lock: {error}"],
            )

        if not acquired:
            logger.warning("Another synchronization instance is already running. Skipping.")
            return SyncRunSummary(status="skipped", timestamp=self._now().isoformat())

        started_at = self._now()
        summary = SyncRunSummary(
            started_at=started_at.isoformat(),
            sources_total=len(self.config.source_calendar_ids),
        )

        try:
            await self._report(RunState.ACQUIRING_LOCK, "Lock acquired")
            await self._run_passes(started_at, summary)
        except Exception as e:
            error = classify_error(e)
            logger.error(f"Critical synchronization error: {error}")
            self.critical.append(error)
        finally:
            summary.critical_errors = len(self.critical)
            summary.recoverable_errors = len(self.recoverable)
            summary.errors = [str(e) for e in self.critical + self.recoverable]
            summary.status = self._overall_status(summary)
            summary.timestamp = self._now().isoformat()

            logger.info(f"Synchronization summary: {summary.to_dict()}")

            try:
                if self.progress is not None:
                    await self.progress.complete(summary)
            except Exception as e:
                logger.error(f"Failed to store sync status: {e}")
            finally:
                await self.lock.release()

        return summary

    async def _run_passes(self, started_at: datetime, summary: SyncRunSummary) -> None:
        config = self.config
        errors = config.validate()
        if errors:
            raise SyncError(f"Invalid sync configuration: {'; '.join(errors)}")

        time_min = started_at - timedelta(days=config.days_back)
        time_max = started_at + timedelta(days=config.days_forward)
        target_id = config.target_calendar_id

        stats = self.state.get_stats()
        logger.info(
            f"Starting N->1 synchronization (total ops: {stats['total_operations']}, "
            f"recent ops: {stats['recent_operations']}, potential loops: {stats['potential_loops']})"
        )

        await self._report(RunState.LOADING_TARGET, f"Loading events from {target_id}")
        try:
            target_events = self.client.list_events(target_id, time_min, time_max)
        except Exception as e:
            error = classify_error(e, target_id=target_id)
            if not isinstance(error, CalendarAccessError):
                error = CalendarAccessError(f"Failed to access target calendar: {error}", target_id)
            raise error from e

        policy = RecoveryPolicy(
            max_retries=max(config.max_sync_attempts - 1, 0),
            gate=self.gate,
            client=self.client,
            sleep=self._sleep,
        )
        forward = ForwardSyncEngine(self.client, self.state, target_id)

        for index, source_id in enumerate(config.source_calendar_ids, start=1):
            await self._report(
                RunState.FORWARD_PASS,
                f"Syncing source {index}/{len(config.source_calendar_ids)}: {source_id}",
                current_source=source_id,
                sources_done=index - 1,
                sources_total=len(config.source_calendar_ids),
            )
            result = await self._sync_source_with_retries(
                forward, policy, source_id, time_min, time_max, target_events
            )
            if result is not None:
                summary.sources_synced += 1
                summary.forward[source_id] = result.to_dict()

        await self._report(RunState.REVERSE_PASS, f"Syncing changes from {target_id} back to sources")
        reverse = ReverseSyncEngine(self.client, self.state, target_id)
        try:
            result = reverse.sync_target(config.source_calendar_ids, target_events)
            summary.reverse = result.to_dict()
            logger.info("Reverse synchronization completed successfully")
        except Exception as e:
            error = classify_error(e, target_id, "sources")
            if error.recoverable:
                logger.warning(f"Recoverable error in reverse sync: {error}")
                self.recoverable.append(error)
            else:
                logger.error(f"Critical error in reverse sync: {error}")
                self.critical.append(error)

        await self._report(RunState.SUMMARIZING, "Summarizing")

        success_rate = summary.sources_synced / summary.sources_total
        summary.success = success_rate >= SUCCESS_RATE_THRESHOLD
        if summary.success:
            logger.info(f"Synchronization completed successfully. Success rate: {success_rate:.1%}")
        else:
            logger.warning(f"Synchronization completed with issues. Success rate: {success_rate:.1%}")

    async def _sync_source_with_retries(
        self,
        forward: ForwardSyncEngine,
        policy: RecoveryPolicy,
        source_id: str,
        time_min: datetime,
        time_max: datetime,
        target_events: list[dict],
    ) -> Optional[PassResult]:
        """Sync one source, retrying per the recovery policy. None on failure."""
        operation_key = f"source-sync-{source_id}"
        target_id = self.config.target_calendar_id
        attempts = 0
        last_error: Optional[SyncError] = None

        while attempts < self.config.max_sync_attempts:
            try:
                result = forward.sync_source(source_id, time_min, time_max, target_events)
                policy.clear(operation_key)
                logger.info(f"Successfully synced source calendar: {source_id}")
                return result
            except Exception as e:
                attempts += 1
                last_error = classify_error(e, source_id, target_id)

                if not policy.should_retry(last_error, operation_key):
                    break

                logger.info(f"Attempt {attempts} failed for {source_id}: {last_error}. Retrying...")
                policy.record_retry(operation_key)

                recovery = await policy.attempt_recovery(last_error)
                if not recovery.success:
                    logger.warning(f"Recovery failed: {recovery.message}")
                    break

                logger.info(f"Recovery successful: {recovery.message}")
                await self._sleep(policy.get_retry_delay(operation_key))

        logger.error(f"Failed to sync source calendar {source_id} after {attempts} attempts: {last_error}")
        if last_error is not None and last_error.recoverable:
            self.recoverable.append(
                EventSyncError(
                    f"Failed to sync source {source_id}: {last_error}",
                    None,
                    source_id,
                    target_id,
                )
            )
        elif last_error is not None:
            self.critical.append(last_error)
        return None

    def _overall_status(self, summary: SyncRunSummary) -> str:
        if summary.sources_synced == 0:
            return "failed"
        if summary.success and not self.critical and not self.recoverable:
            return "success"
        return "partial"


class SyncService:
    """
    Process-wide owner of the sync collaborators.

    Holds the one ``SyncStateManager`` and ``RequestGate`` of the process,
    builds the calendar client lazily and a fresh ``SyncOrchestrator`` per
    run, and runs at most one background run at a time.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client_factory: Optional[Callable[[RequestGate], Any]] = None,
        lock_factory: Optional[Callable[[], Any]] = None,
        progress_factory: Optional[Callable[[], Any]] = None,
        config_loader: Optional[Callable[[], Awaitable[SyncConfig]]] = None,
        state: Optional[SyncStateManager] = None,
        gate: Optional[RequestGate] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        self.state = state or SyncStateManager(
            loop_detection_window_ms=self.settings.loop_detection_window_ms,
            max_history_size=self.settings.operation_history_size,
            closeness_threshold_ms=self.settings.min_update_interval_ms,
            clock=clock,
        )
        self.gate = gate or RequestGate.from_settings(self.settings)
        self._client_factory = client_factory
        self._lock_factory = lock_factory
        self._progress_factory = progress_factory
        self._config_loader = config_loader
        self._sleep = sleep
        self._client = None
        self._task: Optional[asyncio.Task] = None

    def get_client(self):
        """Get the calendar client, building it on first use."""
        if self._client is None:
            if self._client_factory is not None:
                self._client = self._client_factory(self.gate)
            else:
                from app.sync.google_calendar import build_calendar_client
                self._client = build_calendar_client(gate=self.gate, settings=self.settings)
        return self._client

    def _make_lock(self):
        if self._lock_factory is not None:
            return self._lock_factory()
        from app.jobs.sync_job import DatabaseJobLock
        return DatabaseJobLock(SYNC_LOCK_NAME, stale_minutes=self.settings.lock_stale_minutes)

    def _make_progress(self):
        if self._progress_factory is not None:
            return self._progress_factory()
        from app.sync.history import DatabaseProgressReporter
        return DatabaseProgressReporter(history_size=self.settings.run_history_size)

    async def _load_config(self) -> SyncConfig:
        if self._config_loader is not None:
            return await self._config_loader()
        from app.sync.configuration import load_sync_config
        return await load_sync_config(self.settings)

    async def run_once(self) -> SyncRunSummary:
        """Run one sync pass. Never raises; failures end up in the summary."""
        progress = None
        config = None
        stage = "create progress reporter"
        try:
            progress = self._make_progress()
            stage = "load sync configuration"
            config = await self._load_config()

            # Loop tuning may be overridden by the stored configuration
            if not config.validate():
                self.state.loop_detection_window_ms = config.loop_detection_window_ms
                self.state.closeness_threshold_ms = config.min_update_interval_ms

            stage = "create calendar client"
            client = self.get_client()
        except Exception as e:
            error = classify_error(e)
            logger.error(f"Could not {stage}: {error}")
            summary = SyncRunSummary(
                critical_errors=1,
                timestamp=utc_now().isoformat(),
                sources_total=len(config.source_calendar_ids) if config else 0,
                errors=[f"Could not {stage}: {error}"],
            )
            await self._complete_quietly(progress, summary)
            return summary

        orchestrator = SyncOrchestrator(
            client=client,
            config=config,
            state=self.state,
            lock=self._make_lock(),
            progress=progress,
            gate=self.gate,
            lock_timeout_ms=self.settings.lock_wait_seconds * 1000,
            sleep=self._sleep,
        )
        return await orchestrator.run()

    @staticmethod
    async def _complete_quietly(progress, summary: SyncRunSummary) -> None:
        if progress is None:
            return
        try:
            await progress.complete(summary)
        except Exception as e:
            logger.error(f"Failed to store sync status: {e}")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start_background_run(self) -> bool:
        """Start a run as a background task. False when one is already running."""
        if self.is_running:
            return False
        self._task = asyncio.create_task(self._run_in_background())
        return True

    async def _run_in_background(self) -> None:
        try:
            await self.run_once()
        except Exception as e:
            logger.exception(f"Error in background sync run: {e}")

    async def wait_for_run(self) -> None:
        """Wait for the current background run, if any."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def reset_state(self) -> None:
        """Forget loop-detection history and the stored last run status."""
        from app.sync.history import clear_run_status

        self.state.reset()
        await clear_run_status()
        logger.info("Sync state has been reset")

    def get_statistics(self) -> dict[str, Any]:
        return {
            "state": self.state.get_stats(),
            "api": self.gate.status(),
            "running": self.is_running,
        }

    async def shutdown(self) -> None:
        """Cancel a background run still in progress."""
        if self.is_running:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
