"""Source -> target (N -> 1) propagation."""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime

from app.sync.errors import EventSyncError
from app.sync.matcher import MATCH_ATTRIBUTES, find_target_event, index_by_source_key, is_cancelled
from app.sync.metadata import build_mirror_payload, sync_key
from app.sync.state import SyncStateManager
from app.sync.times import updated_at

logger = logging.getLogger(__name__)

MIN_ERROR_THRESHOLD = 5
ERROR_THRESHOLD_RATIO = 0.1


def error_threshold(event_count: int) -> int:
    """Number of per-event failures tolerated before a pass is abandoned."""
    return max(MIN_ERROR_THRESHOLD, int(event_count * ERROR_THRESHOLD_RATIO))


@dataclass
class PassResult:
    """
    Counters for one forward or reverse pass.

    ``processed`` excludes events suppressed by a loop guard; those are
    counted in ``loops_skipped`` only.
    """

    processed: int = 0
    created: int = 0
    updated: int = 0
    adopted: int = 0
    deleted: int = 0
    touched: int = 0
    unchanged: int = 0
    loops_skipped: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["error_count"] = self.error_count
        return data


class ForwardSyncEngine:
    """Mirror the events of each source calendar into the target calendar."""

    def __init__(self, client, state: SyncStateManager, target_calendar_id: str):
        self.client = client
        self.state = state
        self.target_calendar_id = target_calendar_id

    def sync_source(
        self,
        source_calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        target_events: list[dict],
    ) -> PassResult:
        """Sync one source calendar into the target snapshot."""
        logger.info(f"Processing: {source_calendar_id} -> {self.target_calendar_id}")

        source_events = self.client.list_events(source_calendar_id, time_min, time_max)
        return self.sync_events(source_calendar_id, source_events, target_events)

    def sync_events(
        self,
        source_calendar_id: str,
        source_events: list[dict],
        target_events: list[dict],
    ) -> PassResult:
        """Apply create/update/delete decisions for already-loaded source events."""
        result = PassResult()
        key_index = index_by_source_key(target_events, source_calendar_id)
        adopted_ids: set[str] = set()
        max_errors = error_threshold(len(source_events))

        for source_event in source_events:
            try:
                if self._sync_event(
                    source_calendar_id,
                    source_event,
                    key_index,
                    target_events,
                    adopted_ids,
                    result,
                ):
                    result.processed += 1
            except Exception as e:
                label = source_event.get("summary") or source_event.get("id")
                logger.error(f'Error processing event "{label}": {e}')
                result.errors.append(f"{source_event.get('id')}: {e}")

                if result.error_count > max_errors:
                    raise EventSyncError(
                        f"Too many errors ({result.error_count}) processing source {source_calendar_id}",
                        source_event.get("id"),
                        source_calendar_id,
                        self.target_calendar_id,
                    ) from e

        logger.info(
            f"Source {source_calendar_id} processed: {result.processed} events, "
            f"{result.error_count} errors"
        )
        return result

    def _sync_event(
        self,
        source_calendar_id: str,
        source_event: dict,
        key_index: dict[str, dict],
        target_events: list[dict],
        adopted_ids: set[str],
        result: PassResult,
    ) -> bool:
        """Handle one source event. Returns False when a loop guard suppressed it."""
        event_id = source_event["id"]
        target_id = self.target_calendar_id
        summary = source_event.get("summary", "")

        if self.state.would_create_loop(source_calendar_id, target_id, event_id):
            logger.info(f'Skipping sync to prevent loop: "{summary}" ({source_calendar_id} -> {target_id})')
            result.loops_skipped += 1
            return False

        key = sync_key(source_event, source_calendar_id)

        if is_cancelled(source_event):
            target_event = key_index.get(key)
            if target_event is not None and not is_cancelled(target_event):
                self.state.record_operation(source_calendar_id, target_id, event_id, "delete")
                self.client.delete_event(target_id, target_event["id"])
                result.deleted += 1
                logger.info(f'DELETED in target: "{summary}" (from {source_calendar_id})')
            else:
                result.unchanged += 1
            return True

        target_event, how = find_target_event(
            source_event, key, key_index, target_events, adopted_ids
        )

        if target_event is None:
            self.state.record_operation(source_calendar_id, target_id, event_id, "create")
            created = self.client.insert_event(
                target_id, build_mirror_payload(source_event, source_calendar_id)
            )
            if created:
                # A retried pass over the same snapshot must find this mirror
                key_index[key] = created
                target_events.append(created)
            result.created += 1
            logger.info(f'CREATED in target: "{summary}" (from {source_calendar_id})')
            return True

        if how == MATCH_ATTRIBUTES:
            # Untagged look-alike on the target: take it over instead of duplicating
            self.state.record_operation(
                source_calendar_id, target_id, event_id, "update", {"adopted": target_event["id"]}
            )
            self.client.update_event(
                target_id, target_event["id"], build_mirror_payload(source_event, source_calendar_id)
            )
            adopted_ids.add(target_event["id"])
            result.adopted += 1
            logger.info(f'SYNCING existing event in target: "{summary}" (from {source_calendar_id})')
            return True

        source_updated = updated_at(source_event)
        target_updated = updated_at(target_event)

        if self.state.should_skip_sync(
            source_calendar_id, target_id, event_id, source_updated, target_updated
        ):
            result.loops_skipped += 1
            return False

        if source_updated > target_updated:
            self.state.record_operation(
                source_calendar_id,
                target_id,
                event_id,
                "update",
                {
                    "source_updated": source_updated.isoformat(),
                    "target_updated": target_updated.isoformat(),
                },
            )
            self.client.update_event(
                target_id, target_event["id"], build_mirror_payload(source_event, source_calendar_id)
            )
            result.updated += 1
            logger.info(f'UPDATED in target: "{summary}" (from {source_calendar_id})')
        else:
            result.unchanged += 1
        return True
