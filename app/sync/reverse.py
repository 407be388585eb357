"""Target -> source (1 -> N) propagation of edits made on mirrors."""

import logging
from typing import Iterable

from app.sync.errors import EventSyncError
from app.sync.forward import PassResult, error_threshold
from app.sync.matcher import is_cancelled
from app.sync.metadata import build_reverse_payload, build_touch_patch, read_metadata
from app.sync.state import SyncStateManager
from app.sync.times import updated_at

logger = logging.getLogger(__name__)


class ReverseSyncEngine:
    """Carry edits and deletions made on target mirrors back to their sources."""

    def __init__(self, client, state: SyncStateManager, target_calendar_id: str):
        self.client = client
        self.state = state
        self.target_calendar_id = target_calendar_id

    def sync_target(self, source_calendar_ids: Iterable[str], target_events: list[dict]) -> PassResult:
        """Run the reverse pass over a target snapshot."""
        logger.info(f"Processing reverse synchronization: {self.target_calendar_id} -> Sources")

        sources = set(source_calendar_ids)
        result = PassResult()
        max_errors = error_threshold(len(target_events))

        for target_event in target_events:
            try:
                if self._sync_event(target_event, sources, result):
                    result.processed += 1
            except Exception as e:
                label = target_event.get("summary") or target_event.get("id")
                logger.error(f'Error during reverse synchronization for event "{label}": {e}')
                result.errors.append(f"{target_event.get('id')}: {e}")

                if result.error_count > max_errors:
                    raise EventSyncError(
                        f"Too many errors ({result.error_count}) in reverse synchronization",
                        target_event.get("id"),
                        self.target_calendar_id,
                        None,
                    ) from e

        logger.info(
            f"Reverse sync processed: {result.processed} events, {result.error_count} errors"
        )
        return result

    def _sync_event(self, target_event: dict, sources: set[str], result: PassResult) -> bool:
        """Handle one target event. Returns False for non-mirrors and loop-suppressed events."""
        metadata = read_metadata(target_event)
        if metadata is None or metadata.sync_source not in sources:
            return False

        target_id = self.target_calendar_id
        source_id = metadata.sync_source
        original_id = metadata.sync_original_id
        summary = target_event.get("summary", "")

        if self.state.would_create_loop(target_id, source_id, original_id):
            logger.info(f'Skipping reverse sync to prevent loop: "{summary}" ({target_id} -> {source_id})')
            result.loops_skipped += 1
            return False

        original_event = self.client.get_event(source_id, original_id)

        if original_event is None:
            # Source deleted out of band: drop the orphaned mirror
            if not is_cancelled(target_event):
                self.state.record_operation(source_id, target_id, original_id, "delete")
                self.client.delete_event(target_id, target_event["id"])
                result.deleted += 1
                logger.info(f'DELETED orphaned mirror in target: "{summary}" (source {source_id} gone)')
            else:
                result.unchanged += 1
            return True

        if is_cancelled(target_event):
            if not is_cancelled(original_event):
                self.state.record_operation(target_id, source_id, original_id, "delete")
                self.client.delete_event(source_id, original_id)
                result.deleted += 1
                logger.info(f'DELETED in source: "{original_event.get("summary", "")}" (in {source_id})')
            else:
                result.unchanged += 1
            return True

        target_updated = updated_at(target_event)
        original_updated = updated_at(original_event)

        if self.state.should_skip_sync(target_id, source_id, original_id, target_updated, original_updated):
            result.loops_skipped += 1
            return False

        if target_updated <= original_updated:
            result.unchanged += 1
            return True

        self.state.record_operation(
            target_id,
            source_id,
            original_id,
            "update",
            {
                "target_updated": target_updated.isoformat(),
                "original_updated": original_updated.isoformat(),
            },
        )
        updated_source = self.client.update_event(
            source_id, original_id, build_reverse_payload(target_event)
        )
        result.updated += 1
        logger.info(f'UPDATED in source: "{summary}" (in {source_id})')

        if updated_source:
            # Advance the mirror's own modification time past the source's
            self.client.patch_event(target_id, target_event["id"], build_touch_patch(target_event))
            result.touched += 1
            logger.info('   -> "Touch" target event to unify update time')

        return True
