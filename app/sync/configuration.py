"""Stored sync configuration, overriding the environment settings."""

import json
import logging
from typing import Optional

from app.config import Settings, SyncConfig
from app.database import delete_setting, get_setting, set_setting

logger = logging.getLogger(__name__)

SYNC_CONFIGURATION_KEY = "sync_configuration"


class InvalidConfigurationError(ValueError):
    """Raised when a configuration fails validation."""

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


async def load_stored_config() -> Optional[dict]:
    setting = await get_setting(SYNC_CONFIGURATION_KEY)
    if not setting or not setting.get("value"):
        return None
    try:
        return json.loads(setting["value"])
    except ValueError:
        logger.warning("Stored sync configuration is not valid JSON, ignoring it")
        return None


async def load_sync_config(settings: Optional[Settings] = None) -> SyncConfig:
    """Get the run configuration: stored values over environment defaults."""
    defaults = SyncConfig.from_settings(settings)
    stored = await load_stored_config()
    if stored is None:
        return defaults
    return SyncConfig.from_dict(stored, defaults)


async def save_sync_config(config: SyncConfig) -> None:
    """Validate and persist a configuration."""
    errors = config.validate()
    if errors:
        raise InvalidConfigurationError(errors)

    await set_setting(SYNC_CONFIGURATION_KEY, json.dumps(config.to_dict()))
    logger.info(
        f"Sync configuration saved: {len(config.source_calendar_ids)} sources -> "
        f"{config.target_calendar_id}"
    )


async def clear_sync_config() -> None:
    """Drop the stored configuration; environment settings apply again."""
    await delete_setting(SYNC_CONFIGURATION_KEY)
    logger.info("Stored sync configuration cleared")


def check_calendar_access(client, config: SyncConfig) -> list[dict]:
    """Probe every configured calendar and report whether it is reachable."""
    calendars = [(config.target_calendar_id, "target")] + [
        (calendar_id, "source") for calendar_id in config.source_calendar_ids
    ]

    results = []
    for calendar_id, role in calendars:
        if not calendar_id:
            continue
        result = {"calendar_id": calendar_id, "role": role, "accessible": False}
        try:
            calendar = client.get_calendar(calendar_id)
            if calendar is None:
                result["error"] = "Calendar not found"
            else:
                result["accessible"] = True
                result["summary"] = calendar.get("summary")
        except Exception as e:
            result["error"] = str(e)
            logger.warning(f"Cannot access {role} calendar {calendar_id}: {e}")
        results.append(result)
    return results
