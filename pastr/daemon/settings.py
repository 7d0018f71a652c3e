"""Shared settings store with change notifications on the event bus."""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

from .bus import Event, EventBus, get_event_bus
from .storage import read_json, write_json


SYNC_INTERVAL_KEY = "sync_interval_minutes"
CAPTURE_ENABLED_KEY = "capture_enabled"
LAST_SYNC_STATUS_KEY = "last_sync_status"

SCHEDULE_KEYS = (SYNC_INTERVAL_KEY, CAPTURE_ENABLED_KEY)


@dataclass
class ScheduleState:
    """Persisted timer configuration; an interval of 0 disables sync."""
    sync_interval_minutes: int = 0
    capture_enabled: bool = False


def coerce_interval(value: Any) -> int:
    """Validate an interval value, raising ValueError for anything but a whole number >= 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Invalid sync interval: {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"Sync interval must be a whole number of minutes, got {value}")
    minutes = int(value)
    if minutes < 0:
        raise ValueError(f"Sync interval must be >= 0, got {minutes}")
    return minutes


def coerce_enabled(value: Any) -> bool:
    """Validate a capture flag; strings such as "false" are rejected, not coerced."""
    if not isinstance(value, bool):
        raise ValueError(f"capture_enabled must be a boolean, got {value!r}")
    return value


class SettingsStore:
    """
    Key/value settings persisted as one JSON file.

    Every write that changes a value publishes ``settings.changed`` with
    ``key``, ``old_value``, ``new_value`` and ``origin`` so observers
    (the daemon itself, any UI) can react.
    """

    def __init__(
        self,
        path: Path,
        bus: Optional[EventBus] = None,
        defaults: Optional[Dict[str, Any]] = None
    ):
        self.path = path
        self._bus = bus or get_event_bus()
        self._defaults = dict(defaults or {})
        self._values: Dict[str, Any] = dict(self._defaults)
        self._lock = asyncio.Lock()

    async def load(self) -> None:
        """Load persisted values over the defaults."""
        stored = await read_json(self.path)
        self._values = {**self._defaults, **stored}
        logger.debug(f"Loaded {len(stored)} settings from {self.path}")

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def all(self) -> Dict[str, Any]:
        return dict(self._values)

    async def set(self, key: str, value: Any, origin: str = "engine") -> bool:
        """Set one value. Returns True if the stored value changed."""
        return bool(await self.update({key: value}, origin=origin))

    async def update(self, values: Dict[str, Any], origin: str = "engine") -> Dict[str, Any]:
        """Set several values at once; returns the keys that changed with their new values."""
        async with self._lock:
            changed = {}
            previous = {}
            for key, value in values.items():
                if self._values.get(key) != value or key not in self._values:
                    previous[key] = self._values.get(key)
                    changed[key] = value
            if not changed:
                return {}
            self._values.update(changed)
            await write_json(self.path, self._values)

        for key, value in changed.items():
            await self._bus.emit(Event(
                type="settings.changed",
                data={
                    "key": key,
                    "old_value": previous[key],
                    "new_value": value,
                    "origin": origin
                },
                source="settings"
            ))
        return changed

    def schedule_state(self) -> ScheduleState:
        """Current schedule state, tolerating bad stored values."""
        try:
            minutes = coerce_interval(self._values.get(SYNC_INTERVAL_KEY, 0) or 0)
        except ValueError:
            logger.warning(f"Ignoring invalid stored sync interval: {self._values.get(SYNC_INTERVAL_KEY)!r}")
            minutes = 0
        try:
            enabled = coerce_enabled(self._values.get(CAPTURE_ENABLED_KEY, False))
        except ValueError:
            logger.warning(f"Ignoring invalid stored capture flag: {self._values.get(CAPTURE_ENABLED_KEY)!r}")
            enabled = False
        return ScheduleState(sync_interval_minutes=minutes, capture_enabled=enabled)
