"""Timer-driven upload of the snippet collection to the remote snapshot."""

import asyncio
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger

from .bus import Event, EventBus, get_event_bus
from .credentials import CredentialManager
from .error_handling import ErrorAggregator, PastrError, Unauthenticated
from .models import RemoteSnapshot, failure_status, success_status
from .remote import RemoteStoreClient
from .repository import SnippetRepository
from .settings import LAST_SYNC_STATUS_KEY, SettingsStore, coerce_interval
from .timers import RecurringTimer


class SyncState(Enum):
    DISABLED = "disabled"
    ARMED = "armed"
    RUNNING = "running"


@dataclass
class SyncOutcome:
    """Result of one sync attempt."""
    success: bool
    status: str
    handle: Optional[str] = None
    created: bool = False
    snippet_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SyncScheduler:
    """
    Owns the sync timer and performs uploads.

    ``set_interval(m)`` with ``m > 0`` runs one sync immediately and then
    every ``m`` minutes; ``set_interval(0)`` disables. A tick that fires
    while a sync is still running is skipped, not queued. Every attempt
    records ``last_sync_status`` in the settings store.
    """

    def __init__(
        self,
        repository: SnippetRepository,
        credentials: CredentialManager,
        remote: RemoteStoreClient,
        settings: SettingsStore,
        errors: Optional[ErrorAggregator] = None,
        bus: Optional[EventBus] = None,
        seconds_per_minute: float = 60.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.repository = repository
        self.credentials = credentials
        self.remote = remote
        self.settings = settings
        self.errors = errors or ErrorAggregator()
        self._bus = bus or get_event_bus()
        self.seconds_per_minute = seconds_per_minute
        self._timer = RecurringTimer("sync", self._on_tick, sleep=sleep)
        self._interval_minutes = 0
        self._in_flight = False
        self.skipped_ticks = 0

    @property
    def state(self) -> SyncState:
        if self._in_flight:
            return SyncState.RUNNING
        if self._timer.active:
            return SyncState.ARMED
        return SyncState.DISABLED

    @property
    def active(self) -> bool:
        """Whether a recurring timer is armed."""
        return self._timer.active

    @property
    def interval_minutes(self) -> int:
        return self._interval_minutes if self._timer.active else 0

    def set_interval(self, minutes: int) -> None:
        """Re-arm the sync timer; 0 disables it."""
        minutes = coerce_interval(minutes)
        self.disarm()
        if minutes == 0:
            logger.info("Auto-sync disabled")
            return

        self._interval_minutes = minutes
        self._timer.arm(minutes * self.seconds_per_minute, run_immediately=True)
        logger.info(f"Auto-sync every {minutes} minutes")

    def disarm(self) -> None:
        self._timer.disarm()
        self._interval_minutes = 0

    async def drain(self) -> None:
        """Wait for sync attempts already started by the timer."""
        await self._timer.drain()

    async def _on_tick(self) -> None:
        if self._in_flight:
            self.skipped_ticks += 1
            logger.warning("Sync tick skipped: previous sync still running")
            return
        await self.sync_once()

    async def sync_once(self, interactive: bool = False) -> SyncOutcome:
        """Run one sync attempt and record its status."""
        if self._in_flight:
            return SyncOutcome(success=False, status="in_progress")

        self._in_flight = True
        try:
            outcome = await self._sync(interactive)
        finally:
            self._in_flight = False

        await self.settings.set(LAST_SYNC_STATUS_KEY, outcome.status)
        await self._bus.emit(Event(
            type="sync.completed",
            data=outcome.to_dict(),
            source="sync"
        ))
        return outcome

    async def _sync(self, interactive: bool) -> SyncOutcome:
        credential = await self.credentials.acquire(interactive=interactive)
        if credential is None:
            logger.warning("Not authorized for remote sync; skipping upload")
            self.errors.record_error("sync", Unauthenticated("No credential available"))
            return SyncOutcome(success=False, status=failure_status("no_auth"))

        try:
            snippets = await self.repository.list_snippets()
            snapshot = RemoteSnapshot(snippets=snippets)
            handle = await self.remote.find_object(credential)
            new_handle = await self.remote.upload(credential, handle, snapshot)
        except Unauthenticated as e:
            self.credentials.invalidate()
            self.errors.record_error("sync", e)
            return SyncOutcome(success=False, status=failure_status("unauthorized"))
        except PastrError as e:
            self.errors.record_error("sync", e)
            return SyncOutcome(success=False, status=failure_status(e.status_tag))
        except Exception as e:
            logger.exception(f"Unexpected sync failure: {e}")
            self.errors.record_error("sync", e)
            return SyncOutcome(success=False, status=failure_status("error"))

        self.errors.record_success("sync")
        logger.info(f"Remote sync successful ({len(snippets)} snippets)")
        return SyncOutcome(
            success=True,
            status=success_status(),
            handle=new_handle,
            created=handle is None,
            snippet_count=len(snippets)
        )

    async def restore_from_remote(self, interactive: bool = False) -> Optional[int]:
        """
        Replace the local collection with the remote snapshot.

        Returns the number of snippets restored, or None when no remote
        object exists. Raises Unauthenticated without a credential and the
        remote client's errors otherwise.
        """
        credential = await self.credentials.acquire(interactive=interactive)
        if credential is None:
            raise Unauthenticated("Authorization required to download the remote snapshot")

        try:
            handle = await self.remote.find_object(credential)
            if handle is None:
                logger.info("No remote snapshot found")
                return None
            snapshot = await self.remote.download(credential, handle)
        except Unauthenticated:
            self.credentials.invalidate()
            raise

        if snapshot is None:
            return None
        await self.repository.replace_all(snapshot.snippets, reason="restore")
        logger.info(f"Restored {len(snapshot.snippets)} snippets from remote snapshot")
        return len(snapshot.snippets)
