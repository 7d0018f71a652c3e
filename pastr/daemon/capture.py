"""Clipboard watcher with a detect-then-confirm capture workflow."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from .error_handling import ErrorAggregator, HostPermissionDenied
from .host import ClipboardReader, NotificationCenter
from .models import Snippet
from .repository import SnippetRepository
from .timers import RecurringTimer


SAVE_BUTTON_INDEX = 0
CAPTURE_BUTTONS = ("Save", "Ignore")
CAPTURE_TITLE = "New Clipboard Content Detected!"
PREVIEW_CHARS = 80


class CaptureState(Enum):
    """Lifecycle of one capture attempt."""
    IDLE = "idle"
    DETECTED = "detected"
    AWAITING_USER_DECISION = "awaiting_user_decision"
    SAVED = "saved"
    DISCARDED = "discarded"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PendingCapture:
    """Clipboard text waiting for the user's answer to a notification."""
    notification_id: str
    text: str
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "preview": self.text[:PREVIEW_CHARS],
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class CaptureResolution:
    """What happened when a capture notification was answered."""
    state: CaptureState
    snippet: Optional[Snippet] = None
    # False when the notification had no live capture behind it
    had_pending: bool = True


class CaptureWatcher:
    """
    Samples the clipboard on a fixed period and asks before saving.

    Novel non-blank clipboard text raises a notification with two buttons
    and is parked in ``pending`` under the notification id. The user's
    answer arrives through ``resolve``: button 0 saves the text as a
    clipboard-tagged snippet at the front of the repository, anything else
    discards it. Answers never given expire after ``pending_ttl``; expired
    entries are swept on every tick and before every answer.

    Clipboard or notification failures are soft: logged, retried next tick.
    """

    def __init__(
        self,
        repository: SnippetRepository,
        clipboard: ClipboardReader,
        notifications: NotificationCenter,
        errors: Optional[ErrorAggregator] = None,
        poll_seconds: float = 15.0,
        pending_ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.repository = repository
        self.clipboard = clipboard
        self.notifications = notifications
        self.errors = errors or ErrorAggregator()
        self.poll_seconds = poll_seconds
        self.pending_ttl = pending_ttl
        self._clock = clock
        self._timer = RecurringTimer("capture", self.check_clipboard, sleep=sleep)
        self.last_seen = ""
        self.pending: Dict[str, PendingCapture] = {}

    @property
    def enabled(self) -> bool:
        return self._timer.active

    def set_enabled(self, enabled: bool) -> None:
        """Start or stop watching. Enabling checks the clipboard right away."""
        self._timer.disarm()
        if enabled:
            self._timer.arm(self.poll_seconds, run_immediately=True)
            logger.info(f"Clipboard monitor enabled (every {self.poll_seconds:.0f}s)")
        else:
            logger.info("Clipboard monitor disabled")

    async def drain(self) -> None:
        await self._timer.drain()

    async def check_clipboard(self) -> Optional[str]:
        """One watcher tick. Returns the notification id if the user was prompted."""
        await self.expire_pending()

        try:
            text = await self.clipboard.read_text()
        except HostPermissionDenied as e:
            self.errors.record_error("capture", e)
            return None

        if not text or not text.strip() or text == self.last_seen:
            return None

        # Remembered before prompting so later ticks do not re-prompt
        self.last_seen = text
        logger.info("New clipboard content detected, prompting user")

        try:
            notification_id = await self.notifications.create(
                CAPTURE_TITLE,
                f"Do you want to save this to Pastr?\n{text.strip()[:PREVIEW_CHARS]}",
                CAPTURE_BUTTONS
            )
        except HostPermissionDenied as e:
            self.errors.record_error("capture", e)
            return None

        self.pending[notification_id] = PendingCapture(
            notification_id=notification_id,
            text=text,
            created_at=self._clock()
        )
        self.errors.record_success("capture")
        return notification_id

    async def resolve(self, notification_id: str, button_index: Optional[int]) -> CaptureResolution:
        """Apply the user's answer; the pending entry and notification are always removed."""
        await self.expire_pending()
        pending = self.pending.pop(notification_id, None)
        try:
            if pending is None:
                logger.debug(f"No pending capture for notification {notification_id}")
                return CaptureResolution(state=CaptureState.DISCARDED, had_pending=False)

            if button_index != SAVE_BUTTON_INDEX:
                logger.info("Clipboard capture ignored")
                return CaptureResolution(state=CaptureState.DISCARDED)

            snippet = Snippet.from_clipboard(pending.text)
            await self.repository.insert_front(snippet)
            logger.info(f"Clipboard content saved as snippet {snippet.id}")
            return CaptureResolution(state=CaptureState.SAVED, snippet=snippet)
        finally:
            await self.notifications.clear(notification_id)

    async def expire_pending(self) -> List[str]:
        """Drop captures whose notification was never answered."""
        cutoff = self._clock() - self.pending_ttl
        expired = [nid for nid, p in self.pending.items() if p.created_at <= cutoff]
        for nid in expired:
            self.pending.pop(nid, None)
            await self.notifications.clear(nid)
        if expired:
            logger.info(f"Expired {len(expired)} unanswered clipboard captures")
        return expired

    def list_pending(self) -> List[PendingCapture]:
        return list(self.pending.values())
