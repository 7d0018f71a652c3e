"""Main daemon process for Pastr."""

import asyncio
import json
import signal
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles
import psutil
from aiohttp import web
from loguru import logger
from pydantic import ValidationError

from .. import __version__
from .bus import Event, EventBus, get_event_bus
from .capture import CaptureResolution, CaptureWatcher
from .config import Config
from .credentials import CredentialManager, OAuthTokenProvider, TokenProvider
from .error_handling import ErrorAggregator, InvalidImport
from .host import BusNotificationCenter, ClipboardReader, NotificationCenter, PyperclipClipboard
from .models import Snippet, Tag
from .remote import RemoteStoreClient
from .repository import SnippetRepository
from .settings import (
    CAPTURE_ENABLED_KEY,
    LAST_SYNC_STATUS_KEY,
    SCHEDULE_KEYS,
    SYNC_INTERVAL_KEY,
    ScheduleState,
    SettingsStore,
    coerce_enabled,
    coerce_interval,
)
from .storage import write_json
from .sync import SyncOutcome, SyncScheduler


INFO_NOTIFICATION_SECONDS = 10.0

# Wire names accepted by update_snippet
EDITABLE_FIELDS = ("content", "tags", "isFavorite")


class PastrDaemon:
    """
    Engine facade: wires storage, credentials, sync and capture together.

    Restores the persisted schedule on start, exposes the command surface
    used by the HTTP API and re-applies schedule state whenever the shared
    settings change, whoever wrote them.
    """

    def __init__(
        self,
        config: Config,
        bus: Optional[EventBus] = None,
        token_provider: Optional[TokenProvider] = None,
        remote: Optional[RemoteStoreClient] = None,
        clipboard: Optional[ClipboardReader] = None,
        notifications: Optional[NotificationCenter] = None
    ):
        self.config = config
        self.start_time = datetime.now(timezone.utc)
        self.event_bus = bus or get_event_bus()
        self.errors = ErrorAggregator()

        self.settings = SettingsStore(
            config.settings_path,
            bus=self.event_bus,
            defaults={
                SYNC_INTERVAL_KEY: config.sync.default_interval_minutes,
                CAPTURE_ENABLED_KEY: config.capture.default_enabled,
            }
        )
        self.repository = SnippetRepository(config.snippets_path, bus=self.event_bus)
        self.token_provider = token_provider or OAuthTokenProvider(
            config.oauth, config.grant_path, bus=self.event_bus
        )
        self.credentials = CredentialManager(self.token_provider)
        self.remote = remote or RemoteStoreClient(config.remote)
        self.notifications = notifications or BusNotificationCenter(bus=self.event_bus)
        self.clipboard = clipboard or PyperclipClipboard()

        self.sync = SyncScheduler(
            self.repository,
            self.credentials,
            self.remote,
            self.settings,
            errors=self.errors,
            bus=self.event_bus,
            seconds_per_minute=config.sync.seconds_per_minute
        )
        self.capture = CaptureWatcher(
            self.repository,
            self.clipboard,
            self.notifications,
            errors=self.errors,
            poll_seconds=config.capture.poll_seconds,
            pending_ttl=timedelta(hours=config.capture.pending_ttl_hours)
        )

        self.stats = {
            "selection_count": 0,
            "capture_saved_count": 0,
            "capture_ignored_count": 0,
        }
        self.auth_prompt: Optional[Dict[str, Any]] = None
        self._auth_task: Optional[asyncio.Task] = None
        self._background: set = set()
        self._shutdown = asyncio.Event()

        self.api_app = None
        self.api_runner = None
        self.api_site = None

    async def start(self, serve_api: bool = True) -> None:
        """Start all daemon services."""
        logger.info("Starting Pastr daemon...")

        await self.event_bus.start()
        await self.repository.load()
        await self.settings.load()

        self.event_bus.subscribe("settings.changed", self._on_settings_changed)
        self.event_bus.subscribe("auth.prompt", self._on_auth_prompt)

        await self.apply_schedule_state()

        if serve_api:
            await self._start_api()

        logger.info("Pastr daemon started successfully")

    async def stop(self) -> None:
        """Stop all daemon services."""
        logger.info("Stopping Pastr daemon...")

        self.sync.disarm()
        self.capture.set_enabled(False)
        if self._auth_task and not self._auth_task.done():
            self._auth_task.cancel()
        for task in list(self._background):
            task.cancel()

        if self.api_site:
            await self.api_site.stop()
            self.api_site = None
        if self.api_runner:
            await self.api_runner.cleanup()
            self.api_runner = None

        await self.remote.aclose()
        if isinstance(self.token_provider, OAuthTokenProvider):
            await self.token_provider.aclose()
        if self.event_bus.running:
            await self.event_bus.stop()

        self._shutdown.set()
        logger.info("Pastr daemon stopped")

    def request_shutdown(self) -> None:
        self._shutdown.set()

    async def wait_for_shutdown(self) -> None:
        await self._shutdown.wait()

    async def _start_api(self) -> None:
        """Start the HTTP API server."""
        from .api import create_api_app

        self.api_app = create_api_app(self)
        self.api_runner = web.AppRunner(self.api_app)
        await self.api_runner.setup()

        self.api_site = web.TCPSite(
            self.api_runner,
            self.config.api.host,
            self.config.api.port
        )
        await self.api_site.start()

        logger.info(f"API server started on http://{self.config.api.host}:{self.config.api.port}")

    # Schedule state

    async def apply_schedule_state(self) -> ScheduleState:
        """Drive both timers to match the persisted schedule; no-op when they already do."""
        state = self.settings.schedule_state()

        if state.sync_interval_minutes != self.sync.interval_minutes:
            self.sync.set_interval(state.sync_interval_minutes)
        if state.capture_enabled != self.capture.enabled:
            self.capture.set_enabled(state.capture_enabled)
        if not state.capture_enabled:
            await self.capture.expire_pending()
        return state

    async def _on_settings_changed(self, event: Event) -> None:
        if event.data.get("key") in SCHEDULE_KEYS:
            logger.debug(f"Schedule setting {event.data['key']} changed by {event.data.get('origin')}")
            await self.apply_schedule_state()

    async def _on_auth_prompt(self, event: Event) -> None:
        self.auth_prompt = dict(event.data)

    # Command surface

    async def set_sync_interval(self, minutes: Any) -> Dict[str, Any]:
        minutes = coerce_interval(minutes)
        await self.settings.set(SYNC_INTERVAL_KEY, minutes, origin="command")
        await self.apply_schedule_state()
        return {"success": True, "message": f"Sync interval set to {minutes} mins."}

    async def set_capture_enabled(self, enabled: bool) -> Dict[str, Any]:
        enabled = coerce_enabled(enabled)
        await self.settings.set(CAPTURE_ENABLED_KEY, enabled, origin="command")
        await self.apply_schedule_state()
        return {
            "success": True,
            "message": f"Clipboard monitor {'enabled' if enabled else 'disabled'}."
        }

    async def update_settings(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """External settings write; the change feed re-applies the schedule."""
        if SYNC_INTERVAL_KEY in values:
            values[SYNC_INTERVAL_KEY] = coerce_interval(values[SYNC_INTERVAL_KEY])
        if CAPTURE_ENABLED_KEY in values:
            values[CAPTURE_ENABLED_KEY] = coerce_enabled(values[CAPTURE_ENABLED_KEY])
        return await self.settings.update(values, origin="external")

    async def add_selection(self, text: str) -> Snippet:
        """
        Save selected text as a snippet right away.

        The explicit user action is the consent, so this skips the
        two-phase clipboard workflow.
        """
        content = (text or "").strip()
        if not content:
            raise ValueError("Selection is empty")

        snippet = Snippet(content=content)
        await self.repository.insert_front(snippet)
        self.stats["selection_count"] += 1
        logger.info(f"Snippet added from selection: {content[:50]}")

        await self._notify_info("Pastr Snippet Added!", f'"{content[:50]}..." saved.')
        return snippet

    async def update_snippet(self, snippet_id: str, changes: Dict[str, Any]) -> Optional[Snippet]:
        """
        Manual edit from a UI, using wire field names.

        Accepts ``content`` (non-empty text), ``tags`` (list of
        ``{name, emoji}``) and ``isFavorite`` (bool). Raises ValueError on
        anything else; returns None when the snippet does not exist.
        """
        if not changes:
            raise ValueError("No fields to update")
        unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(unknown)}")

        fields: Dict[str, Any] = {}
        if "content" in changes:
            content = changes["content"]
            if not isinstance(content, str) or not content.strip():
                raise ValueError("content must be a non-empty string")
            fields["content"] = content.strip()
        if "tags" in changes:
            if not isinstance(changes["tags"], list):
                raise ValueError("tags must be a list")
            fields["tags"] = [Tag.from_dict(t) for t in changes["tags"]]
        if "isFavorite" in changes:
            if not isinstance(changes["isFavorite"], bool):
                raise ValueError("isFavorite must be a boolean")
            fields["is_favorite"] = changes["isFavorite"]

        snippet = await self.repository.update(snippet_id, **fields)
        if snippet is not None:
            logger.info(f"Snippet {snippet_id} updated ({', '.join(sorted(changes))})")
        return snippet

    async def toggle_favorite(self, snippet_id: str) -> Optional[Snippet]:
        return await self.repository.toggle_favorite(snippet_id)

    async def delete_snippet(self, snippet_id: str) -> bool:
        deleted = await self.repository.delete(snippet_id)
        if deleted:
            logger.info(f"Snippet {snippet_id} deleted")
        return deleted

    async def resolve_notification(self, notification_id: str, button_index: Optional[int]) -> CaptureResolution:
        resolution = await self.capture.resolve(notification_id, button_index)
        if resolution.snippet is not None:
            self.stats["capture_saved_count"] += 1
        elif resolution.had_pending:
            self.stats["capture_ignored_count"] += 1
        return resolution

    async def sync_now(self) -> SyncOutcome:
        """Manual sync with silent acquisition; prompting goes through start_authorization."""
        return await self.sync.sync_once()

    async def restore_from_remote(self) -> Optional[int]:
        return await self.sync.restore_from_remote()

    def start_authorization(self) -> bool:
        """Kick off interactive authorization in the background. False if one is running."""
        if self._auth_task is not None and not self._auth_task.done():
            return False
        self.auth_prompt = None
        self._auth_task = asyncio.create_task(self.authorize())
        return True

    async def authorize(self) -> Dict[str, Any]:
        """Interactive acquisition, then an immediate sync."""
        credential = await self.credentials.acquire(interactive=True)
        self.auth_prompt = None
        if credential is None:
            return {"success": False, "message": "Authorization was not granted."}

        outcome = await self.sync.sync_once()
        return {"success": True, "message": "Authorized.", "sync": outcome.to_dict()}

    async def deauthorize(self) -> Dict[str, Any]:
        """Revoke the credential and disable auto-sync."""
        credential = self.credentials.current or await self.credentials.acquire(interactive=False)
        revoked = await self.credentials.revoke(credential)
        await self.set_sync_interval(0)
        await self.settings.set(LAST_SYNC_STATUS_KEY, "disabled")
        return {
            "success": True,
            "message": "Remote sync disabled.",
            "upstream_revoked": revoked
        }

    # Import / export

    async def export_snippets(self, path: Path) -> int:
        snippets = await self.repository.list_snippets()
        await write_json(path, {
            "pastrVersion": __version__,
            "exportedAt": datetime.now(timezone.utc).isoformat(),
            "snippets": [s.to_dict() for s in snippets],
        })
        logger.info(f"Exported {len(snippets)} snippets to {path}")
        return len(snippets)

    async def import_snippets(self, path: Path) -> int:
        """Replace the collection with a backup file's snippets."""
        try:
            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                data = json.loads(await f.read())
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidImport(f"Cannot read backup {path}: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("snippets"), list):
            raise InvalidImport("Invalid Pastr backup format. Missing 'snippets' array.")
        try:
            snippets = [Snippet.from_dict(item) for item in data["snippets"]]
        except (ValueError, TypeError) as e:
            raise InvalidImport(f"Invalid snippet in backup: {e}") from e

        await self.repository.replace_all(snippets, reason="import")
        return len(snippets)

    # Status

    async def _notify_info(self, title: str, message: str) -> None:
        notification_id = await self.notifications.create(title, message)

        async def dismiss_later():
            await asyncio.sleep(INFO_NOTIFICATION_SECONDS)
            await self.notifications.clear(notification_id)

        task = asyncio.create_task(dismiss_later())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def get_status(self) -> dict:
        """Get daemon status and statistics."""
        process = psutil.Process()
        uptime = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        state = self.settings.schedule_state()
        await self.capture.expire_pending()

        return {
            "status": "running",
            "version": __version__,
            "uptime": f"{uptime:.0f}s",
            "schedule": {
                "sync_interval_minutes": state.sync_interval_minutes,
                "capture_enabled": state.capture_enabled,
            },
            "sync": {
                "state": self.sync.state.value,
                "last_status": self.settings.get(LAST_SYNC_STATUS_KEY),
                "skipped_ticks": self.sync.skipped_ticks,
                "authorized": self.credentials.current is not None,
            },
            "capture": {
                "enabled": self.capture.enabled,
                "pending": len(self.capture.pending),
            },
            "stats": {
                **self.stats,
                "snippet_count": await self.repository.count(),
                "memory_mb": process.memory_info().rss / 1024 / 1024,
            },
            "errors": self.errors.get_error_summary(),
            "events": self.event_bus.get_stats(),
        }


def setup_logging(config: Config) -> None:
    """Colored stderr sink plus a rotating file sink."""
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level="INFO"
    )

    config.log_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        config.log_dir / "daemon.log",
        rotation="1 day",
        retention="7 days",
        level="DEBUG"
    )


async def main(config_path: Optional[str] = None):
    """Main entry point for the daemon."""
    try:
        config = Config.load(Path(config_path) if config_path else None)
    except (OSError, ValidationError) as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    setup_logging(config)
    daemon = PastrDaemon(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, daemon.request_shutdown)

    try:
        await daemon.start()
        await daemon.wait_for_shutdown()
    except Exception as e:
        logger.exception(f"Daemon error: {e}")
    finally:
        await daemon.stop()


if __name__ == "__main__":
    asyncio.run(main())
