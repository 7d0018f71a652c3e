"""Durable, ordered snippet repository."""

import asyncio
from dataclasses import replace
from pathlib import Path
from typing import Callable, List, Optional

from loguru import logger

from .bus import Event, EventBus, get_event_bus
from .models import Snippet, now_ms
from .storage import read_json, write_json


class SnippetRepository:
    """
    Ordered snippet collection persisted as ``{"snippets": [...]}``.

    Index 0 is the front of the display order. Every mutation runs under a
    single lock as one read-modify-write, then persists the whole sequence
    and publishes ``snippets.changed``.
    """

    def __init__(self, path: Path, bus: Optional[EventBus] = None):
        self.path = path
        self._bus = bus or get_event_bus()
        self._snippets: List[Snippet] = []
        self._lock = asyncio.Lock()

    async def load(self) -> None:
        """Load snippets from disk, skipping malformed entries."""
        data = await read_json(self.path, default={"snippets": []})
        raw = data.get("snippets") if isinstance(data.get("snippets"), list) else []

        snippets = []
        for item in raw:
            try:
                snippets.append(Snippet.from_dict(item))
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed snippet: {e}")

        async with self._lock:
            self._snippets = snippets
        logger.info(f"Loaded {len(snippets)} snippets from {self.path}")

    async def list_snippets(self) -> List[Snippet]:
        """Snapshot copy of the current sequence."""
        async with self._lock:
            return list(self._snippets)

    async def get(self, snippet_id: str) -> Optional[Snippet]:
        async with self._lock:
            for snippet in self._snippets:
                if snippet.id == snippet_id:
                    return snippet
        return None

    async def count(self) -> int:
        async with self._lock:
            return len(self._snippets)

    async def mutate(
        self,
        fn: Callable[[List[Snippet]], List[Snippet]],
        reason: str = "mutate"
    ) -> List[Snippet]:
        """Apply ``fn`` to the current sequence atomically and persist the result."""
        async with self._lock:
            updated = list(fn(list(self._snippets)))
            await write_json(self.path, {"snippets": [s.to_dict() for s in updated]})
            self._snippets = updated

        await self._bus.emit(Event(
            type="snippets.changed",
            data={"reason": reason, "count": len(updated)},
            source="repository"
        ))
        return list(updated)

    async def insert_front(self, snippet: Snippet) -> Snippet:
        await self.mutate(lambda items: [snippet] + items, reason="insert")
        logger.debug(f"Inserted snippet {snippet.id}")
        return snippet

    async def update(self, snippet_id: str, **changes) -> Optional[Snippet]:
        """Update fields of one snippet in place; bumps ``updated_at``."""
        for name in ("id", "created_at"):
            if name in changes:
                raise ValueError(f"Field {name} is immutable")
        found: List[Snippet] = []

        def apply(items: List[Snippet]) -> List[Snippet]:
            out = []
            for snippet in items:
                if snippet.id == snippet_id:
                    snippet = replace(snippet, **{**changes, "updated_at": now_ms()})
                    found.append(snippet)
                out.append(snippet)
            return out

        await self.mutate(apply, reason="update")
        return found[0] if found else None

    async def delete(self, snippet_id: str) -> bool:
        removed: List[Snippet] = []

        def apply(items: List[Snippet]) -> List[Snippet]:
            kept = [s for s in items if s.id != snippet_id]
            removed.extend(s for s in items if s.id == snippet_id)
            return kept

        await self.mutate(apply, reason="delete")
        return bool(removed)

    async def replace_all(self, snippets: List[Snippet], reason: str = "replace") -> None:
        await self.mutate(lambda _items: list(snippets), reason=reason)
        logger.info(f"Replaced repository contents with {len(snippets)} snippets ({reason})")

    async def toggle_favorite(self, snippet_id: str) -> Optional[Snippet]:
        """Flip ``is_favorite`` under the lock, so concurrent toggles never cancel out."""
        found: List[Snippet] = []

        def apply(items: List[Snippet]) -> List[Snippet]:
            out = []
            for snippet in items:
                if snippet.id == snippet_id:
                    snippet = replace(snippet, is_favorite=not snippet.is_favorite, updated_at=now_ms())
                    found.append(snippet)
                out.append(snippet)
            return out

        await self.mutate(apply, reason="favorite")
        return found[0] if found else None
