"""Snippet, remote snapshot and sync status records."""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import ulid


CLIPBOARD_TAG_NAME = "clipboard"
CLIPBOARD_TAG_EMOJI = "📋"

FAILED_PREFIX = "failed:"


def now_ms() -> int:
    """Current time as integer milliseconds since the epoch."""
    return int(time.time() * 1000)


def new_snippet_id() -> str:
    return str(ulid.ULID())


@dataclass
class Tag:
    """A snippet tag."""
    name: str
    emoji: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "emoji": self.emoji}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Tag":
        if not isinstance(data, dict) or not isinstance(data.get("name"), str):
            raise ValueError(f"Invalid tag: {data!r}")
        return cls(name=data["name"], emoji=str(data.get("emoji") or ""))


@dataclass
class Snippet:
    """
    A single stored snippet.

    Serialized with the camelCase field names used by exports and the
    remote snapshot, timestamps in epoch milliseconds.
    """
    content: str
    id: str = ""
    tags: List[Tag] = field(default_factory=list)
    is_favorite: bool = False
    created_at: int = 0
    updated_at: int = 0

    def __post_init__(self):
        if not self.id:
            self.id = new_snippet_id()
        if not self.created_at:
            self.created_at = now_ms()
        if not self.updated_at:
            self.updated_at = self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "tags": [t.to_dict() for t in self.tags],
            "isFavorite": self.is_favorite,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snippet":
        """Build a snippet from its wire form, raising ValueError when malformed."""
        if not isinstance(data, dict):
            raise ValueError(f"Snippet must be an object, got {type(data).__name__}")
        if not isinstance(data.get("id"), str) or not data["id"]:
            raise ValueError("Snippet is missing an id")
        if not isinstance(data.get("content"), str):
            raise ValueError(f"Snippet {data['id']} has no text content")

        tags = data.get("tags") or []
        if not isinstance(tags, list):
            raise ValueError(f"Snippet {data['id']} has invalid tags")

        created_at = int(data.get("createdAt") or 0)
        return cls(
            id=data["id"],
            content=data["content"],
            tags=[Tag.from_dict(t) for t in tags],
            is_favorite=bool(data.get("isFavorite", False)),
            created_at=created_at,
            updated_at=int(data.get("updatedAt") or created_at),
        )

    @classmethod
    def from_clipboard(cls, text: str) -> "Snippet":
        """Snippet created by a confirmed clipboard capture."""
        return cls(
            content=text.strip(),
            tags=[Tag(name=CLIPBOARD_TAG_NAME, emoji=CLIPBOARD_TAG_EMOJI)],
        )


@dataclass
class RemoteSnapshot:
    """Contents of the single remote object."""
    snippets: List[Snippet]
    last_synced: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snippets": [s.to_dict() for s in self.snippets],
            "lastSynced": self.last_synced,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "RemoteSnapshot":
        if not isinstance(data, dict) or not isinstance(data.get("snippets"), list):
            raise ValueError("Snapshot is missing a 'snippets' list")
        return cls(
            snippets=[Snippet.from_dict(s) for s in data["snippets"]],
            last_synced=int(data.get("lastSynced") or 0),
        )


def success_status(when: Optional[datetime] = None) -> str:
    """Sync status value recorded after a successful upload."""
    when = when or datetime.now(timezone.utc)
    return when.isoformat()


def failure_status(reason: str) -> str:
    """Tagged failure marker, e.g. ``failed:no_auth``."""
    return f"{FAILED_PREFIX}{reason}"


def is_failure_status(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(FAILED_PREFIX)
