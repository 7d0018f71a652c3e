"""Shared fakes for the engine tests."""

import asyncio
import json
from typing import Dict, List, Optional, Sequence, Tuple

import httpx
import pytest

from pastr.daemon.bus import EventBus
from pastr.daemon.config import Config, RemoteConfig
from pastr.daemon.error_handling import HostPermissionDenied
from pastr.daemon.remote import RemoteStoreClient


def parse_multipart(request: httpx.Request) -> Tuple[dict, bytes]:
    """Split a multipart/related upload into (metadata, data)."""
    boundary = request.headers["Content-Type"].split("boundary=")[1]
    parts = request.content.split(f"--{boundary}".encode())

    def payload(part: bytes) -> bytes:
        return part.split(b"\r\n\r\n", 1)[1].rsplit(b"\r\n", 1)[0]

    return json.loads(payload(parts[1])), payload(parts[2])


class FakeDrive:
    """In-memory stand-in for the Drive v3 endpoints the client uses."""

    def __init__(self):
        self.files: Dict[str, dict] = {}
        self.requests: List[httpx.Request] = []
        self.fail_status: Optional[int] = None
        self.raise_network_error = False
        self._next_id = 1

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_network_error:
            raise httpx.ConnectError("connection refused", request=request)
        if self.fail_status:
            return httpx.Response(self.fail_status, json={"error": {"code": self.fail_status}})

        path = request.url.path
        if request.method == "GET" and path == "/drive/v3/files":
            name = request.url.params["q"].split("'")[1]
            matches = [{"id": fid} for fid, f in self.files.items() if f["name"] == name]
            return httpx.Response(200, json={"files": matches})

        if request.method == "POST" and path == "/upload/drive/v3/files":
            metadata, data = parse_multipart(request)
            fid = f"file-{self._next_id}"
            self._next_id += 1
            self.files[fid] = {"name": metadata["name"], "parents": metadata.get("parents"), "content": data}
            return httpx.Response(200, json={"id": fid})

        if request.method == "PATCH" and path.startswith("/upload/drive/v3/files/"):
            fid = path.rsplit("/", 1)[1]
            if fid not in self.files:
                return httpx.Response(404, json={"error": "not found"})
            _metadata, data = parse_multipart(request)
            self.files[fid]["content"] = data
            return httpx.Response(200, json={"id": fid})

        if request.method == "GET" and path.startswith("/drive/v3/files/"):
            fid = path.rsplit("/", 1)[1]
            if fid not in self.files:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, content=self.files[fid]["content"])

        return httpx.Response(404)

    def put(self, name: str, content: bytes) -> str:
        fid = f"file-{self._next_id}"
        self._next_id += 1
        self.files[fid] = {"name": name, "parents": ["appDataFolder"], "content": content}
        return fid

    def content_of(self, fid: str) -> dict:
        return json.loads(self.files[fid]["content"])

    def calls(self, method: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method]


class FakeTokenProvider:
    """Token provider with a configurable cached grant."""

    def __init__(self, token: Optional[str] = "token-1", interactive_token: Optional[str] = None,
                 revoke_ok: bool = True):
        self.token = token
        self.interactive_token = interactive_token
        self.revoke_ok = revoke_ok
        self.calls: List[bool] = []
        self.removed: List[str] = []
        self.revoked: List[str] = []

    async def get_token(self, interactive: bool) -> Optional[str]:
        self.calls.append(interactive)
        if self.token:
            return self.token
        return self.interactive_token if interactive else None

    async def remove_cached_token(self, token: str) -> None:
        self.removed.append(token)
        self.token = None

    async def revoke_token(self, token: str) -> bool:
        self.revoked.append(token)
        return self.revoke_ok


class FakeClipboard:
    def __init__(self, text: str = ""):
        self.text = text
        self.denied = False
        self.reads = 0

    async def read_text(self) -> str:
        self.reads += 1
        if self.denied:
            raise HostPermissionDenied("Clipboard read requires a user gesture")
        return self.text


class FakeNotificationCenter:
    def __init__(self):
        self.created: List[dict] = []
        self.cleared: List[str] = []
        self.denied = False

    async def create(self, title: str, message: str, buttons: Sequence[str] = ()) -> str:
        if self.denied:
            raise HostPermissionDenied("Notifications are blocked")
        notification_id = f"n{len(self.created) + 1}"
        self.created.append({"id": notification_id, "title": title, "message": message,
                             "buttons": list(buttons)})
        return notification_id

    async def clear(self, notification_id: str) -> None:
        self.cleared.append(notification_id)


class ManualClock:
    """Replacement for asyncio.sleep that only wakes when the test advances it."""

    def __init__(self):
        self.requested: List[float] = []
        self._waiters: List[asyncio.Future] = []

    async def sleep(self, seconds: float) -> None:
        self.requested.append(seconds)
        future = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        await future

    async def settle(self) -> None:
        for _ in range(10):
            await asyncio.sleep(0)

    async def advance(self) -> None:
        """Wake every sleeper once."""
        await self.settle()
        waiters, self._waiters = self._waiters, []
        for future in waiters:
            if not future.done():
                future.set_result(None)
        await self.settle()


@pytest.fixture
def drive():
    return FakeDrive()


@pytest.fixture
def remote_client(drive):
    client = httpx.AsyncClient(transport=drive.transport())
    return RemoteStoreClient(RemoteConfig(), client=client)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def test_config(tmp_path):
    return Config(data_dir=tmp_path / "data")
