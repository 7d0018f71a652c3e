"""Client for the single remote snapshot object in Drive's appDataFolder."""

import json
from typing import Any, Dict, Optional

import httpx
import ulid
from loguru import logger

from .config import RemoteConfig
from .credentials import Credential
from .error_handling import (
    MalformedRemoteData,
    NetworkFailure,
    RemoteStoreError,
    Unauthenticated,
)
from .models import RemoteSnapshot


APP_DATA_FOLDER = "appDataFolder"
JSON_MIME = "application/json"


def build_multipart_body(metadata: Dict[str, Any], data: bytes, boundary: str) -> bytes:
    """Encode a ``multipart/related`` body: metadata part, then data part."""
    parts = [
        f"--{boundary}\r\n".encode(),
        f"Content-Type: {JSON_MIME}; charset=UTF-8\r\n\r\n".encode(),
        json.dumps(metadata).encode("utf-8"),
        f"\r\n--{boundary}\r\n".encode(),
        f"Content-Type: {JSON_MIME}\r\n\r\n".encode(),
        data,
        f"\r\n--{boundary}--\r\n".encode(),
    ]
    return b"".join(parts)


class RemoteStoreClient:
    """
    Locates, creates, updates and reads one named JSON object.

    There is no concurrency token: an upload with a handle overwrites that
    object, an upload without one creates a new object, and concurrent
    writers end up last-writer-wins.
    """

    def __init__(self, config: RemoteConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def files_url(self) -> str:
        return f"{self.config.api_base}/drive/v3/files"

    @property
    def upload_url(self) -> str:
        return f"{self.config.api_base}/upload/drive/v3/files"

    async def _request(
        self,
        method: str,
        url: str,
        credential: Credential,
        **kwargs
    ) -> httpx.Response:
        headers = dict(kwargs.pop("headers", {}) or {})
        headers["Authorization"] = f"Bearer {credential.token}"
        try:
            response = await self.client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise NetworkFailure(f"{method} {url} failed: {e}") from e

        if response.status_code in (401, 403):
            raise Unauthenticated(f"Remote store rejected credential ({response.status_code})")
        return response

    async def find_object(self, credential: Credential, name: Optional[str] = None) -> Optional[str]:
        """Return the handle of the object named ``name``, or None if absent."""
        name = name or self.config.file_name
        escaped = name.replace("\\", "\\\\").replace("'", "\\'")
        response = await self._request("GET", self.files_url, credential, params={
            "q": f"name='{escaped}' and '{APP_DATA_FOLDER}' in parents",
            "spaces": APP_DATA_FOLDER,
            "fields": "files(id)",
        })
        if response.status_code != 200:
            raise RemoteStoreError(
                f"File lookup failed: {response.status_code} - {response.text}",
                status_code=response.status_code
            )

        try:
            files = response.json().get("files") or []
        except ValueError as e:
            raise RemoteStoreError(f"File lookup returned invalid JSON: {e}") from e
        return files[0]["id"] if files else None

    async def upload(
        self,
        credential: Credential,
        handle: Optional[str],
        snapshot: RemoteSnapshot,
        name: Optional[str] = None
    ) -> str:
        """Overwrite ``handle`` or, when it is None, create the object. Returns the handle."""
        name = name or self.config.file_name
        metadata: Dict[str, Any] = {"name": name, "mimeType": JSON_MIME}
        if handle:
            method, url = "PATCH", f"{self.upload_url}/{handle}"
        else:
            method, url = "POST", self.upload_url
            metadata["parents"] = [APP_DATA_FOLDER]

        boundary = f"pastr_{ulid.ULID()}"
        payload = json.dumps(snapshot.to_dict(), ensure_ascii=False, indent=2).encode("utf-8")
        response = await self._request(
            method,
            url,
            credential,
            params={"uploadType": "multipart"},
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
            content=build_multipart_body(metadata, payload, boundary)
        )
        if response.status_code not in (200, 201):
            raise RemoteStoreError(
                f"Upload failed: {response.status_code} - {response.text}",
                status_code=response.status_code
            )

        try:
            new_handle = response.json().get("id") or handle
        except ValueError:
            new_handle = handle
        logger.debug(f"{'Updated' if handle else 'Created'} remote object {new_handle}")
        return new_handle

    async def download(self, credential: Credential, handle: str) -> Optional[RemoteSnapshot]:
        """Read and parse the object; None when it no longer exists."""
        response = await self._request(
            "GET", f"{self.files_url}/{handle}", credential, params={"alt": "media"}
        )
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise RemoteStoreError(
                f"Download failed: {response.status_code} - {response.text}",
                status_code=response.status_code
            )

        try:
            return RemoteSnapshot.from_dict(response.json())
        except (ValueError, TypeError, KeyError) as e:
            raise MalformedRemoteData(f"Remote snapshot is malformed: {e}") from e
