"""Bearer credential acquisition, caching and revocation."""

import asyncio
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import httpx
from loguru import logger

from .bus import Event, EventBus, get_event_bus
from .config import OAuthConfig


DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"


@dataclass
class Credential:
    """An access token held in process memory only."""
    token: str
    interactivity_used: bool = False


class TokenProvider(Protocol):
    """Host identity service the credential manager delegates to."""

    async def get_token(self, interactive: bool) -> Optional[str]:
        ...

    async def remove_cached_token(self, token: str) -> None:
        ...

    async def revoke_token(self, token: str) -> bool:
        ...


class OAuthTokenProvider:
    """
    Google OAuth token provider.

    The host-level cache is a refresh-token grant stored in ``grant_path``.
    Silent acquisition only ever exchanges that grant; interactive
    acquisition runs the device authorization flow and blocks until the
    user approves, denies, or the device code expires. The verification URL
    and user code are published on the bus as ``auth.prompt``.
    """

    def __init__(
        self,
        config: OAuthConfig,
        grant_path: Path,
        bus: Optional[EventBus] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.config = config
        self.grant_path = grant_path
        self._bus = bus or get_event_bus()
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get_token(self, interactive: bool) -> Optional[str]:
        if not self.config.client_id:
            logger.warning("OAuth client_id is not configured; cannot obtain a token")
            return None

        grant = self._read_grant()
        if grant.get("refresh_token"):
            token = await self._refresh(grant["refresh_token"])
            if token:
                return token

        if not interactive:
            return None
        return await self._device_flow()

    async def remove_cached_token(self, token: str) -> None:
        if self.grant_path.exists():
            self.grant_path.unlink()
            logger.info("Removed cached OAuth grant")

    async def revoke_token(self, token: str) -> bool:
        try:
            response = await self.client.post(
                self.config.revoke_url,
                data={"token": token}
            )
        except httpx.HTTPError as e:
            logger.warning(f"Token revocation request failed: {e}")
            return False

        if response.status_code != 200:
            logger.warning(f"Token revocation rejected: {response.status_code} {response.text}")
            return False
        return True

    def _read_grant(self) -> Dict[str, Any]:
        if not self.grant_path.exists():
            return {}
        try:
            data = json.loads(self.grant_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable OAuth grant file {self.grant_path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write_grant(self, refresh_token: str) -> None:
        self.grant_path.parent.mkdir(parents=True, exist_ok=True)
        self.grant_path.write_text(json.dumps({"refresh_token": refresh_token}), encoding="utf-8")
        os.chmod(self.grant_path, 0o600)

    async def _refresh(self, refresh_token: str) -> Optional[str]:
        try:
            response = await self.client.post(self.config.token_url, data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
            })
        except httpx.HTTPError as e:
            logger.warning(f"Silent token refresh failed: {e}")
            return None

        if response.status_code == 200:
            return response.json().get("access_token")

        if response.status_code in (400, 401):
            # invalid_grant: the user revoked access elsewhere
            logger.info("Cached OAuth grant rejected, dropping it")
            await self.remove_cached_token("")
        else:
            logger.warning(f"Token refresh returned {response.status_code}")
        return None

    async def _device_flow(self) -> Optional[str]:
        try:
            response = await self.client.post(self.config.device_code_url, data={
                "client_id": self.config.client_id,
                "scope": " ".join(self.config.scopes),
            })
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Could not start device authorization: {e}")
            return None

        device = response.json()
        verification_url = device.get("verification_url") or device.get("verification_uri")
        interval = float(device.get("interval", 5))
        expires_in = float(device.get("expires_in", 1800))

        logger.info(f"Authorize Pastr at {verification_url} with code {device.get('user_code')}")
        await self._bus.emit(Event(
            type="auth.prompt",
            data={
                "verification_url": verification_url,
                "user_code": device.get("user_code"),
                "expires_in": expires_in
            },
            source="credentials"
        ))

        waited = 0.0
        while waited < expires_in:
            await self._sleep(interval)
            waited += interval
            try:
                poll = await self.client.post(self.config.token_url, data={
                    "grant_type": DEVICE_CODE_GRANT,
                    "device_code": device.get("device_code"),
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                })
            except httpx.HTTPError as e:
                logger.warning(f"Device authorization poll failed: {e}")
                continue

            try:
                body = poll.json()
            except ValueError:
                body = {}
            if poll.status_code == 200:
                if body.get("refresh_token"):
                    self._write_grant(body["refresh_token"])
                return body.get("access_token")

            error = body.get("error")
            if error == "authorization_pending":
                continue
            if error == "slow_down":
                interval += 5
                continue
            logger.warning(f"Device authorization ended: {error}")
            return None

        logger.warning("Device authorization timed out")
        return None


class CredentialManager:
    """Caches one credential in memory and hands it to the remote client."""

    def __init__(self, provider: TokenProvider):
        self.provider = provider
        self._credential: Optional[Credential] = None
        self._silent_lock = asyncio.Lock()
        self._interactive_lock = asyncio.Lock()
        self._prompting = False

    @property
    def current(self) -> Optional[Credential]:
        return self._credential

    @property
    def prompting(self) -> bool:
        """Whether an interactive authorization is waiting on the user."""
        return self._prompting

    async def acquire(self, interactive: bool = False) -> Optional[Credential]:
        """
        Return the cached credential or obtain a new one.

        With ``interactive=False`` this never prompts and returns None when
        the host has no cached grant, or right away while an interactive
        authorization is still waiting on the user. Interactive callers
        queue behind each other, never behind a silent one.
        """
        if self._credential is not None:
            return self._credential
        if interactive:
            return await self._acquire_interactive()

        if self._prompting:
            logger.debug("Authorization prompt open; silent acquisition returns nothing")
            return None
        async with self._silent_lock:
            if self._credential is not None:
                return self._credential
            token = await self.provider.get_token(False)
            if not token:
                logger.debug("No cached grant; silent acquisition returned nothing")
                return None
            return self._store(token, interactive=False)

    async def _acquire_interactive(self) -> Optional[Credential]:
        async with self._interactive_lock:
            if self._credential is not None:
                return self._credential
            self._prompting = True
            try:
                token = await self.provider.get_token(True)
            finally:
                self._prompting = False
            if not token:
                logger.warning("Interactive authorization did not produce a token")
                return None
            return self._store(token, interactive=True)

    def _store(self, token: str, interactive: bool) -> Credential:
        self._credential = Credential(token=token, interactivity_used=interactive)
        logger.info(f"Credential obtained ({'interactive' if interactive else 'silent'})")
        return self._credential

    def invalidate(self) -> None:
        """Forget the in-memory credential, e.g. after a 401/403."""
        if self._credential is not None:
            logger.info("Credential invalidated")
        self._credential = None

    async def revoke(self, credential: Optional[Credential] = None) -> bool:
        """
        Revoke locally and upstream. Upstream failure is logged and
        reported but does not stop the local revocation.
        """
        credential = credential or self._credential
        self._credential = None
        if credential is None:
            return True

        await self.provider.remove_cached_token(credential.token)
        ok = await self.provider.revoke_token(credential.token)
        if ok:
            logger.info("Credential revoked")
        else:
            logger.warning("Upstream revocation failed; credential dropped locally")
        return ok
