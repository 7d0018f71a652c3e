"""Tests for credential acquisition and revocation."""

import asyncio
import json

import httpx
import pytest

from pastr.daemon.bus import Event, EventBus
from pastr.daemon.config import OAuthConfig
from pastr.daemon.credentials import CredentialManager, OAuthTokenProvider
from pastr.tests.conftest import FakeTokenProvider


@pytest.mark.asyncio
async def test_silent_acquire_caches_credential():
    provider = FakeTokenProvider(token="abc")
    manager = CredentialManager(provider)

    first = await manager.acquire()
    second = await manager.acquire()

    assert first is second
    assert first.token == "abc"
    assert first.interactivity_used is False
    assert provider.calls == [False]


@pytest.mark.asyncio
async def test_silent_acquire_without_grant_returns_none():
    provider = FakeTokenProvider(token=None, interactive_token="fresh")
    manager = CredentialManager(provider)

    assert await manager.acquire(interactive=False) is None

    credential = await manager.acquire(interactive=True)
    assert credential.token == "fresh"
    assert credential.interactivity_used is True
    assert provider.calls == [False, True]


@pytest.mark.asyncio
async def test_invalidate_forces_reacquire():
    provider = FakeTokenProvider()
    manager = CredentialManager(provider)
    await manager.acquire()

    manager.invalidate()

    assert manager.current is None
    await manager.acquire()
    assert provider.calls == [False, False]


@pytest.mark.asyncio
@pytest.mark.parametrize("upstream_ok", [True, False])
async def test_revoke_always_drops_local_credential(upstream_ok):
    provider = FakeTokenProvider(token="abc", revoke_ok=upstream_ok)
    manager = CredentialManager(provider)
    await manager.acquire()

    assert await manager.revoke() is upstream_ok

    assert manager.current is None
    assert provider.removed == ["abc"]
    assert provider.revoked == ["abc"]


@pytest.mark.asyncio
async def test_revoke_without_credential_is_noop():
    provider = FakeTokenProvider(token=None)
    manager = CredentialManager(provider)

    assert await manager.revoke() is True
    assert provider.revoked == []


@pytest.mark.asyncio
async def test_silent_acquire_does_not_wait_for_open_prompt():
    """A device-code prompt left open never stalls silent callers."""
    approved = asyncio.Event()

    class PromptingProvider(FakeTokenProvider):
        async def get_token(self, interactive):
            self.calls.append(interactive)
            if interactive:
                await approved.wait()
                return "granted"
            return None

    provider = PromptingProvider(token=None)
    manager = CredentialManager(provider)
    login = asyncio.create_task(manager.acquire(interactive=True))
    await asyncio.sleep(0)

    assert manager.prompting
    assert await asyncio.wait_for(manager.acquire(interactive=False), 1.0) is None
    # The silent call did not even reach the provider
    assert provider.calls == [True]

    approved.set()
    credential = await login
    assert credential.token == "granted"
    assert manager.prompting is False
    assert await asyncio.wait_for(manager.acquire(interactive=False), 1.0) is credential


@pytest.mark.asyncio
async def test_concurrent_interactive_acquires_share_one_prompt():
    approved = asyncio.Event()

    class PromptingProvider(FakeTokenProvider):
        async def get_token(self, interactive):
            self.calls.append(interactive)
            await approved.wait()
            return "granted"

    provider = PromptingProvider(token=None)
    manager = CredentialManager(provider)
    first = asyncio.create_task(manager.acquire(interactive=True))
    second = asyncio.create_task(manager.acquire(interactive=True))
    await asyncio.sleep(0)

    approved.set()
    assert await first is await second
    assert provider.calls == [True]

def oauth_config() -> OAuthConfig:
    return OAuthConfig(client_id="client", client_secret="secret")


def make_provider(tmp_path, handler, bus=None, sleeps=None):
    async def sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    return OAuthTokenProvider(
        oauth_config(),
        tmp_path / "grant.json",
        bus=bus or EventBus(),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=sleep
    )


@pytest.mark.asyncio
async def test_silent_refresh_uses_stored_grant(tmp_path):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(dict(httpx.QueryParams(request.content.decode())))
        return httpx.Response(200, json={"access_token": "access-1"})

    provider = make_provider(tmp_path, handler)
    (tmp_path / "grant.json").write_text(json.dumps({"refresh_token": "refresh-1"}))

    assert await provider.get_token(interactive=False) == "access-1"
    assert seen[0]["grant_type"] == "refresh_token"
    assert seen[0]["refresh_token"] == "refresh-1"


@pytest.mark.asyncio
async def test_silent_without_grant_makes_no_requests(tmp_path):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(500)

    provider = make_provider(tmp_path, handler)

    assert await provider.get_token(interactive=False) is None
    assert requests == []


@pytest.mark.asyncio
async def test_rejected_grant_is_removed(tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant"})

    provider = make_provider(tmp_path, handler)
    grant = tmp_path / "grant.json"
    grant.write_text(json.dumps({"refresh_token": "revoked-elsewhere"}))

    assert await provider.get_token(interactive=False) is None
    assert not grant.exists()


@pytest.mark.asyncio
async def test_missing_client_id_returns_none(tmp_path):
    provider = OAuthTokenProvider(OAuthConfig(), tmp_path / "grant.json", bus=EventBus())

    assert await provider.get_token(interactive=True) is None


@pytest.mark.asyncio
async def test_device_flow_publishes_prompt_and_stores_grant(tmp_path):
    config = oauth_config()
    polls = []

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == config.device_code_url:
            return httpx.Response(200, json={
                "device_code": "dev-1",
                "user_code": "ABCD-EFGH",
                "verification_url": "https://www.google.com/device",
                "interval": 5,
                "expires_in": 1800,
            })
        polls.append(request)
        if len(polls) == 1:
            return httpx.Response(428, json={"error": "authorization_pending"})
        if len(polls) == 2:
            return httpx.Response(403, json={"error": "slow_down"})
        return httpx.Response(200, json={"access_token": "access-2", "refresh_token": "refresh-2"})

    bus = EventBus()
    await bus.start()
    prompts = []

    async def on_prompt(event: Event):
        prompts.append(event.data)

    bus.subscribe("auth.prompt", on_prompt)
    sleeps = []
    provider = make_provider(tmp_path, handler, bus=bus, sleeps=sleeps)

    assert await provider.get_token(interactive=True) == "access-2"
    await asyncio.sleep(0.1)

    assert prompts[0]["user_code"] == "ABCD-EFGH"
    assert prompts[0]["verification_url"] == "https://www.google.com/device"
    assert sleeps == [5, 5, 10]
    assert json.loads((tmp_path / "grant.json").read_text()) == {"refresh_token": "refresh-2"}
    await bus.stop()


@pytest.mark.asyncio
async def test_device_flow_denied(tmp_path):
    config = oauth_config()

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == config.device_code_url:
            return httpx.Response(200, json={"device_code": "d", "user_code": "u",
                                             "verification_url": "v", "interval": 1})
        return httpx.Response(403, json={"error": "access_denied"})

    provider = make_provider(tmp_path, handler)

    assert await provider.get_token(interactive=True) is None
    assert not (tmp_path / "grant.json").exists()


@pytest.mark.asyncio
@pytest.mark.parametrize("status, expected", [(200, True), (400, False)])
async def test_revoke_token_reports_upstream_result(tmp_path, status, expected):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(status)

    provider = make_provider(tmp_path, handler)

    assert await provider.revoke_token("abc") is expected
    assert seen == [oauth_config().revoke_url]
