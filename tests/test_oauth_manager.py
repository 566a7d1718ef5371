from __future__ import annotations

import asyncio
import base64
import hashlib
import json
from urllib.parse import parse_qs, urlparse

import pytest
from unittest.mock import AsyncMock

from grove.engine.errors import AuthError, OAuthFlowExpiredError, ValidationError
from grove.engine.oauth import (
    CredentialStore,
    OAuthCredentials,
    OAuthManager,
    OAuthSettings,
    PendingFlowStore,
    TokenCipher,
    code_challenge,
    generate_verifier,
)

NOW = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def credentials(tmp_path) -> CredentialStore:
    return CredentialStore(tmp_path / "oauth" / "oauth-credentials.json", TokenCipher("test-host"))


@pytest.fixture
def manager(tmp_path, clock, credentials) -> OAuthManager:
    flows = PendingFlowStore(tmp_path / "flows.json", ttl_seconds=600, clock=clock)
    return OAuthManager(credentials, flows, OAuthSettings(), clock=clock)


def _stored(clock: FakeClock, expires_in: int, refresh_token: str = "refresh-1") -> OAuthCredentials:
    return OAuthCredentials(
        access_token="access-1",
        refresh_token=refresh_token,
        expires_at=int((clock() + expires_in) * 1000),
    )


# ── PKCE ──────────────────────────────────────────────────────


def test_code_challenge_is_s256_of_verifier() -> None:
    verifier = generate_verifier()
    expected = base64.urlsafe_b64encode(
        hashlib.sha256(verifier.encode()).digest()
    ).decode().rstrip("=")
    assert code_challenge(verifier) == expected
    assert 43 <= len(verifier) <= 128


@pytest.mark.asyncio
async def test_start_login_builds_authorize_url(manager) -> None:
    login = await manager.start_login()
    url = urlparse(login.auth_url)
    params = {key: values[0] for key, values in parse_qs(url.query).items()}

    assert f"{url.scheme}://{url.netloc}{url.path}" == OAuthSettings().authorize_url
    assert params["response_type"] == "code"
    assert params["code_challenge_method"] == "S256"
    assert params["code_challenge"] == code_challenge(login.verifier)
    assert params["state"] == login.state
    assert params["scope"] == "user:profile user:inference"
    assert len(login.state) == 64
    assert await manager.flows.has_active()


# ── Completion ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_unknown_state_never_reaches_token_endpoint(manager) -> None:
    manager._post_token = AsyncMock()
    with pytest.raises(AuthError):
        await manager.complete_login("code", "verifier", "unknown-state")
    manager._post_token.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_fields_are_validation_errors(manager) -> None:
    with pytest.raises(ValidationError):
        await manager.complete_login("", "verifier", "state")


@pytest.mark.asyncio
async def test_complete_login_stores_encrypted_tokens(manager, credentials, clock) -> None:
    login = await manager.start_login()
    manager._post_token = AsyncMock(return_value={
        "access_token": "secret-access", "refresh_token": "secret-refresh", "expires_in": 3600,
    })

    grant = await manager.complete_login("the-code", login.verifier, login.state)

    assert grant.to_dict() == {"accessToken": "secret-access", "expiresIn": 3600}
    payload = manager._post_token.await_args.args[0]
    assert payload["grant_type"] == "authorization_code"
    assert payload["code"] == "the-code"
    assert payload["code_verifier"] == login.verifier
    assert "state" not in payload

    raw = credentials.path.read_text()
    assert "secret-access" not in raw
    assert "secret-refresh" not in raw
    assert json.loads(raw)["expiresAt"] == int((NOW + 3600) * 1000)
    assert credentials.path.stat().st_mode & 0o777 == 0o600

    status = await manager.get_status()
    assert status["isLoggedIn"] is True
    assert status["expiresIn"] == 3600
    assert status["mode"] == "console"
    assert status["expiresAt"].endswith("Z")


@pytest.mark.asyncio
async def test_flow_is_single_use(manager) -> None:
    login = await manager.start_login()
    manager._post_token = AsyncMock(return_value={"access_token": "a", "expires_in": 3600})
    await manager.complete_login("code", login.verifier, login.state)

    with pytest.raises(AuthError):
        await manager.complete_login("code", login.verifier, login.state)
    assert manager._post_token.await_count == 1


@pytest.mark.asyncio
async def test_verifier_mismatch_is_rejected(manager) -> None:
    login = await manager.start_login()
    manager._post_token = AsyncMock()
    with pytest.raises(AuthError):
        await manager.complete_login("code", "not-the-verifier", login.state)
    manager._post_token.assert_not_awaited()


@pytest.mark.asyncio
async def test_expired_flow_is_rejected(manager, clock) -> None:
    login = await manager.start_login()
    manager._post_token = AsyncMock()
    clock.advance(601)
    with pytest.raises(OAuthFlowExpiredError):
        await manager.complete_login("code", login.verifier, login.state)
    manager._post_token.assert_not_awaited()


@pytest.mark.asyncio
async def test_code_with_state_suffix(manager) -> None:
    login = await manager.start_login()
    manager._post_token = AsyncMock(return_value={"access_token": "a", "expires_in": 3600})

    await manager.complete_login(f"the-code#{login.state}", login.verifier, login.state)
    payload = manager._post_token.await_args.args[0]
    assert payload["code"] == "the-code"
    assert payload["state"] == login.state


@pytest.mark.asyncio
async def test_code_with_foreign_state_suffix(manager) -> None:
    login = await manager.start_login()
    manager._post_token = AsyncMock()
    with pytest.raises(AuthError):
        await manager.complete_login("the-code#other-state", login.verifier, login.state)
    manager._post_token.assert_not_awaited()


@pytest.mark.asyncio
async def test_token_endpoint_failure_leaves_no_credentials(manager, credentials) -> None:
    login = await manager.start_login()
    manager._post_token = AsyncMock(side_effect=AuthError("Token exchange failed (400)"))
    with pytest.raises(AuthError):
        await manager.complete_login("code", login.verifier, login.state)
    assert not credentials.path.exists()


@pytest.mark.asyncio
async def test_handle_callback_uses_stored_verifier(manager) -> None:
    login = await manager.start_login()
    manager._post_token = AsyncMock(return_value={"access_token": "a", "expires_in": 3600})

    grant = await manager.handle_callback("cb-code", login.state)
    assert grant.access_token == "a"
    assert manager._post_token.await_args.args[0]["code_verifier"] == login.verifier

    with pytest.raises(AuthError):
        await manager.handle_callback("cb-code", login.state)


# ── Access tokens ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_status_reports_pending_login(manager, clock) -> None:
    assert (await manager.get_status())["loginPending"] is False
    await manager.start_login()
    assert (await manager.get_status())["loginPending"] is True
    clock.advance(601)
    assert (await manager.get_status())["loginPending"] is False


@pytest.mark.asyncio
async def test_not_logged_in(manager) -> None:
    with pytest.raises(AuthError):
        await manager.get_access_token()
    assert (await manager.get_status())["isLoggedIn"] is False


@pytest.mark.asyncio
async def test_fresh_token_is_returned_without_refresh(manager, credentials, clock) -> None:
    await credentials.write(_stored(clock, expires_in=3600))
    manager._post_token = AsyncMock()

    token = await manager.get_access_token()
    assert token.to_dict() == {
        "accessToken": "access-1", "apiKey": None, "expiresIn": 3600, "mode": "console",
    }
    manager._post_token.assert_not_awaited()


@pytest.mark.asyncio
async def test_token_with_exactly_threshold_left_is_refreshed(manager, credentials, clock) -> None:
    await credentials.write(_stored(clock, expires_in=300))
    manager._post_token = AsyncMock(return_value={"access_token": "access-2", "expires_in": 3600})

    token = await manager.get_access_token()
    assert token.access_token == "access-2"
    manager._post_token.assert_awaited_once()


@pytest.mark.asyncio
async def test_token_just_over_threshold_is_kept(manager, credentials, clock) -> None:
    await credentials.write(_stored(clock, expires_in=301))
    manager._post_token = AsyncMock()

    token = await manager.get_access_token()
    assert token.access_token == "access-1"
    manager._post_token.assert_not_awaited()


@pytest.mark.asyncio
async def test_near_expiry_refreshes_and_keeps_refresh_token(manager, credentials, clock) -> None:
    await credentials.write(_stored(clock, expires_in=60))
    manager._post_token = AsyncMock(return_value={"access_token": "access-2", "expires_in": 7200})

    token = await manager.get_access_token()
    assert token.access_token == "access-2"
    assert token.expires_in == 7200
    payload = manager._post_token.await_args.args[0]
    assert payload == {
        "grant_type": "refresh_token",
        "refresh_token": "refresh-1",
        "client_id": OAuthSettings().client_id,
    }

    stored = await credentials.read()
    assert stored.access_token == "access-2"
    assert stored.refresh_token == "refresh-1"


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh(manager, credentials, clock) -> None:
    await credentials.write(_stored(clock, expires_in=10))

    async def slow_token(payload):
        await asyncio.sleep(0.05)
        return {"access_token": "access-2", "refresh_token": "refresh-2", "expires_in": 3600}

    manager._post_token = AsyncMock(side_effect=slow_token)
    tokens = await asyncio.gather(*(manager.get_access_token() for _ in range(5)))

    assert {t.access_token for t in tokens} == {"access-2"}
    assert manager._post_token.await_count == 1


@pytest.mark.asyncio
async def test_refresh_failure_surfaces_auth_error(manager, credentials, clock) -> None:
    await credentials.write(_stored(clock, expires_in=10))
    manager._post_token = AsyncMock(side_effect=AuthError("Token exchange failed (401)"))
    with pytest.raises(AuthError):
        await manager.get_access_token()
    assert (await credentials.read()).access_token == "access-1"


@pytest.mark.asyncio
async def test_refresh_without_refresh_token(manager, credentials, clock) -> None:
    await credentials.write(_stored(clock, expires_in=10, refresh_token=""))
    with pytest.raises(AuthError):
        await manager.get_access_token()


@pytest.mark.asyncio
async def test_refreshed_token_still_too_short_is_rejected(manager, credentials, clock) -> None:
    await credentials.write(_stored(clock, expires_in=10))
    manager._post_token = AsyncMock(return_value={"access_token": "access-2", "expires_in": 60})
    with pytest.raises(AuthError):
        await manager.get_access_token()


# ── Logout and storage ────────────────────────────────────────


@pytest.mark.asyncio
async def test_logout_is_idempotent(manager, credentials, clock) -> None:
    await credentials.write(_stored(clock, expires_in=3600))
    await manager.logout()
    await manager.logout()
    assert not credentials.path.exists()
    assert (await manager.get_status())["isLoggedIn"] is False


@pytest.mark.asyncio
async def test_credentials_from_another_machine_read_as_logged_out(tmp_path, clock) -> None:
    path = tmp_path / "oauth-credentials.json"
    await CredentialStore(path, TokenCipher("host-a")).write(_stored(clock, expires_in=3600))

    assert await CredentialStore(path, TokenCipher("host-b")).read() is None
    assert (await CredentialStore(path, TokenCipher("host-a")).read()).access_token == "access-1"


@pytest.mark.asyncio
async def test_pending_flows_survive_restart_and_expire(tmp_path, clock) -> None:
    path = tmp_path / "flows.json"
    first = PendingFlowStore(path, ttl_seconds=600, clock=clock)
    await first.add("state-old", "verifier-old")
    clock.advance(500)
    await first.add("state-new", "verifier-new")

    restarted = PendingFlowStore(path, ttl_seconds=600, clock=clock)
    assert (await restarted.get("state-old")).verifier == "verifier-old"

    clock.advance(200)
    pruned = PendingFlowStore(path, ttl_seconds=600, clock=clock)
    assert await pruned.get("state-old") is None
    assert (await pruned.get("state-new")).verifier == "verifier-new"
    assert set(json.loads(path.read_text())) == {"state-new"}
