"""OAuth (PKCE) login and token lifecycle for the console account.

Flow::

    start_login()      -> authUrl + verifier + state   (flow recorded)
    complete_login()   -> code exchanged for tokens     (flow consumed)
    get_access_token() -> refreshed when <= threshold   (single refresh)
    logout()           -> credential file removed

Tokens are stored on disk with each secret field encrypted by a Fernet key
derived from the host name. That keeps them out of casual view of anyone
reading the file; it is not protection against a local attacker who can
run code as the same user.
"""
from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import logging
import os
import secrets
import socket
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable
from urllib.parse import urlencode

import aiohttp
from cryptography.fernet import Fernet, InvalidToken

from grove.shared.services.durable_write import atomic_write_json, read_json

from .errors import AuthError, OAuthFlowExpiredError, ValidationError

logger = logging.getLogger(__name__)

CREDENTIALS_FILENAME = "oauth-credentials.json"
PENDING_FLOWS_FILENAME = "grove-oauth-flows.json"
DEFAULT_MODE = "console"
_KEY_SALT = "grove-oauth"


@dataclass
class OAuthSettings:
    """Endpoints and client identity for the authorization server."""
    client_id: str = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
    authorize_url: str = "https://console.anthropic.com/oauth/authorize"
    token_url: str = "https://console.anthropic.com/v1/oauth/token"
    redirect_uri: str = "https://console.anthropic.com/oauth/code/callback"
    scopes: str = "user:profile user:inference"
    request_timeout_seconds: float = 30.0


def default_pending_flows_path() -> Path:
    return Path(tempfile.gettempdir()) / PENDING_FLOWS_FILENAME


# ── PKCE ──────────────────────────────────────────────────────


def generate_verifier() -> str:
    """86 url-safe characters (RFC 7636 allows 43-128)."""
    return secrets.token_urlsafe(64)


def code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_state() -> str:
    return secrets.token_hex(32)


# ── Records ───────────────────────────────────────────────────


@dataclass(frozen=True)
class PendingOAuthFlow:
    state: str
    verifier: str
    created_at: int  # epoch milliseconds

    def is_expired(self, now_ms: int, ttl_seconds: float) -> bool:
        return now_ms - self.created_at > ttl_seconds * 1000

    def to_dict(self) -> dict[str, Any]:
        return {"state": self.state, "verifier": self.verifier, "createdAt": self.created_at}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingOAuthFlow:
        return cls(
            state=str(data["state"]),
            verifier=str(data["verifier"]),
            created_at=int(data["createdAt"]),
        )


@dataclass
class OAuthCredentials:
    access_token: str
    refresh_token: str
    expires_at: int  # epoch milliseconds
    api_key: str | None = None
    mode: str = DEFAULT_MODE

    def expires_in(self, now_ms: int) -> int:
        """Whole seconds until expiry; negative once expired."""
        return (self.expires_at - now_ms) // 1000


@dataclass(frozen=True)
class LoginStart:
    auth_url: str
    verifier: str
    state: str

    def to_dict(self) -> dict[str, Any]:
        return {"authUrl": self.auth_url, "verifier": self.verifier, "state": self.state}


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_in: int

    def to_dict(self) -> dict[str, Any]:
        return {"accessToken": self.access_token, "expiresIn": self.expires_in}


@dataclass(frozen=True)
class AccessToken:
    access_token: str
    api_key: str | None
    expires_in: int
    mode: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "apiKey": self.api_key,
            "expiresIn": self.expires_in,
            "mode": self.mode,
        }


# ── Storage ───────────────────────────────────────────────────


class TokenCipher:
    """Field-level Fernet encryption keyed from the machine identity."""

    def __init__(self, machine_id: str | None = None, salt: str = _KEY_SALT) -> None:
        identity = machine_id or os.environ.get("HOSTNAME") or socket.gethostname() or "default-machine"
        raw_key = hashlib.sha256((identity + salt).encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(raw_key))

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Raises cryptography's InvalidToken on tampering or a foreign key."""
        return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")


class CredentialStore:
    """Encrypted credential document at ``<oauth_dir>/oauth-credentials.json``."""

    def __init__(self, path: str | Path, cipher: TokenCipher) -> None:
        self._path = Path(path).expanduser()
        self._cipher = cipher

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> OAuthCredentials | None:
        try:
            data = read_json(self._path)
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable credential file %s: %s", self._path, exc)
            return None
        if data is None:
            return None
        try:
            api_key = data.get("apiKey")
            return OAuthCredentials(
                access_token=self._cipher.decrypt(data["accessToken"]),
                refresh_token=(
                    self._cipher.decrypt(data["refreshToken"]) if data.get("refreshToken") else ""
                ),
                api_key=self._cipher.decrypt(api_key) if api_key else None,
                expires_at=int(data["expiresAt"]),
                mode=str(data.get("mode") or DEFAULT_MODE),
            )
        except InvalidToken:
            logger.warning("Credential file %s could not be decrypted; treating as logged out", self._path)
            return None
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning("Malformed credential file %s: %s", self._path, exc)
            return None

    def _write(self, credentials: OAuthCredentials) -> None:
        document = {
            "accessToken": self._cipher.encrypt(credentials.access_token),
            "refreshToken": (
                self._cipher.encrypt(credentials.refresh_token) if credentials.refresh_token else None
            ),
            "apiKey": self._cipher.encrypt(credentials.api_key) if credentials.api_key else None,
            "expiresAt": credentials.expires_at,
            "mode": credentials.mode,
        }
        atomic_write_json(self._path, document, mode=0o600)

    def _delete(self) -> bool:
        try:
            self._path.unlink()
            return True
        except FileNotFoundError:
            return False

    async def read(self) -> OAuthCredentials | None:
        return await asyncio.to_thread(self._read)

    async def write(self, credentials: OAuthCredentials) -> None:
        await asyncio.to_thread(self._write, credentials)

    async def delete(self) -> bool:
        return await asyncio.to_thread(self._delete)


class PendingFlowStore:
    """In-memory map of pending flows mirrored to a scratch JSON file.

    Expired flows are dropped whenever the file is loaded. Every mutation
    rewrites the file atomically.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        ttl_seconds: float = 600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = Path(path).expanduser() if path else default_pending_flows_path()
        self._ttl = ttl_seconds
        self._clock = clock
        self._flows: dict[str, PendingOAuthFlow] = {}
        self._loaded = False
        self._lock = asyncio.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _load_sync(self) -> None:
        try:
            raw = read_json(self._path) or {}
        except (OSError, ValueError) as exc:
            logger.warning("Discarding unreadable pending-flow file %s: %s", self._path, exc)
            raw = {}
        now_ms = self._now_ms()
        flows: dict[str, PendingOAuthFlow] = {}
        for state, data in (raw.items() if isinstance(raw, dict) else []):
            try:
                flow = PendingOAuthFlow.from_dict(data)
            except (KeyError, TypeError, ValueError):
                continue
            if not flow.is_expired(now_ms, self._ttl):
                flows[state] = flow
        pruned = len(raw) - len(flows) if isinstance(raw, dict) else 0
        if pruned:
            logger.info("Pruned %d expired OAuth flow(s)", pruned)
        self._flows = flows
        self._loaded = True
        if pruned:
            self._save_sync()

    def _save_sync(self) -> None:
        atomic_write_json(
            self._path,
            {state: flow.to_dict() for state, flow in self._flows.items()},
            mode=0o600,
        )

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await asyncio.to_thread(self._load_sync)

    async def add(self, state: str, verifier: str) -> PendingOAuthFlow:
        async with self._lock:
            await self._ensure_loaded()
            flow = PendingOAuthFlow(state=state, verifier=verifier, created_at=self._now_ms())
            self._flows[state] = flow
            await asyncio.to_thread(self._save_sync)
            return flow

    async def get(self, state: str) -> PendingOAuthFlow | None:
        async with self._lock:
            await self._ensure_loaded()
            return self._flows.get(state)

    async def pop(self, state: str) -> PendingOAuthFlow | None:
        """Remove and return the flow for *state* (single use)."""
        async with self._lock:
            await self._ensure_loaded()
            flow = self._flows.pop(state, None)
            if flow is not None:
                await asyncio.to_thread(self._save_sync)
            return flow

    async def has_active(self) -> bool:
        async with self._lock:
            await self._ensure_loaded()
            now_ms = self._now_ms()
            return any(not f.is_expired(now_ms, self._ttl) for f in self._flows.values())

    def is_expired(self, flow: PendingOAuthFlow) -> bool:
        return flow.is_expired(self._now_ms(), self._ttl)


# ── Manager ───────────────────────────────────────────────────


class OAuthManager:
    """PKCE login, token exchange, refresh and status for one account."""

    def __init__(
        self,
        credentials: CredentialStore,
        flows: PendingFlowStore,
        settings: OAuthSettings | None = None,
        *,
        refresh_threshold_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._credentials = credentials
        self._flows = flows
        self._settings = settings or OAuthSettings()
        self._refresh_threshold_ms = int(refresh_threshold_seconds * 1000)
        self._clock = clock
        self._refresh_lock = asyncio.Lock()

    @property
    def settings(self) -> OAuthSettings:
        return self._settings

    @property
    def flows(self) -> PendingFlowStore:
        return self._flows

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def start_login(self) -> LoginStart:
        verifier = generate_verifier()
        state = generate_state()
        params = {
            "code": "true",
            "client_id": self._settings.client_id,
            "response_type": "code",
            "redirect_uri": self._settings.redirect_uri,
            "scope": self._settings.scopes,
            "code_challenge": code_challenge(verifier),
            "code_challenge_method": "S256",
            "state": state,
        }
        await self._flows.add(state, verifier)
        logger.info("OAuth login started")
        return LoginStart(
            auth_url=f"{self._settings.authorize_url}?{urlencode(params)}",
            verifier=verifier,
            state=state,
        )

    async def complete_login(self, code: str, verifier: str, state: str) -> TokenGrant:
        """Exchange *code* for tokens; the pending flow is consumed either way."""
        if not code or not verifier or not state:
            raise ValidationError("code, verifier and state are required")
        flow = await self._flows.pop(state)
        if flow is None:
            raise AuthError("Invalid or expired OAuth flow. Please start login again.")
        if self._flows.is_expired(flow):
            raise OAuthFlowExpiredError(state, self._flows.ttl_seconds)
        if not hmac.compare_digest(flow.verifier.encode(), verifier.encode()):
            raise AuthError("PKCE verifier does not match the pending flow")
        return await self._exchange_code(code, flow)

    async def handle_callback(self, code: str, state: str) -> TokenGrant:
        """Complete a login from a browser redirect, using the stored verifier."""
        if not code or not state:
            raise ValidationError("code and state are required")
        flow = await self._flows.pop(state)
        if flow is None:
            raise AuthError("Unknown or expired OAuth flow. Start login again from the app.")
        if self._flows.is_expired(flow):
            raise OAuthFlowExpiredError(state, self._flows.ttl_seconds)
        return await self._exchange_code(code, flow)

    async def _exchange_code(self, code: str, flow: PendingOAuthFlow) -> TokenGrant:
        # Codes pasted from the console arrive as "<code>#<state>".
        auth_code, _, callback_state = code.partition("#")
        if callback_state and not hmac.compare_digest(callback_state.encode(), flow.state.encode()):
            raise AuthError("State mismatch: the callback state does not match the expected state")
        if not auth_code.strip():
            raise AuthError("Invalid authorization code: code is empty")

        payload: dict[str, Any] = {
            "code": auth_code.strip(),
            "grant_type": "authorization_code",
            "client_id": self._settings.client_id,
            "redirect_uri": self._settings.redirect_uri,
            "code_verifier": flow.verifier,
        }
        if callback_state:
            payload["state"] = callback_state

        token_data = await self._post_token(payload)
        expires_in = int(token_data.get("expires_in") or 0)
        credentials = OAuthCredentials(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token") or "",
            expires_at=self._now_ms() + expires_in * 1000,
            mode=DEFAULT_MODE,
        )
        await self._credentials.write(credentials)
        logger.info("OAuth login completed (expires in %ss)", expires_in)
        return TokenGrant(access_token=credentials.access_token, expires_in=expires_in)

    async def _post_token(self, payload: dict[str, Any]) -> dict[str, Any]:
        """POST *payload* as JSON to the token endpoint.

        Raises AuthError on a transport failure, a non-2xx status or a body
        without ``access_token``.
        """
        timeout = aiohttp.ClientTimeout(total=self._settings.request_timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self._settings.token_url, json=payload) as resp:
                    if resp.status >= 300:
                        body = await resp.text()
                        logger.warning("Token endpoint returned %d for %s", resp.status, payload["grant_type"])
                        raise AuthError(f"Token exchange failed ({resp.status})", detail=body[:500] or None)
                    data = await resp.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise AuthError("Token endpoint unreachable", detail=str(exc)) from exc
        except asyncio.TimeoutError as exc:
            raise AuthError("Token endpoint timed out") from exc
        if not isinstance(data, dict) or not data.get("access_token"):
            raise AuthError("No access token in response")
        return data

    async def get_access_token(self) -> AccessToken:
        """Return a usable token, refreshing first when it is about to expire.

        Concurrent callers share a single refresh.
        """
        async with self._refresh_lock:
            credentials = await self._credentials.read()
            if credentials is None:
                raise AuthError("Not logged in")
            if credentials.expires_at - self._now_ms() <= self._refresh_threshold_ms:
                credentials = await self._refresh(credentials)
            return AccessToken(
                access_token=credentials.access_token,
                api_key=credentials.api_key,
                expires_in=credentials.expires_in(self._now_ms()),
                mode=credentials.mode,
            )

    async def _refresh(self, credentials: OAuthCredentials) -> OAuthCredentials:
        if not credentials.refresh_token:
            raise AuthError("No refresh token available")
        logger.info("Refreshing OAuth access token")
        token_data = await self._post_token({
            "grant_type": "refresh_token",
            "refresh_token": credentials.refresh_token,
            "client_id": self._settings.client_id,
        })
        expires_in = int(token_data.get("expires_in") or 0)
        refreshed = OAuthCredentials(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token") or credentials.refresh_token,
            api_key=credentials.api_key,
            expires_at=self._now_ms() + expires_in * 1000,
            mode=credentials.mode,
        )
        if refreshed.expires_at - self._now_ms() <= self._refresh_threshold_ms:
            raise AuthError("Refreshed token expires too soon")
        await self._credentials.write(refreshed)
        return refreshed

    async def get_status(self) -> dict[str, Any]:
        """Login state plus ``loginPending`` while an unexpired flow is open."""
        credentials = await self._credentials.read()
        login_pending = await self._flows.has_active()
        if credentials is None:
            return {
                "isLoggedIn": False, "mode": None, "expiresAt": None, "expiresIn": None,
                "loginPending": login_pending,
            }
        expires_in = max(0, credentials.expires_in(self._now_ms()))
        return {
            "isLoggedIn": expires_in > 0,
            "mode": credentials.mode,
            "expiresAt": datetime.fromtimestamp(
                credentials.expires_at / 1000, tz=timezone.utc
            ).isoformat().replace("+00:00", "Z"),
            "expiresIn": expires_in,
            "loginPending": login_pending,
        }

    async def logout(self) -> None:
        removed = await self._credentials.delete()
        if removed:
            logger.info("OAuth credentials removed")
