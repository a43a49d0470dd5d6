from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
import time
from typing import Awaitable, Callable, Mapping, Optional

import httpx

from .errors import AccessDeniedError, AuthenticationError, DeviceCodeExpiredError
from .logger_factory import get_logger
from .utils.logfmt import fmt

# OAuth App client id used by Copilot editor plugins for the device flow
CLIENT_ID = "Iv1.b507a08c87ecfe98"
SCOPE = "read:user"
DEVICE_CODE_URL = "https://github.com/login/device/code"
ACCESS_TOKEN_URL = "https://github.com/login/oauth/access_token"
GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"

AUTH_FILE = Path(".cobot-auth.json")
AMBIENT_ENV_VARS = ("GH_TOKEN", "GITHUB_TOKEN")

log = get_logger("Auth")


class TokenStore:
    """Cached GitHub token written after the first successful device flow."""

    def __init__(self, path: str | Path = AUTH_FILE):
        self.path = Path(path)

    def load(self) -> str | None:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning(f"[token-cache-unreadable] {fmt('path', str(self.path))} {fmt('err', e)}")
            return None
        token = data.get("token") if isinstance(data, dict) else None
        return token or None

    def save(self, token: str) -> None:
        self.path.write_text(json.dumps({"token": token}, indent=2), encoding="utf-8")
        try:
            os.chmod(self.path, 0o600)
        except OSError:
            pass

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class DeviceFlow:
    """GitHub OAuth device authorization: show a code, poll until authorized, denied or expired."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        store: TokenStore,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.store = store
        self.sleep = sleep
        self.clock = clock

    async def _post(self, url: str, body: dict) -> dict:
        try:
            r = await self.client.post(url, json=body, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            raise AuthenticationError(f"GitHub request failed: {e}") from e
        if r.status_code >= 400:
            raise AuthenticationError(f"GitHub API error {r.status_code}: {r.text[:300]}")
        try:
            return r.json()
        except ValueError as e:
            raise AuthenticationError(f"GitHub returned non-JSON response: {r.text[:200]}") from e

    def _display(self, verification_uri: str, user_code: str) -> None:
        line = "-" * 46
        log.info(line)
        log.info("GitHub Authentication Required")
        log.info(f"  Visit:      {verification_uri}")
        log.info(f"  Enter code: {user_code}")
        log.info(line)

    async def login(self) -> str:
        start = await self._post(DEVICE_CODE_URL, {"client_id": CLIENT_ID, "scope": SCOPE})
        device_code = start.get("device_code")
        if not device_code:
            raise AuthenticationError("Failed to obtain device code from GitHub")
        self._display(start.get("verification_uri", "https://github.com/login/device"), start.get("user_code", "?"))

        interval = float(start.get("interval") or 5)
        deadline = self.clock() + float(start.get("expires_in") or 900)
        while self.clock() < deadline:
            await self.sleep(interval)
            data = await self._post(
                ACCESS_TOKEN_URL,
                {"client_id": CLIENT_ID, "device_code": device_code, "grant_type": GRANT_TYPE},
            )
            token = data.get("access_token")
            if token:
                self.store.save(token)
                log.info("Authentication successful! Token saved.")
                return token
            error = data.get("error")
            if error == "authorization_pending":
                continue
            if error == "slow_down":
                interval = float(data.get("interval") or interval + 5)
                log.debug(f"[device-flow-slow-down] {fmt('interval_s', interval)}")
                continue
            if error == "access_denied":
                raise AccessDeniedError()
            if error == "expired_token":
                raise DeviceCodeExpiredError()
            raise AuthenticationError(f"Unexpected auth error: {error}")
        raise DeviceCodeExpiredError()


async def gh_cli_token(timeout: float = 5.0) -> str | None:
    """Token from `gh auth token`, or None when the GitHub CLI is missing or logged out."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "gh", "auth", "token",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except (FileNotFoundError, PermissionError):
        return None
    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return None
    if proc.returncode != 0:
        return None
    return out.decode().strip() or None


async def ambient_token(env: Mapping[str, str], use_gh_cli: bool = True) -> str | None:
    for key in AMBIENT_ENV_VARS:
        if env.get(key):
            return env[key]
    if use_gh_cli:
        return await gh_cli_token()
    return None


async def ensure_authenticated(
    configured_token: Optional[str] = None,
    *,
    store: TokenStore | None = None,
    env: Mapping[str, str] | None = None,
    use_gh_cli: bool = True,
    flow: DeviceFlow | None = None,
) -> str:
    """Resolve the GitHub credential.

    Order: configured token, ambient token (GH_TOKEN / GITHUB_TOKEN / gh CLI),
    cached token file, interactive device flow.
    """
    store = store or TokenStore()
    if configured_token:
        log.info("[auth] source=configured")
        return configured_token
    ambient = await ambient_token(os.environ if env is None else env, use_gh_cli=use_gh_cli)
    if ambient:
        log.info("[auth] source=ambient")
        return ambient
    cached = store.load()
    if cached:
        log.info("[auth] source=cache")
        return cached
    if flow is not None:
        return await flow.login()
    async with httpx.AsyncClient(timeout=30.0) as client:
        return await DeviceFlow(client, store).login()
