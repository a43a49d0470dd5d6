from __future__ import annotations

import asyncio
import base64
import time
from typing import Optional, Sequence

import httpx

from ..errors import CompletionServiceError
from ..logger_factory import get_logger, is_full_enabled
from ..models import CompletionResult, DownloadedAttachment
from ..utils.logfmt import fmt
from ..utils.time_utils import elapsed_ms, now_local
from .base import CompletionClient
from .model_catalog import ModelInfo, default_model, get_model

TOKEN_URL = "https://api.github.com/copilot_internal/v2/token"
DEFAULT_API_URL = "https://api.githubcopilot.com"
# Refresh the exchanged Copilot token this many seconds before it expires
TOKEN_REFRESH_MARGIN = 60

_EDITOR_HEADERS = {
    "Editor-Version": "cobot/1.0",
    "Editor-Plugin-Version": "cobot/1.0",
    "Copilot-Integration-Id": "vscode-chat",
    "User-Agent": "cobot/1.0",
}


async def build_user_content(prompt: str, attachments: Sequence[DownloadedAttachment]) -> str | list[dict]:
    """Plain text without attachments, otherwise one text part plus one image part per file."""
    if not attachments:
        return prompt
    blobs = await asyncio.gather(*(asyncio.to_thread(att.path.read_bytes) for att in attachments))
    parts: list[dict] = [{"type": "text", "text": prompt}]
    for att, blob in zip(attachments, blobs):
        encoded = base64.b64encode(blob).decode("ascii")
        parts.append({"type": "image_url", "image_url": {"url": f"data:{att.content_type};base64,{encoded}"}})
    return parts


def _error_from_response(resp: httpx.Response) -> CompletionServiceError:
    try:
        body = resp.text
    except Exception:
        body = "<no body>"
    return CompletionServiceError(body[:500] or resp.reason_phrase, status=resp.status_code)


class CopilotSession:
    """One model-bound connection to the Copilot chat API.

    A retired session keeps serving requests already in flight and closes its
    HTTP client once the last of them finishes.
    """

    def __init__(
        self,
        *,
        github_token: str,
        model: str,
        timeout: float = 120.0,
        token_url: str = TOKEN_URL,
        api_url: Optional[str] = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.log = get_logger("CopilotSession")
        self.model = model
        self._github_token = github_token
        self._token_url = token_url
        self._api_url = api_url
        self._api_token: str | None = None
        self._api_token_expires_at = 0.0
        self._inflight = 0
        self._retired = False
        self._closed = False
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def closed(self) -> bool:
        return self._closed

    async def _ensure_api_token(self) -> str:
        if self._api_token and time.time() < self._api_token_expires_at - TOKEN_REFRESH_MARGIN:
            return self._api_token
        headers = {"Authorization": f"token {self._github_token}", "Accept": "application/json", **_EDITOR_HEADERS}
        try:
            r = await self._client.get(self._token_url, headers=headers)
        except httpx.HTTPError as e:
            raise CompletionServiceError(f"token exchange failed: {e}") from e
        if r.status_code != 200:
            raise _error_from_response(r)
        try:
            data = r.json()
            token = data["token"]
        except (ValueError, KeyError, TypeError) as e:
            raise CompletionServiceError(f"token exchange parse error: {r.text[:200]}") from e
        self._api_token = token
        self._api_token_expires_at = float(data.get("expires_at") or (time.time() + 1500))
        endpoints = data.get("endpoints") or {}
        if not self._api_url:
            self._api_url = endpoints.get("api") or DEFAULT_API_URL
        self.log.debug(f"[copilot-token] {fmt('model', self.model)} {fmt('expires_at', int(self._api_token_expires_at))}")
        return token

    async def verify(self) -> None:
        """Exchange the GitHub credential once so a bad token fails at startup, not on first message."""
        await self._ensure_api_token()

    async def complete(self, content: str | list[dict]) -> dict:
        if self._closed:
            raise CompletionServiceError("session closed")
        self._inflight += 1
        try:
            token = await self._ensure_api_token()
            headers = {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                **_EDITOR_HEADERS,
            }
            if isinstance(content, list):
                headers["Copilot-Vision-Request"] = "true"
            payload = {
                "model": self.model,
                "messages": [{"role": "user", "content": content}],
                "stream": False,
            }
            url = f"{(self._api_url or DEFAULT_API_URL).rstrip('/')}/chat/completions"
            try:
                r = await self._client.post(url, json=payload, headers=headers)
            except httpx.HTTPError as e:
                raise CompletionServiceError(f"transport error: {e}") from e
            if r.status_code < 200 or r.status_code >= 300:
                raise _error_from_response(r)
            try:
                return r.json()
            except ValueError as e:
                raise CompletionServiceError(f"response parse error: {r.text[:200]}", status=r.status_code) from e
        finally:
            self._inflight -= 1
            if self._retired and self._inflight == 0:
                await self.aclose()

    async def retire(self) -> None:
        self._retired = True
        if self._inflight == 0:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._client.aclose()
        except Exception as e:
            self.log.debug(f"[copilot-session-close-error] {fmt('model', self.model)} {fmt('err', e)}")


class CopilotClient(CompletionClient):
    """Owns the active model selection and the session bound to it.

    set_model swaps in a fresh session; requests already running on the old one
    finish against the old model.
    """

    def __init__(
        self,
        github_token: str,
        *,
        model: str | None = None,
        timeout: float = 120.0,
        token_url: str = TOKEN_URL,
        api_url: Optional[str] = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.log = get_logger("Copilot")
        self._github_token = github_token
        self._model = get_model(model).id if model else default_model().id
        self._timeout = timeout
        self._token_url = token_url
        self._api_url = api_url
        self._transport = transport
        self.session: CopilotSession | None = None

    @property
    def model(self) -> str:
        return self._model

    def _new_session(self) -> CopilotSession:
        return CopilotSession(
            github_token=self._github_token,
            model=self._model,
            timeout=self._timeout,
            token_url=self._token_url,
            api_url=self._api_url,
            transport=self._transport,
        )

    async def _create_session(self) -> CopilotSession:
        old = self.session
        self.session = self._new_session()
        if old is not None:
            await old.retire()
        self.log.info(f"[copilot-session-ready] {fmt('model', self._model)}")
        return self.session

    async def start(self) -> None:
        self.log.info("Starting Copilot client...")
        session = await self._create_session()
        await session.verify()

    async def set_model(self, model_id: str) -> ModelInfo:
        info = get_model(model_id)
        self._model = info.id
        await self._create_session()
        self.log.info(f"[model-set] {fmt('model', info.id)}")
        return info

    async def send(self, prompt: str, attachments: Sequence[DownloadedAttachment] = ()) -> CompletionResult:
        session = self.session
        if session is None or session.closed:
            session = await self._create_session()
        content = await build_user_content(prompt, attachments)
        start = now_local()
        self.log.debug(
            f"[llm-start] {fmt('model', session.model)} {fmt('prompt_chars', len(prompt))} "
            f"{fmt('attachments', len(attachments))}"
        )
        data = await session.complete(content)
        try:
            choices = data.get("choices") or [{}]
            text = (choices[0].get("message") or {}).get("content") or ""
        except (AttributeError, IndexError, TypeError) as e:
            raise CompletionServiceError(f"response parse error: {str(data)[:200]}") from e
        if not isinstance(text, str):
            raise CompletionServiceError(f"unexpected content type: {type(text).__name__}")
        usage = data.get("usage") or {}
        self.log.info(
            f"[llm-finish] {fmt('model', session.model)} {fmt('duration_ms', elapsed_ms(start))} "
            f"{fmt('tokens_in', usage.get('prompt_tokens'))} {fmt('tokens_out', usage.get('completion_tokens'))} "
            f"{fmt('chars', len(text))}"
        )
        if is_full_enabled():
            self.log.info(f"[payload-out] {fmt('reply', text[:1000])}")
        return CompletionResult(text=text, model=session.model)

    async def stop(self) -> None:
        session, self.session = self.session, None
        if session is not None:
            await session.aclose()
