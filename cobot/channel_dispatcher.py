from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Protocol

from .attachment_fetcher import AttachmentFetcher
from .config_service import CoreSettings
from .context_assembler import ContextAssembler, HistoryProvider
from .errors import CompletionServiceError
from .llm.base import CompletionClient
from .logger_factory import get_logger
from .models import ChannelKey, CompletionResult, DownloadedAttachment, InboundMessage
from .reply_chunker import split_message
from .utils.logfmt import correlation_id, fmt
from .utils.time_utils import elapsed_ms, now_local

ERROR_REPLY = "Something went wrong communicating with Copilot. Please try again."
EMPTY_REPLY = "Copilot returned an empty response."


class Gateway(HistoryProvider, Protocol):
    async def send_reply(self, channel_id: ChannelKey, text: str, reply_to: str | None = None) -> None:
        ...

    async def show_typing(self, channel_id: ChannelKey) -> None:
        ...


@dataclass
class ChannelQueue:
    pending: Deque[InboundMessage] = field(default_factory=deque)
    draining: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    task: asyncio.Task | None = None


class TypingHeartbeat:
    """Sends a typing signal now and every `interval` seconds until the block exits."""

    def __init__(self, gateway: Gateway, channel_id: ChannelKey, interval: float, log):
        self.gateway = gateway
        self.channel_id = channel_id
        self.interval = interval
        self.log = log
        self._task: asyncio.Task | None = None

    async def _run(self) -> None:
        while True:
            try:
                await self.gateway.show_typing(self.channel_id)
            except Exception as e:
                self.log.debug(f"[typing-failed] {fmt('channel', self.channel_id)} {fmt('err', e)}")
            await asyncio.sleep(self.interval)

    async def __aenter__(self) -> "TypingHeartbeat":
        self._task = asyncio.create_task(self._run(), name=f"typing-{self.channel_id}")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._task is not None:
            self._task.cancel()
            # asyncio.wait does not re-raise the heartbeat's CancelledError into this task
            await asyncio.wait({self._task})
            self._task = None


class ChannelDispatcher:
    """One FIFO queue per channel, drained by at most one task per channel.

    Messages within a channel are processed strictly in arrival order; channels
    progress independently. A failure while processing one message produces one
    apology reply and never stops the queue.
    """

    def __init__(
        self,
        *,
        gateway: Gateway,
        llm: CompletionClient,
        fetcher: AttachmentFetcher,
        assembler: ContextAssembler,
        settings: CoreSettings,
    ):
        self.log = get_logger("ChannelDispatcher")
        self.gateway = gateway
        self.llm = llm
        self.fetcher = fetcher
        self.assembler = assembler
        self.settings = settings
        self._queues: Dict[ChannelKey, ChannelQueue] = {}
        self._accepting = True

    def _queue_for(self, key: ChannelKey) -> ChannelQueue:
        q = self._queues.get(key)
        if q is None:
            q = ChannelQueue()
            self._queues[key] = q
        return q

    # ------------------------------------------------------------------
    # Intake / draining
    # ------------------------------------------------------------------
    async def enqueue(self, message: InboundMessage) -> bool:
        if not self._accepting:
            self.log.info(f"[msg-rejected] {fmt('reason', 'shutting-down')} {fmt('channel', message.channel_id)} {fmt('msg', message.id)}")
            return False
        key = message.channel_id
        q = self._queue_for(key)
        async with q.lock:
            q.pending.append(message)
            depth = len(q.pending)
            if not q.draining:
                q.draining = True
                q.task = asyncio.create_task(self.drain(key), name=f"drain-{key}")
        self.log.debug(f"[msg-enqueued] {fmt('channel', key)} {fmt('msg', message.id)} {fmt('depth', depth)}")
        return True

    async def drain(self, key: ChannelKey) -> None:
        q = self._queue_for(key)
        finished = False
        try:
            while True:
                async with q.lock:
                    if not q.pending:
                        q.draining = False
                        q.task = None
                        finished = True
                        return
                    message = q.pending.popleft()
                await self.process(message)
        finally:
            if not finished:
                # Cancelled mid-drain (shutdown); allow a later enqueue to start over
                q.draining = False
                q.task = None

    # ------------------------------------------------------------------
    # Per-message pipeline
    # ------------------------------------------------------------------
    async def _notify(self, message: InboundMessage, text: str) -> None:
        await self.gateway.send_reply(message.channel_id, text, reply_to=message.id)

    async def _prepare(self, message: InboundMessage) -> tuple[str, list[DownloadedAttachment]]:
        prompt_res, fetch_res = await asyncio.gather(
            self.assembler.build_prompt(message, self.gateway, self.settings.context_window),
            self.fetcher.fetch(message, lambda text: self._notify(message, text)),
            return_exceptions=True,
        )
        attachments = fetch_res if isinstance(fetch_res, list) else []
        if isinstance(prompt_res, BaseException):
            self.fetcher.release(attachments)
            raise prompt_res
        if isinstance(fetch_res, BaseException):
            raise fetch_res
        return prompt_res, attachments

    async def _complete(self, message: InboundMessage) -> CompletionResult:
        async with TypingHeartbeat(self.gateway, message.channel_id, self.settings.typing_interval_seconds, self.log):
            prompt, attachments = await self._prepare(message)
            try:
                self.log.debug(
                    f"[llm-request] {fmt('channel', message.channel_id)} {fmt('user', message.author_display_name)} "
                    f"{fmt('prompt_chars', len(prompt))} {fmt('attachments', len(attachments))}"
                )
                return await self.llm.send(prompt, attachments)
            finally:
                self.fetcher.release(attachments)

    async def send_chunks(self, message: InboundMessage, text: str) -> int:
        chunks = split_message(text, self.settings.message_char_limit)
        for chunk in chunks:
            await self.gateway.send_reply(message.channel_id, chunk, reply_to=message.id)
        return len(chunks)

    async def _reply_best_effort(self, message: InboundMessage, text: str, correlation: str) -> None:
        try:
            await self._notify(message, text)
        except Exception as e:
            self.log.warning(f"[error-reply-failed] {fmt('correlation', correlation)} {fmt('err', e)}")

    async def process(self, message: InboundMessage) -> None:
        correlation = correlation_id(message.channel_id, message.id)
        start = now_local()
        self.log.debug(f"[msg-start] {fmt('channel', message.channel_id)} {fmt('user', message.author_display_name)} {fmt('correlation', correlation)}")
        try:
            result = await self._complete(message)
            if result.is_empty:
                self.log.error(
                    f"[llm-empty-response] {fmt('channel', message.channel_id)} {fmt('model', result.model)} "
                    f"{fmt('correlation', correlation)}"
                )
                await self._reply_best_effort(message, EMPTY_REPLY, correlation)
                return
            text = result.text.strip()
            parts = await self.send_chunks(message, text)
            self.log.info(
                f"[msg-replied] {fmt('channel', message.channel_id)} {fmt('user', message.author_display_name)} "
                f"{fmt('chars', len(text))} {fmt('parts', parts)} {fmt('duration_ms', elapsed_ms(start))} "
                f"{fmt('correlation', correlation)}"
            )
        except CompletionServiceError as e:
            self.log.error(
                f"[llm-error] {fmt('channel', message.channel_id)} {fmt('status', e.status)} "
                f"{fmt('err', e.message)} {fmt('correlation', correlation)}"
            )
            await self._reply_best_effort(message, ERROR_REPLY, correlation)
        except Exception:
            self.log.exception(f"[msg-failed] {fmt('channel', message.channel_id)} {fmt('correlation', correlation)}")
            await self._reply_best_effort(message, ERROR_REPLY, correlation)

    # ------------------------------------------------------------------
    # Introspection / shutdown
    # ------------------------------------------------------------------
    def pending(self, key: ChannelKey) -> int:
        q = self._queues.get(key)
        return len(q.pending) if q else 0

    def is_draining(self, key: ChannelKey) -> bool:
        q = self._queues.get(key)
        return bool(q and q.draining)

    def stats(self) -> dict[str, dict]:
        return {key: {"pending": len(q.pending), "draining": q.draining} for key, q in self._queues.items()}

    async def close(self, timeout: float = 10.0) -> None:
        """Stop intake, give running drains `timeout` seconds, then cancel what is left."""
        self._accepting = False
        tasks = {q.task for q in self._queues.values() if q.task is not None}
        if not tasks:
            return
        self.log.info(f"[dispatcher-closing] {fmt('active_drains', len(tasks))} {fmt('timeout_s', timeout)}")
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for t in still_running:
            t.cancel()
        if still_running:
            await asyncio.wait(still_running)
            self.log.warning(f"[dispatcher-abandoned] {fmt('drains', len(still_running))}")
