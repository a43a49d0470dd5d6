from __future__ import annotations

from typing import Protocol

from jinja2 import BaseLoader, Environment

from .config_service import DEFAULT_LINE_TEMPLATE
from .logger_factory import get_logger
from .models import ChannelKey, HistoryRecord, InboundMessage
from .utils.logfmt import fmt

PAGE_SIZE = 100
MAX_HISTORY = 1000


class HistoryProvider(Protocol):
    async def fetch_history(
        self, channel_id: ChannelKey, limit: int, before_id: str | None = None
    ) -> list[HistoryRecord]:
        """Return up to `limit` records, newest first, older than `before_id` when given."""
        ...


class ContextAssembler:
    """Builds the prompt text for one message, optionally prefixed with channel history."""

    def __init__(self, line_template: str = DEFAULT_LINE_TEMPLATE):
        self.log = get_logger("ContextAssembler")
        self.env = Environment(loader=BaseLoader(), autoescape=False, keep_trailing_newline=False)
        self._line = self.env.from_string(line_template)

    def render_line(self, author: str, content: str) -> str:
        return self._line.render(author=author, content=content)

    async def _collect_all(self, history: HistoryProvider, channel_id: ChannelKey) -> list[HistoryRecord]:
        collected: list[HistoryRecord] = []
        before: str | None = None
        while len(collected) < MAX_HISTORY:
            page = await history.fetch_history(channel_id, limit=PAGE_SIZE, before_id=before)
            collected.extend(page)
            if len(page) < PAGE_SIZE:
                break
            before = page[-1].id
        return collected

    async def build_prompt(self, message: InboundMessage, history: HistoryProvider, window_size: int) -> str:
        """Return the prompt for `message`.

        window_size == 1: the message text alone, no history fetch.
        window_size == 0: up to 1000 records, fetched in pages of 100.
        window_size == N: the N most recent records in a single fetch.
        """
        if window_size == 1:
            return message.text_content

        if window_size == 0:
            records = await self._collect_all(history, message.channel_id)
        else:
            records = await history.fetch_history(message.channel_id, limit=window_size)

        prior = sorted((r for r in records if r.id != message.id), key=lambda r: r.created_at)
        context = "\n".join(self.render_line(r.author_display_name, r.text_content) for r in prior)
        self.log.debug(
            f"[context] {fmt('channel', message.channel_id)} {fmt('window', window_size)} "
            f"{fmt('fetched', len(records))} {fmt('used', len(prior))}"
        )
        if not context:
            return message.text_content
        return f"{context}\n{self.render_line(message.author_display_name, message.text_content)}"
