from __future__ import annotations

import discord
from discord import Intents
from discord.ext import commands

from .config_service import CoreSettings
from .errors import GatewayPermissionError
from .llm.base import CompletionClient
from .models import AttachmentRef, ChannelKey, HistoryRecord, InboundMessage
from .utils.logfmt import fmt
from .utils.time_utils import ensure_local

INTENTS_HELP_URL = "https://discord.com/developers/applications"
COGS = ("cobot.cogs.model_switch",)


def to_inbound(message: discord.Message) -> InboundMessage:
    refs = tuple(
        AttachmentRef(
            url=a.url,
            declared_content_type=a.content_type,
            declared_size_bytes=int(a.size or 0),
            file_name=a.filename,
        )
        for a in message.attachments
    )
    return InboundMessage(
        id=str(message.id),
        channel_id=str(message.channel.id),
        author_id=str(message.author.id),
        author_display_name=message.author.display_name,
        is_from_bot=bool(message.author.bot),
        text_content=message.content or "",
        attachment_refs=refs,
        created_at=ensure_local(message.created_at),
    )


def accepts(settings: CoreSettings, message: InboundMessage, guild_id: str | None) -> tuple[bool, str]:
    """Decide whether an inbound message reaches the queue. Returns (allow, reason)."""
    if settings.guild_id and guild_id != settings.guild_id:
        return False, "other-guild"
    if settings.channel_id and message.channel_id != settings.channel_id:
        return False, "other-channel"
    if message.channel_id in settings.blacklisted_channels:
        return False, "blacklisted"
    if settings.allowed_channels and message.channel_id not in settings.allowed_channels:
        return False, "not-allowed"
    if message.is_from_bot and not settings.reply_to_bot:
        return False, "bot-author"
    if not message.text_content and not message.attachment_refs:
        return False, "empty"
    return True, "ok"


class DiscordClientAdapter(commands.Bot):
    """discord.py client acting as the gateway for the message pipeline."""

    def __init__(self, settings: CoreSettings, llm: CompletionClient, logger):
        intents = Intents.default()
        intents.message_content = True
        super().__init__(command_prefix=commands.when_mentioned, intents=intents)
        self.settings = settings
        self.llm = llm
        self.log = logger
        self.dispatcher = None

    def attach(self, dispatcher) -> None:
        self.dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def setup_hook(self) -> None:
        for ext in COGS:
            await self.load_extension(ext)
        self.log.info(f"cogs-loaded count={len(COGS)}")
        # Guild-scoped sync is immediate; global commands take up to an hour to appear
        if not self.settings.guild_id:
            return
        guild = discord.Object(id=int(self.settings.guild_id))
        try:
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
            self.log.info(f"slash-commands-synced count={len(synced)} guild={self.settings.guild_id}")
        except discord.HTTPException as e:
            self.log.warning(f"Could not register slash commands: {e}")

    async def on_ready(self):
        if self.user is None:
            self.log.info("Logged in (user not available yet)")
            return
        self.log.info(f"Logged in as {self.user} (ID: {self.user.id})")
        self.log.info(
            "Invite URL: https://discord.com/api/oauth2/authorize"
            f"?client_id={self.user.id}&permissions=2048&scope=bot%20applications.commands"
        )

    async def start_gateway(self, token: str) -> None:
        try:
            await self.start(token)
        except discord.PrivilegedIntentsRequired as e:
            raise GatewayPermissionError(
                "Message Content Intent is not enabled. "
                f"Fix: {INTENTS_HELP_URL} -> Bot -> Privileged Gateway Intents -> Message Content Intent"
            ) from e

    async def close(self) -> None:
        if self.is_closed():
            return
        await super().close()
        self.log.info("Client destroyed")

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------
    async def on_message(self, message: discord.Message):
        if self.user is not None and message.author.id == self.user.id:
            return
        if self.dispatcher is None:
            return
        inbound = to_inbound(message)
        guild_id = str(message.guild.id) if message.guild else None
        allow, reason = accepts(self.settings, inbound, guild_id)
        if not allow:
            self.log.debug(f"[skip] {fmt('reason', reason)} {fmt('channel', inbound.channel_id)} {fmt('msg', inbound.id)}")
            return
        await self.dispatcher.enqueue(inbound)

    # ------------------------------------------------------------------
    # Gateway operations used by the dispatcher
    # ------------------------------------------------------------------
    async def _channel(self, channel_id: ChannelKey):
        channel = self.get_channel(int(channel_id))
        if channel is None:
            channel = await self.fetch_channel(int(channel_id))
        return channel

    async def send_reply(self, channel_id: ChannelKey, text: str, reply_to: str | None = None) -> None:
        channel = await self._channel(channel_id)
        reference = None
        if reply_to:
            reference = discord.MessageReference(
                message_id=int(reply_to), channel_id=int(channel_id), fail_if_not_exists=False
            )
        await channel.send(text, reference=reference)

    async def show_typing(self, channel_id: ChannelKey) -> None:
        channel = await self._channel(channel_id)
        await channel.typing()

    async def fetch_history(self, channel_id: ChannelKey, limit: int, before_id: str | None = None) -> list[HistoryRecord]:
        channel = await self._channel(channel_id)
        before = discord.Object(id=int(before_id)) if before_id else None
        records: list[HistoryRecord] = []
        async for m in channel.history(limit=limit, before=before):
            records.append(
                HistoryRecord(
                    id=str(m.id),
                    author_display_name=m.author.display_name,
                    text_content=m.content or "",
                    created_at=ensure_local(m.created_at),
                )
            )
        return records
