from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .utils.time_utils import now_local

# Channel ids are used as queue partition keys
ChannelKey = str


@dataclass(frozen=True)
class AttachmentRef:
    url: str
    declared_content_type: str | None
    declared_size_bytes: int
    file_name: str

    @property
    def is_image(self) -> bool:
        return bool(self.declared_content_type) and self.declared_content_type.startswith("image/")


@dataclass(frozen=True)
class InboundMessage:
    id: str
    channel_id: ChannelKey
    author_id: str
    author_display_name: str
    is_from_bot: bool
    text_content: str
    attachment_refs: tuple[AttachmentRef, ...] = ()
    created_at: datetime = field(default_factory=now_local)


@dataclass(frozen=True)
class HistoryRecord:
    id: str
    author_display_name: str
    text_content: str
    created_at: datetime


@dataclass(frozen=True)
class DownloadedAttachment:
    path: Path
    content_type: str
    display_name: str


@dataclass(frozen=True)
class CompletionResult:
    text: str
    model: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()
