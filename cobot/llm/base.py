from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from ..models import CompletionResult, DownloadedAttachment
from .model_catalog import ModelInfo


class CompletionClient(ABC):
    """Core-facing side of the completion service."""

    @property
    @abstractmethod
    def model(self) -> str:
        ...

    @abstractmethod
    async def send(self, prompt: str, attachments: Sequence[DownloadedAttachment] = ()) -> CompletionResult:
        ...

    @abstractmethod
    async def set_model(self, model_id: str) -> ModelInfo:
        ...

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None
