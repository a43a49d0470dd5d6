from __future__ import annotations

from fastapi import FastAPI
from pydantic import BaseModel

from .llm.base import CompletionClient
from .llm.model_catalog import MODELS


class ModelOut(BaseModel):
    id: str
    label: str
    description: str
    default: bool = False
    active: bool = False


class ChannelOut(BaseModel):
    channel_id: str
    pending: int
    draining: bool


class StatusOut(BaseModel):
    model: str
    models: list[ModelOut]
    channels: list[ChannelOut]


def create_app(dispatcher, llm: CompletionClient) -> FastAPI:
    """Read-only operator endpoints: liveness and pipeline status."""
    app = FastAPI(title="Co-Bot status", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.get("/status", response_model=StatusOut)
    async def status():
        active = llm.model
        return StatusOut(
            model=active,
            models=[
                ModelOut(id=m.id, label=m.label, description=m.description, default=m.default, active=m.id == active)
                for m in MODELS
            ],
            channels=[
                ChannelOut(channel_id=cid, pending=s["pending"], draining=s["draining"])
                for cid, s in sorted(dispatcher.stats().items())
            ],
        )

    return app
