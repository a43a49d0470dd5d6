from __future__ import annotations

from dataclasses import dataclass

from ..errors import UnknownModelError


@dataclass(frozen=True)
class ModelInfo:
    id: str
    label: str
    description: str
    default: bool = False


# Models offered through /model; exactly one entry is the default
MODELS: tuple[ModelInfo, ...] = (
    ModelInfo("gpt-5-mini", "ChatGPT 5 mini", "Latest mini model (gpt-5-mini)"),
    ModelInfo("gpt-4.1", "ChatGPT 4.1", "Fast and capable (gpt-4.1)", default=True),
    ModelInfo("gpt-4o", "ChatGPT 4o", "Balanced general model (gpt-4o)"),
)


def default_model() -> ModelInfo:
    return next(m for m in MODELS if m.default)


def find_model(model_id: str) -> ModelInfo | None:
    return next((m for m in MODELS if m.id == model_id), None)


def get_model(model_id: str) -> ModelInfo:
    info = find_model(model_id)
    if info is None:
        raise UnknownModelError(model_id)
    return info
