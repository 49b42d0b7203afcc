"""Known Claude models and alias resolution for chat requests."""

from dataclasses import dataclass


@dataclass(frozen=True)
class ModelInfo:
    key: str
    name: str
    description: str
    model_id: str


MODELS: tuple[ModelInfo, ...] = (
    ModelInfo("haiku", "Claude Haiku", "Fastest, for simple tasks", "claude-haiku-4-5-20251001"),
    ModelInfo("sonnet", "Claude Sonnet", "Fast, efficient for most tasks", "claude-sonnet-4-20250514"),
    ModelInfo("opus", "Claude Opus", "Most capable, for complex tasks", "claude-opus-4-20250514"),
)

DEFAULT_MODEL_KEY = "sonnet"
DEFAULT_MODEL_ID = "claude-sonnet-4-20250514"


def resolve_model_id(key_or_id: str | None, default: str = DEFAULT_MODEL_ID) -> str:
    """Resolve a short alias or a full model id to a full model id.

    Unknown strings pass through unchanged so newer model ids work without a
    code change. An empty value falls back to `default`.
    """
    if not key_or_id:
        return default
    for model in MODELS:
        if key_or_id in (model.key, model.model_id):
            return model.model_id
    return key_or_id


def model_family(model_id: str | None) -> str:
    """Return the alias key whose family name appears in `model_id`."""
    if model_id:
        for model in MODELS:
            if model.key in model_id:
                return model.key
    return DEFAULT_MODEL_KEY
