from dataclasses import dataclass
from app.core.config import get_settings

DEFAULT_CHAT_MODEL = "gpt-4o-mini"


@dataclass(frozen=True)
class ChatModel:
    id: str
    name: str
    description: str
    provider_model: str

    @property
    def is_reasoning(self) -> bool:
        return is_reasoning_model(self.id)


CHAT_MODELS: dict[str, ChatModel] = {
    m.id: m
    for m in (
        ChatModel("gpt-4o-mini", "gpt-4o-mini", "Small model for fast, lightweight tasks", "gpt-4o-mini"),
        ChatModel("gpt-4o", "gpt-4o", "Large model for complex, multi-step tasks", "gpt-4o"),
        ChatModel(
            "openai-reasoning",
            "OpenAI Reasoning model",
            "Large reasoning model for complex, multi-step tasks",
            "o1-mini",
        ),
        ChatModel(
            "openseek-reasoning",
            "OpenSeek R1 model",
            "Uses advanced reasoning",
            "deepseek-r1",
        ),
    )
}


def is_reasoning_model(selected_model: str) -> bool:
    """Reasoning variants run without tools."""
    return "reasoning" in (selected_model or "")


def resolve_chat_model(selected_model: str | None) -> ChatModel:
    """Map a client-selected model id to a provider model.

    Unknown ids fall back to the configured default model but keep their id,
    so reasoning detection still follows the name the client picked.
    """
    settings = get_settings()
    model = CHAT_MODELS.get(selected_model or DEFAULT_CHAT_MODEL)
    if model:
        return model
    return ChatModel(
        id=selected_model or DEFAULT_CHAT_MODEL,
        name=selected_model or DEFAULT_CHAT_MODEL,
        description="Default model",
        provider_model=settings.openai_model,
    )
