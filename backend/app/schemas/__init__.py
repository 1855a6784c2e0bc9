from app.schemas.schemas import (
    ToolInvocation, ClientMessage, ChatRequest, MessageEdit, VisibilityUpdate,
    ChatResponse, MessageResponse,
    VoteRequest, VoteResponse,
    DocumentResponse, SuggestionResponse,
    KnowledgeUpsert, KnowledgeResponse,
    RelevantContentRequest, RelevantMatch, RelevantContentResponse,
    ChatModelResponse
)

__all__ = [
    "ToolInvocation", "ClientMessage", "ChatRequest", "MessageEdit", "VisibilityUpdate",
    "ChatResponse", "MessageResponse",
    "VoteRequest", "VoteResponse",
    "DocumentResponse", "SuggestionResponse",
    "KnowledgeUpsert", "KnowledgeResponse",
    "RelevantContentRequest", "RelevantMatch", "RelevantContentResponse",
    "ChatModelResponse"
]
