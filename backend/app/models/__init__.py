from app.models.models import (
    Chat, Message, Vote, Document, Suggestion, KnowledgeBaseEntry,
    Visibility, MessageRole, DocumentKind, EMBEDDING_DIMENSIONS
)

__all__ = [
    "Chat", "Message", "Vote", "Document", "Suggestion", "KnowledgeBaseEntry",
    "Visibility", "MessageRole", "DocumentKind", "EMBEDDING_DIMENSIONS"
]
