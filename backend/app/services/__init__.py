from app.services.chat_service import ChatService
from app.services.documents import DocumentRegistry, UnsupportedKindError
from app.services.llm_client import LLMClient, LLMError
from app.services.persistence import ChatStore, DocumentStore, KnowledgeStore, PersistenceError
from app.services.retrieval import RetrievalService
from app.services.tools import ToolExecutionError, ToolName, ToolRegistry
from app.services.weather import WeatherService

__all__ = [
    "ChatService",
    "DocumentRegistry",
    "UnsupportedKindError",
    "LLMClient",
    "LLMError",
    "ChatStore",
    "DocumentStore",
    "KnowledgeStore",
    "PersistenceError",
    "RetrievalService",
    "ToolExecutionError",
    "ToolName",
    "ToolRegistry",
    "WeatherService",
]
