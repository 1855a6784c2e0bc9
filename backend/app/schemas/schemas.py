import uuid
from datetime import datetime
from typing import Any, Literal
from pydantic import BaseModel, ConfigDict, Field


class ToolInvocation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tool_call_id: str = Field(alias="toolCallId")
    tool_name: str = Field(alias="toolName")
    state: Literal["call", "result"]
    args: dict[str, Any] = Field(default_factory=dict)
    result: Any | None = None


class ClientMessage(BaseModel):
    """A message as sent by the chat client."""

    model_config = ConfigDict(populate_by_name=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    role: Literal["user", "assistant", "system"]
    content: str = ""
    reasoning: str | None = None
    tool_invocations: list[ToolInvocation] = Field(default_factory=list, alias="toolInvocations")
    created_at: datetime | None = Field(default=None, alias="createdAt")


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: uuid.UUID
    messages: list[ClientMessage]
    selected_chat_model: str = Field(default="gpt-4o-mini", alias="selectedChatModel")


class MessageEdit(BaseModel):
    content: str = Field(min_length=1)


class VisibilityUpdate(BaseModel):
    visibility: Literal["private", "public"]


class ChatResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    title: str
    visibility: str
    created_at: datetime


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    chat_id: uuid.UUID
    role: str
    content: str
    reasoning: str | None = None
    tool_invocations: list[dict[str, Any]] | None = None
    created_at: datetime


class VoteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chat_id: uuid.UUID = Field(alias="chatId")
    message_id: uuid.UUID = Field(alias="messageId")
    type: Literal["up", "down"]


class VoteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    chat_id: uuid.UUID
    message_id: uuid.UUID
    is_upvoted: bool


class DocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    created_at: datetime
    title: str
    kind: str
    content: str | None
    user_id: uuid.UUID


class SuggestionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    document_id: uuid.UUID
    document_created_at: datetime
    original_text: str
    suggested_text: str
    description: str | None
    is_resolved: bool
    created_at: datetime


class KnowledgeUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    knowledge: str = Field(min_length=1)
    title: str = "Knowledge Base Entry"
    created_at: datetime | None = Field(default=None, alias="createdAt")


class KnowledgeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    title: str
    knowledge: str
    created_at: datetime


class RelevantContentRequest(BaseModel):
    input: str = Field(min_length=1)


class RelevantMatch(BaseModel):
    name: str
    similarity: float


class RelevantContentResponse(BaseModel):
    content: list[RelevantMatch]


class ChatModelResponse(BaseModel):
    id: str
    name: str
    description: str
    reasoning: bool = False
