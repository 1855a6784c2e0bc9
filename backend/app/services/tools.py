import json
import uuid
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

import httpx
from openai import OpenAIError
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import get_settings
from app.models import DocumentKind, KnowledgeBaseEntry, Suggestion
from app.services.documents import DocumentRegistry, UnsupportedKindError
from app.services.llm_client import LLMClient, LLMError
from app.services.persistence import PersistenceError
from app.services.prompts import SUGGESTIONS_PROMPT
from app.services.retrieval import RetrievalService
from app.services.stream import DataStream, DataType
from app.services.weather import WeatherService, WeatherServiceError

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 5


class ToolExecutionError(RuntimeError):
    """Raised when a tool execution fails."""
    pass


class ToolName(str, Enum):
    GET_WEATHER = "getWeather"
    CREATE_DOCUMENT = "createDocument"
    UPDATE_DOCUMENT = "updateDocument"
    REQUEST_SUGGESTIONS = "requestSuggestions"
    ADD_KNOWLEDGE = "addKnowledgeBaseEntry"
    GET_KNOWLEDGE = "getKnowledgeBaseEntry"
    GET_INFORMATION = "getInformation"
    LIST_KNOWLEDGE = "listAllKnowledgeBaseEntries"


@dataclass
class TurnContext:
    """Everything a tool may touch during one chat turn."""

    user_id: uuid.UUID
    stream: DataStream
    llm: LLMClient
    documents: DocumentRegistry
    retrieval: RetrievalService
    weather: WeatherService
    created_document_ids: set[uuid.UUID] = field(default_factory=set)


def parse_tool_arguments(raw: str | dict | None) -> dict[str, Any]:
    """Decode the JSON argument string of a tool call."""
    if isinstance(raw, dict):
        return raw
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ToolExecutionError(f"Tool arguments are not valid JSON: {e.msg}") from e
    if not isinstance(parsed, dict):
        raise ToolExecutionError("Tool arguments must be a JSON object.")
    return parsed


def _parse_uuid(value: str, what: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ToolExecutionError(f"Invalid {what}: {value!r}")


def _entry_dict(entry: KnowledgeBaseEntry) -> dict[str, Any]:
    return {
        "id": str(entry.id),
        "title": entry.title,
        "knowledge": entry.knowledge,
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
    }


class _NoArgs(BaseModel):
    pass


class BaseTool(ABC):
    """Base class for chat tools."""

    name: ToolName
    description: str
    Args: type[BaseModel] = _NoArgs

    def validate(self, raw: dict[str, Any]) -> BaseModel:
        try:
            return self.Args.model_validate(raw)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'args'}: {err['msg']}" for err in e.errors()
            )
            raise ToolExecutionError(f"Invalid arguments for {self.name.value}: {problems}")

    @abstractmethod
    async def execute(self, args: Any, ctx: TurnContext) -> Any:
        pass

    def parameters_schema(self) -> dict[str, Any]:
        schema = self.Args.model_json_schema()
        properties = {
            key: {k: v for k, v in prop.items() if k != "title"}
            for key, prop in schema.get("properties", {}).items()
        }
        return {
            "type": "object",
            "properties": properties,
            "required": schema.get("required", []),
        }

    def openai_spec(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name.value,
                "description": self.description,
                "parameters": self.parameters_schema(),
            },
        }


class GetWeatherTool(BaseTool):
    name = ToolName.GET_WEATHER
    description = "Get the current weather at a location"

    class Args(BaseModel):
        location: str = Field(description="City or place name, e.g. 'Austin, TX, US'")

    async def execute(self, args: Args, ctx: TurnContext) -> dict[str, Any]:
        try:
            return await ctx.weather.get_weather(args.location)
        except WeatherServiceError as e:
            raise ToolExecutionError(str(e)) from e


class CreateDocumentTool(BaseTool):
    name = ToolName.CREATE_DOCUMENT
    description = (
        "Create a document for a writing or content creation activities. This tool will call other "
        "functions that will generate the contents of the document based on the title and kind."
    )

    class Args(BaseModel):
        title: str = Field(min_length=1)
        kind: str = Field(json_schema_extra={"enum": [k.value for k in DocumentKind]})

    async def execute(self, args: Args, ctx: TurnContext) -> dict[str, Any]:
        ctx.documents.get(args.kind)

        document_id = uuid.uuid4()
        await ctx.stream.write_data(DataType.KIND, args.kind)
        await ctx.stream.write_data(DataType.TITLE, args.title)
        await ctx.stream.write_data(DataType.CLEAR, "")
        await ctx.stream.write_data(DataType.ID, str(document_id))

        await ctx.documents.create_document(
            document_id=document_id,
            title=args.title,
            kind=args.kind,
            user_id=ctx.user_id,
            stream=ctx.stream,
        )
        ctx.created_document_ids.add(document_id)
        await ctx.stream.write_data(DataType.FINISH, "")

        return {
            "id": str(document_id),
            "title": args.title,
            "kind": args.kind,
            "content": "A document was created and is now visible to the user.",
        }


class UpdateDocumentTool(BaseTool):
    name = ToolName.UPDATE_DOCUMENT
    description = "Update a document with the given description."

    class Args(BaseModel):
        id: str = Field(description="The ID of the document to update")
        description: str = Field(description="The description of changes that need to be made")

    async def execute(self, args: Args, ctx: TurnContext) -> dict[str, Any]:
        document_id = _parse_uuid(args.id, "document id")
        if document_id in ctx.created_document_ids:
            raise ToolExecutionError(
                "This document was just created. Wait for user feedback before updating it."
            )

        document = await ctx.documents.store.get_latest(document_id)
        if document is None:
            raise ToolExecutionError("Document not found")

        title, kind = document.title, document.kind
        await ctx.stream.write_data(DataType.CLEAR, title)
        await ctx.documents.update_document(
            document=document,
            description=args.description,
            user_id=ctx.user_id,
            stream=ctx.stream,
        )
        await ctx.stream.write_data(DataType.FINISH, "")

        return {
            "id": str(document_id),
            "title": title,
            "kind": kind,
            "content": "The document has been updated successfully.",
        }


class _SuggestionItem(BaseModel):
    original_sentence: str = Field(alias="originalSentence")
    suggested_sentence: str = Field(alias="suggestedSentence")
    description: str = ""


class RequestSuggestionsTool(BaseTool):
    name = ToolName.REQUEST_SUGGESTIONS
    description = "Request suggestions for a document"

    class Args(BaseModel):
        document_id: str = Field(alias="documentId", description="The ID of the document to request edits")

    async def _generate(self, ctx: TurnContext, content: str) -> list[_SuggestionItem]:
        raw = await ctx.llm.complete(
            model=get_settings().block_model,
            system=SUGGESTIONS_PROMPT,
            prompt=content,
            json_mode=True,
        )
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ToolExecutionError("Suggestion model returned invalid JSON") from e

        items = payload.get("suggestions", []) if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise ToolExecutionError("Suggestion model returned an unexpected shape")

        suggestions: list[_SuggestionItem] = []
        for item in items:
            try:
                suggestions.append(_SuggestionItem.model_validate(item))
            except ValidationError:
                logger.debug("Skipping malformed suggestion: %r", item)
            if len(suggestions) >= MAX_SUGGESTIONS:
                break
        return suggestions

    async def execute(self, args: Args, ctx: TurnContext) -> dict[str, Any]:
        document_id = _parse_uuid(args.document_id, "document id")
        document = await ctx.documents.store.get_latest(document_id)
        if document is None or not document.content:
            raise ToolExecutionError("Document not found")
        if document.kind == DocumentKind.IMAGE.value:
            raise ToolExecutionError("Suggestions are not available for image documents")
        title, kind = document.title, document.kind

        rows: list[Suggestion] = []
        for item in await self._generate(ctx, document.content):
            suggestion = Suggestion(
                id=uuid.uuid4(),
                document_id=document.id,
                document_created_at=document.created_at,
                original_text=item.original_sentence,
                suggested_text=item.suggested_sentence,
                description=item.description,
                is_resolved=False,
                user_id=ctx.user_id,
            )
            rows.append(suggestion)
            await ctx.stream.write_data(
                DataType.SUGGESTION,
                {
                    "id": str(suggestion.id),
                    "documentId": str(document.id),
                    "originalText": suggestion.original_text,
                    "suggestedText": suggestion.suggested_text,
                    "description": suggestion.description,
                    "isResolved": False,
                },
            )

        await ctx.documents.store.save_suggestions(rows)
        await ctx.stream.write_data(DataType.FINISH, "")

        return {
            "id": str(document_id),
            "title": title,
            "kind": kind,
            "message": "Suggestions have been added to the document",
        }


class AddKnowledgeTool(BaseTool):
    name = ToolName.ADD_KNOWLEDGE
    description = (
        "Add an entry to your knowledge base. If the user provides a random piece of knowledge "
        'unprompted or a prompt that starts with "I need you to know", use this tool without '
        "asking for confirmation."
    )

    class Args(BaseModel):
        knowledge: str = Field(min_length=1, description="the content or resource to add to the knowledge base")

    async def execute(self, args: Args, ctx: TurnContext) -> dict[str, Any]:
        entry = await ctx.retrieval.add_entry(args.knowledge)
        return _entry_dict(entry)


class GetKnowledgeTool(BaseTool):
    name = ToolName.GET_KNOWLEDGE
    description = "Look up the single most relevant entry in your knowledge base for a query."

    class Args(BaseModel):
        query: str = Field(min_length=1, description="what to look up")

    async def execute(self, args: Args, ctx: TurnContext) -> dict[str, Any] | None:
        best = await ctx.retrieval.find_best(args.query)
        if best is None:
            return None
        return {**_entry_dict(best.entry), "similarity": best.similarity}


class GetInformationTool(BaseTool):
    name = ToolName.GET_INFORMATION
    description = "get information from your knowledge base to answer questions."

    class Args(BaseModel):
        question: str = Field(min_length=1, description="the users question")

    async def execute(self, args: Args, ctx: TurnContext) -> list[dict[str, Any]]:
        matches = await ctx.retrieval.find_relevant(args.question)
        return [{"name": m.entry.knowledge, "similarity": m.similarity} for m in matches]


class ListKnowledgeTool(BaseTool):
    name = ToolName.LIST_KNOWLEDGE
    description = "List everything stored in your knowledge base, most recent first."

    async def execute(self, args: Any, ctx: TurnContext) -> list[str]:
        entries = await ctx.retrieval.store.list_recent()
        return [e.knowledge for e in entries]


def default_tools() -> list[BaseTool]:
    return [
        GetWeatherTool(),
        CreateDocumentTool(),
        UpdateDocumentTool(),
        RequestSuggestionsTool(),
        AddKnowledgeTool(),
        GetKnowledgeTool(),
        GetInformationTool(),
        ListKnowledgeTool(),
    ]


class ToolRegistry:
    """Tools by name; failures come back as ``{"error": ...}`` results."""

    def __init__(self, tools: list[BaseTool] | None = None):
        self._tools: dict[ToolName, BaseTool] = {}
        for tool in default_tools() if tools is None else tools:
            self.register(tool)

    def register(self, tool: BaseTool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> BaseTool | None:
        try:
            return self._tools.get(ToolName(name))
        except ValueError:
            return None

    @property
    def names(self) -> list[ToolName]:
        return list(self._tools)

    def specs(self, active: Iterable[ToolName] | None = None) -> list[dict[str, Any]]:
        names = self.names if active is None else [n for n in active if n in self._tools]
        return [self._tools[n].openai_spec() for n in names]

    async def execute(self, name: str, args: dict[str, Any], ctx: TurnContext) -> Any:
        tool = self.get(name)
        if tool is None:
            return {"error": f"Unknown tool: {name}"}

        try:
            parsed = tool.validate(args)
            return await tool.execute(parsed, ctx)
        except UnsupportedKindError:
            raise
        except ToolExecutionError as e:
            logger.warning("Tool %s failed: %s", name, e)
            return {"error": str(e)}
        except (LLMError, WeatherServiceError, PersistenceError, SQLAlchemyError, OpenAIError, httpx.HTTPError) as e:
            logger.warning("Tool %s failed", name, exc_info=True)
            return {"error": f"{name} failed: {e}"}
