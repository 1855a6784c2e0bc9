import re
import uuid
import asyncio
import logging
from dataclasses import dataclass, field

import httpx
from openai import OpenAIError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.models import Message, MessageRole
from app.schemas import ChatRequest, ClientMessage, ToolInvocation
from app.services.documents import DocumentRegistry
from app.services.llm_client import (
    LLMClient, LLMError, ReasoningDelta, TextDelta, ToolCallRequest,
)
from app.services.model_catalog import ChatModel, resolve_chat_model
from app.services.persistence import ChatStore, PersistenceError
from app.services.prompts import (
    Personality, TITLE_PROMPT, classify_personality, compose_prompt, with_knowledge_context,
)
from app.services.retrieval import RetrievalService
from app.services.stream import DataStream, WordChunker
from app.services.tools import (
    ToolExecutionError, ToolName, ToolRegistry, TurnContext, parse_tool_arguments,
)
from app.services.weather import WeatherService
from app.utils.messages import (
    StepOutput,
    get_most_recent_user_message,
    sanitize_response_messages,
    step_to_openai_messages,
    to_openai_messages,
)

logger = logging.getLogger(__name__)

MAX_STEPS = 5
GENERIC_ERROR = "Oops, an error occurred!"
TITLE_MAX_CHARS = 80


class ChatOwnershipError(PermissionError):
    """Raised when a user touches a chat owned by someone else."""
    pass


@dataclass
class PreparedTurn:
    # Plain id: a rollback inside a tool expires loaded rows
    chat_id: uuid.UUID
    user_message: ClientMessage
    history: list[ClientMessage]
    model: ChatModel
    personality: Personality
    system_prompt: str


@dataclass
class TurnOutput:
    steps: list[StepOutput] = field(default_factory=list)
    reasoning: str = ""
    created_document_ids: set[uuid.UUID] = field(default_factory=set)


def fallback_title(text: str) -> str:
    collapsed = re.sub(r"\s+", " ", text or "").strip()
    return collapsed[:TITLE_MAX_CHARS] or "New chat"


class ChatService:
    """Runs one chat turn: prepare, stream model steps and tools, persist."""

    def __init__(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        *,
        llm: LLMClient | None = None,
        tools: ToolRegistry | None = None,
        retrieval: RetrievalService | None = None,
        documents: DocumentRegistry | None = None,
        weather: WeatherService | None = None,
    ):
        self.db = db
        self.user_id = user_id
        self.llm = llm or LLMClient()
        self.chats = ChatStore(db)
        self.retrieval = retrieval or RetrievalService(db, self.llm)
        self.documents = documents or DocumentRegistry(db, self.llm, retrieval=self.retrieval)
        self.weather = weather or WeatherService()
        self.tools = tools or ToolRegistry()

    async def generate_title(self, text: str) -> str:
        settings = get_settings()
        try:
            title = await self.llm.complete(
                model=settings.title_model,
                system=TITLE_PROMPT,
                prompt=text,
            )
        except (LLMError, httpx.HTTPError) as e:
            logger.warning("Title generation failed, using message text: %s", e)
            return fallback_title(text)
        title = title.strip().strip('"').replace(":", "")
        return fallback_title(title) if title else fallback_title(text)

    async def _knowledge_snippets(self, query: str) -> list[str]:
        try:
            matches = await self.retrieval.find_relevant(query)
        except (LLMError, OpenAIError, httpx.HTTPError, PersistenceError) as e:
            logger.warning("Knowledge lookup skipped: %s", e)
            return []
        return [m.entry.knowledge for m in matches]

    async def prepare_turn(self, request: ChatRequest) -> PreparedTurn:
        """Resolve the chat, store the user message and build the system prompt."""
        settings = get_settings()
        user_message = get_most_recent_user_message(request.messages)
        if user_message is None:
            raise ValueError("No user message found")

        chat = await self.chats.get_chat(request.id)
        if chat is None:
            title = await self.generate_title(user_message.content)
            chat = await self.chats.create_chat(request.id, self.user_id, title)
            logger.info("Created chat %s for user %s", chat.id, self.user_id)
        elif chat.user_id != self.user_id:
            raise ChatOwnershipError(f"Chat {chat.id} belongs to another user")
        chat_id = chat.id

        await self.chats.save_messages([
            Message(
                id=user_message.id,
                chat_id=chat_id,
                role=MessageRole.USER.value,
                content=user_message.content,
            )
        ])

        model = resolve_chat_model(request.selected_chat_model)
        personality = classify_personality(user_message.content)
        prompt = compose_prompt(model.id, personality)
        if settings.chat_inject_knowledge:
            prompt = with_knowledge_context(prompt, await self._knowledge_snippets(user_message.content))

        return PreparedTurn(
            chat_id=chat_id,
            user_message=user_message,
            history=list(request.messages),
            model=model,
            personality=personality,
            system_prompt=prompt,
        )

    def active_tools(self, model: ChatModel) -> list[ToolName]:
        if model.is_reasoning:
            return []
        return self.tools.names

    async def _invoke_tool(
        self,
        call: ToolCallRequest,
        ctx: TurnContext,
        active: list[ToolName],
    ) -> ToolInvocation:
        try:
            args = parse_tool_arguments(call.arguments)
            problem = None
        except ToolExecutionError as e:
            args, problem = {}, str(e)

        await ctx.stream.write_tool_invocation(
            ToolInvocation(tool_call_id=call.id, tool_name=call.name, state="call", args=args)
        )

        if problem is not None:
            result = {"error": problem}
        elif call.name not in [t.value for t in active]:
            result = {"error": f"Tool {call.name} is not available"}
        else:
            logger.info("Executing tool %s (%s)", call.name, call.id)
            result = await self.tools.execute(call.name, args, ctx)

        invocation = ToolInvocation(
            tool_call_id=call.id, tool_name=call.name, state="result", args=args, result=result
        )
        await ctx.stream.write_tool_invocation(invocation)
        return invocation

    async def run_steps(self, turn: PreparedTurn, stream: DataStream) -> TurnOutput:
        """Drive up to ``MAX_STEPS`` model steps, executing tool calls between them."""
        active = self.active_tools(turn.model)
        tool_specs = self.tools.specs(active)
        messages = to_openai_messages(turn.history)
        ctx = TurnContext(
            user_id=self.user_id,
            stream=stream,
            llm=self.llm,
            documents=self.documents,
            retrieval=self.retrieval,
            weather=self.weather,
        )
        output = TurnOutput(created_document_ids=ctx.created_document_ids)
        reasoning: list[str] = []

        for step_number in range(1, MAX_STEPS + 1):
            step = StepOutput()
            calls: list[ToolCallRequest] = []
            chunker = WordChunker()

            async for event in self.llm.stream_step(
                model=turn.model.provider_model,
                system=turn.system_prompt,
                messages=messages,
                tools=tool_specs or None,
                temperature=None if turn.model.is_reasoning else 0.7,
            ):
                if isinstance(event, TextDelta):
                    step.text += event.text
                    for chunk in chunker.push(event.text):
                        await stream.write_text(chunk)
                elif isinstance(event, ReasoningDelta):
                    reasoning.append(event.text)
                    await stream.write_reasoning(event.text)
                elif isinstance(event, ToolCallRequest):
                    calls.append(event)

            rest = chunker.flush()
            if rest:
                await stream.write_text(rest)

            for call in calls:
                step.tool_invocations.append(await self._invoke_tool(call, ctx, active))
            output.steps.append(step)

            if not calls:
                break
            messages.extend(step_to_openai_messages(step))
            if step_number == MAX_STEPS:
                logger.info("Chat %s reached the %s step limit", turn.chat_id, MAX_STEPS)

        output.reasoning = "".join(reasoning)
        return output

    async def persist_response(self, chat_id: uuid.UUID, output: TurnOutput) -> list[ClientMessage]:
        """Store sanitized assistant messages; failures are retried then logged."""
        sanitized = sanitize_response_messages(output.steps, output.reasoning)
        if not sanitized:
            logger.info("Turn on chat %s produced nothing to store", chat_id)
            return []

        attempts = max(1, get_settings().chat_persist_attempts)
        for attempt in range(1, attempts + 1):
            rows = [
                Message(
                    id=m.id,
                    chat_id=chat_id,
                    role=MessageRole.ASSISTANT.value,
                    content=m.content,
                    reasoning=m.reasoning,
                    tool_invocations=[
                        t.model_dump(by_alias=True, mode="json") for t in m.tool_invocations
                    ] or None,
                )
                for m in sanitized
            ]
            try:
                await self.chats.save_messages(rows)
                return sanitized
            except PersistenceError as e:
                logger.warning(
                    "Saving assistant messages for chat %s failed (attempt %s/%s): %s",
                    chat_id, attempt, attempts, e,
                )
        logger.error("Failed to save chat %s after %s attempts", chat_id, attempts)
        return sanitized

    async def run_turn(self, turn: PreparedTurn, stream: DataStream) -> list[ClientMessage]:
        output = await self.run_steps(turn, stream)
        saved = await self.persist_response(turn.chat_id, output)
        await stream.write_finish()
        return saved

    async def stream_turn(self, request: ChatRequest, stream: DataStream) -> None:
        """Full turn against ``stream``; failures become one in-band error."""
        try:
            turn = await self.prepare_turn(request)
            await self.run_turn(turn, stream)
        except asyncio.CancelledError:
            logger.info("Turn on chat %s cancelled", request.id)
            raise
        except Exception:
            logger.exception("Failed to stream chat %s", request.id)
            await stream.write_error(GENERIC_ERROR)
        finally:
            await stream.close()
