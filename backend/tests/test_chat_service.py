"""Tests for the chat turn: steps, tools, streaming and persistence."""

import json
import uuid
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from app.schemas import ChatRequest, ClientMessage
from app.services.chat_service import GENERIC_ERROR, MAX_STEPS, ChatOwnershipError, ChatService
from app.services.documents import DocumentRegistry, TextDocumentHandler
from app.services.llm_client import LLMError, ReasoningDelta, StepFinish, TextDelta, ToolCallRequest
from app.services.persistence import ChatStore, KnowledgeStore, PersistenceError
from app.services.prompts import THERAPIST_PROMPT
from app.services.retrieval import RetrievalService
from app.services.stream import DataStream
from tests.fakes.fake_llm import FakeLLM


def _request(content: str, chat_id: uuid.UUID | None = None, model: str = "gpt-4o-mini") -> ChatRequest:
    return ChatRequest(
        id=chat_id or uuid.uuid4(),
        messages=[ClientMessage(role="user", content=content)],
        selected_chat_model=model,
    )


def _service(db_session, user_id, llm, **kwargs) -> ChatService:
    kwargs.setdefault("weather", MagicMock())
    return ChatService(db_session, user_id, llm=llm, **kwargs)


async def _run(service: ChatService, request: ChatRequest) -> list:
    stream = DataStream()
    await service.stream_turn(request, stream)
    assert stream.closed
    return [part async for part in stream]


def _text(parts) -> str:
    return "".join(p.content for p in parts if p.type == "text")


@pytest.mark.asyncio
async def test_plain_answer_is_streamed_and_stored(db_session, user_id):
    llm = FakeLLM(steps=[[TextDelta("Hello "), TextDelta("there, friend."), StepFinish("stop")]])
    request = _request("Hi!")

    parts = await _run(_service(db_session, user_id, llm), request)

    assert [p.type for p in parts] == ["text", "text", "text", "finish"]
    assert _text(parts) == "Hello there, friend."

    chat = await ChatStore(db_session).get_chat(request.id)
    assert chat.title == "A short title"
    assert chat.user_id == user_id

    stored = await ChatStore(db_session).list_messages(request.id)
    assert [(m.role, m.content) for m in stored] == [("user", "Hi!"), ("assistant", "Hello there, friend.")]
    assert stored[0].id == request.messages[0].id


@pytest.mark.asyncio
async def test_title_generated_once_per_chat(db_session, user_id):
    llm = FakeLLM()
    service = _service(db_session, user_id, llm)
    chat_id = uuid.uuid4()

    await _run(service, _request("First", chat_id))
    await _run(service, _request("Second", chat_id))

    assert len(llm.completions) == 1
    assert len(await ChatStore(db_session).list_messages(chat_id)) == 4


@pytest.mark.asyncio
async def test_weather_tool_round_trip(db_session, user_id):
    weather = MagicMock()
    weather.get_weather = AsyncMock(return_value={"location": "Austin", "current": {"temperature": 25}})
    llm = FakeLLM(
        steps=[
            [ToolCallRequest("call_1", "getWeather", '{"location": "Austin"}'), StepFinish("tool_calls")],
            [TextDelta("It is 25°C in Austin."), StepFinish("stop")],
        ]
    )
    request = _request("What's the weather in Austin?")

    parts = await _run(_service(db_session, user_id, llm, weather=weather), request)

    invocations = [p.tool_invocation for p in parts if p.type == "tool-invocation"]
    assert [i.state for i in invocations] == ["call", "result"]
    assert invocations[0].args == {"location": "Austin"}
    assert invocations[0].result is None
    assert invocations[1].result["current"]["temperature"] == 25
    assert _text(parts) == "It is 25°C in Austin."
    assert parts[-1].type == "finish"

    tool_message = llm.calls[1]["messages"][-1]
    assert tool_message["role"] == "tool"
    assert tool_message["tool_call_id"] == "call_1"
    assert json.loads(tool_message["content"])["location"] == "Austin"
    assert llm.calls[0]["temperature"] == 0.7
    assert {t["function"]["name"] for t in llm.calls[0]["tools"]} >= {"getWeather", "createDocument"}

    stored = await ChatStore(db_session).list_messages(request.id)
    assert [m.role for m in stored] == ["user", "assistant", "assistant"]
    assert stored[1].tool_invocations[0]["toolCallId"] == "call_1"
    assert stored[1].tool_invocations[0]["state"] == "result"
    assert stored[2].content == "It is 25°C in Austin."


@pytest.mark.asyncio
async def test_step_limit(db_session, user_id):
    looping = [
        [ToolCallRequest(f"call_{i}", "listAllKnowledgeBaseEntries", "{}"), StepFinish("tool_calls")]
        for i in range(MAX_STEPS + 3)
    ]
    llm = FakeLLM(steps=looping)
    request = _request("Keep listing")

    parts = await _run(_service(db_session, user_id, llm), request)

    assert len(llm.calls) == MAX_STEPS
    assert parts[-1].type == "finish"
    stored = await ChatStore(db_session).list_messages(request.id)
    assert len([m for m in stored if m.role == "assistant"]) == MAX_STEPS


@pytest.mark.asyncio
async def test_model_failure_becomes_single_error_event(db_session, user_id):
    llm = FakeLLM(steps=[[TextDelta("Partial "), LLMError("provider exploded")]])
    request = _request("Hello")

    parts = await _run(_service(db_session, user_id, llm), request)

    errors = [p for p in parts if p.type == "error"]
    assert len(errors) == 1
    assert errors[0].error == GENERIC_ERROR
    assert "provider exploded" not in errors[0].error
    assert not any(p.type == "finish" for p in parts)

    stored = await ChatStore(db_session).list_messages(request.id)
    assert [m.role for m in stored] == ["user"]


@pytest.mark.asyncio
async def test_reasoning_model_runs_without_tools(db_session, user_id):
    llm = FakeLLM(
        steps=[[ReasoningDelta("Weighing options."), TextDelta("Pick B."), StepFinish("stop")]]
    )
    request = _request("A or B?", model="openai-reasoning")

    parts = await _run(_service(db_session, user_id, llm), request)

    assert llm.calls[0]["tools"] is None
    assert llm.calls[0]["temperature"] is None
    assert llm.calls[0]["model"] == "o1-mini"
    assert [p.content for p in parts if p.type == "reasoning"] == ["Weighing options."]
    assert _text(parts) == "Pick B."

    stored = await ChatStore(db_session).list_messages(request.id)
    assert stored[1].reasoning == "Weighing options."
    assert stored[1].content == "Pick B."


@pytest.mark.asyncio
async def test_reasoning_model_tool_calls_are_refused(db_session, user_id):
    llm = FakeLLM(steps=[[ToolCallRequest("call_1", "getWeather", '{"location": "Oslo"}'), StepFinish("tool_calls")]])
    weather = MagicMock()
    weather.get_weather = AsyncMock()

    parts = await _run(
        _service(db_session, user_id, llm, weather=weather), _request("Weather?", model="openseek-reasoning")
    )

    result = [p.tool_invocation for p in parts if p.type == "tool-invocation"][-1]
    assert result.result == {"error": "Tool getWeather is not available"}
    weather.get_weather.assert_not_awaited()


@pytest.mark.asyncio
async def test_unsupported_document_kind_fails_the_turn(db_session, user_id):
    llm = FakeLLM(
        steps=[[ToolCallRequest("call_1", "createDocument", '{"title": "Budget", "kind": "sheet"}'), StepFinish("tool_calls")]]
    )
    retrieval = RetrievalService(db_session, llm)
    documents = DocumentRegistry(db_session, llm, handlers=[TextDocumentHandler(llm)], retrieval=retrieval)
    request = _request("Make a budget sheet")

    parts = await _run(_service(db_session, user_id, llm, documents=documents, retrieval=retrieval), request)

    assert parts[-1].type == "error"
    assert parts[-1].error == GENERIC_ERROR
    assert [m.role for m in await ChatStore(db_session).list_messages(request.id)] == ["user"]


@pytest.mark.asyncio
async def test_document_created_this_turn_cannot_be_updated(db_session, user_id):
    def update_created(kwargs):
        created = json.loads(kwargs["messages"][-1]["content"])
        args = json.dumps({"id": created["id"], "description": "Make it longer"})
        return [ToolCallRequest("call_2", "updateDocument", args), StepFinish("tool_calls")]

    llm = FakeLLM(
        steps=[
            [ToolCallRequest("call_1", "createDocument", '{"title": "Haiku", "kind": "text"}'), StepFinish("tool_calls")],
            [TextDelta("Old pond, frog jumps in. "), StepFinish("stop")],
            update_created,
            [TextDelta("Here is your haiku."), StepFinish("stop")],
        ]
    )
    request = _request("Write a haiku")

    parts = await _run(_service(db_session, user_id, llm), request)

    results = [p.tool_invocation for p in parts if p.type == "tool-invocation" and p.tool_invocation.state == "result"]
    assert results[0].tool_name == "createDocument"
    assert "error" in results[1].result
    assert "just created" in results[1].result["error"]
    assert _text(parts) == "Here is your haiku."

    data_kinds = [p.data.type.value for p in parts if p.type == "data"]
    assert data_kinds[:4] == ["kind", "title", "clear", "id"]
    assert data_kinds.count("finish") == 1


@pytest.mark.asyncio
async def test_persist_failure_is_retried_then_swallowed(db_session, user_id):
    llm = FakeLLM()
    service = _service(db_session, user_id, llm)
    request = _request("Hello")
    turn = await service.prepare_turn(request)

    service.chats.save_messages = AsyncMock(side_effect=PersistenceError("database down"))
    stream = DataStream()
    await service.run_turn(turn, stream)
    await stream.close()
    parts = [p async for p in stream]

    assert service.chats.save_messages.await_count == 2
    assert parts[-1].type == "finish"
    assert not any(p.type == "error" for p in parts)


@pytest.mark.asyncio
async def test_personality_prefix_selects_persona(db_session, user_id):
    llm = FakeLLM()
    await _run(_service(db_session, user_id, llm), _request("Doctor, I can't sleep."))
    assert llm.calls[0]["system"].startswith(THERAPIST_PROMPT)


@pytest.mark.asyncio
async def test_relevant_knowledge_is_injected(db_session, user_id):
    llm = FakeLLM()
    await RetrievalService(db_session, llm).add_entry("The standup is at 10am.")

    await _run(_service(db_session, user_id, llm), _request("When is the standup?"))

    assert "- The standup is at 10am." in llm.calls[0]["system"]


@pytest.mark.asyncio
async def test_foreign_chat_is_rejected(db_session, user_id):
    chat_id = uuid.uuid4()
    await ChatStore(db_session).create_chat(chat_id, uuid.uuid4(), "Not yours")
    service = _service(db_session, user_id, FakeLLM())

    with pytest.raises(ChatOwnershipError):
        await service.prepare_turn(_request("Hi", chat_id))


@pytest.mark.asyncio
async def test_request_without_user_message(db_session, user_id):
    service = _service(db_session, user_id, FakeLLM())
    request = ChatRequest(id=uuid.uuid4(), messages=[ClientMessage(role="assistant", content="Hi")])

    with pytest.raises(ValueError):
        await service.prepare_turn(request)


def _fail_next_commit(monkeypatch, db_session):
    real_commit = db_session.commit
    state = {"failed": False}

    async def commit():
        if not state["failed"]:
            state["failed"] = True
            raise OperationalError("INSERT INTO knowledge_base", {}, Exception("disk I/O error"))
        await real_commit()

    monkeypatch.setattr(db_session, "commit", commit)
    return state


@pytest.mark.asyncio
async def test_tool_commit_failure_does_not_break_the_turn(db_session, user_id, monkeypatch):
    llm = FakeLLM(
        steps=[
            [
                ToolCallRequest("call_1", "addKnowledgeBaseEntry", '{"knowledge": "The office wifi is guest-5."}'),
                StepFinish("tool_calls"),
            ],
            [TextDelta("Noted."), StepFinish("stop")],
        ]
    )
    service = _service(db_session, user_id, llm)
    request = _request("Remember the wifi password.")
    turn = await service.prepare_turn(request)

    state = _fail_next_commit(monkeypatch, db_session)
    stream = DataStream()
    await service.run_turn(turn, stream)
    await stream.close()
    parts = [p async for p in stream]

    assert state["failed"]
    results = [p.tool_invocation for p in parts if p.type == "tool-invocation" and p.tool_invocation.state == "result"]
    assert "error" in results[0].result
    assert _text(parts) == "Noted."
    assert parts[-1].type == "finish"
    assert not any(p.type == "error" for p in parts)

    stored = await ChatStore(db_session).list_messages(request.id)
    assert [m.role for m in stored] == ["user", "assistant", "assistant"]
    assert await KnowledgeStore(db_session).list_recent() == []


@pytest.mark.asyncio
async def test_cancelled_turn_keeps_completed_side_effects(db_session, user_id):
    started = asyncio.Event()

    async def hang(location):
        started.set()
        await asyncio.Event().wait()

    weather = MagicMock()
    weather.get_weather = hang
    llm = FakeLLM(
        steps=[
            [
                ToolCallRequest("call_1", "addKnowledgeBaseEntry", '{"knowledge": "Lunch is at noon."}'),
                ToolCallRequest("call_2", "getWeather", '{"location": "Oslo"}'),
                StepFinish("tool_calls"),
            ],
        ]
    )
    service = _service(db_session, user_id, llm, weather=weather)
    request = _request("Note lunch time and check Oslo weather.")
    stream = DataStream()

    task = asyncio.create_task(service.stream_turn(request, stream))
    await asyncio.wait_for(started.wait(), timeout=1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert stream.closed
    parts = [p async for p in stream]
    assert not any(p.type in ("error", "finish") for p in parts)

    stored = await ChatStore(db_session).list_messages(request.id)
    assert [m.role for m in stored] == ["user"]
    entries = await KnowledgeStore(db_session).list_recent()
    assert [e.knowledge for e in entries] == ["Lunch is at noon."]
