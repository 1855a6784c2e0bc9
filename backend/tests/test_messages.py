"""Tests for message conversion and response sanitizing."""

import json

from app.schemas import ClientMessage, ToolInvocation
from app.utils.messages import (
    StepOutput,
    get_most_recent_user_message,
    sanitize_response_messages,
    step_to_openai_messages,
    to_openai_messages,
)


def _invocation(state: str, result=None) -> ToolInvocation:
    return ToolInvocation(
        tool_call_id="call_1",
        tool_name="getWeather",
        state=state,
        args={"location": "Austin"},
        result=result,
    )


def test_most_recent_user_message():
    messages = [
        ClientMessage(role="user", content="first"),
        ClientMessage(role="assistant", content="reply"),
        ClientMessage(role="user", content="second"),
        ClientMessage(role="assistant", content="reply again"),
    ]
    assert get_most_recent_user_message(messages).content == "second"
    assert get_most_recent_user_message([ClientMessage(role="assistant", content="x")]) is None
    assert get_most_recent_user_message([]) is None


def test_client_message_accepts_wire_names():
    message = ClientMessage.model_validate({
        "role": "assistant",
        "content": "",
        "toolInvocations": [
            {"toolCallId": "call_9", "toolName": "getWeather", "state": "result", "args": {}, "result": {"ok": True}}
        ],
    })
    assert message.tool_invocations[0].tool_call_id == "call_9"


def test_to_openai_messages_expands_tool_results():
    history = [
        ClientMessage(role="user", content="Weather in Austin?"),
        ClientMessage(role="assistant", content="", tool_invocations=[_invocation("result", {"temp": 25})]),
        ClientMessage(role="assistant", content="It is 25°C."),
    ]

    converted = to_openai_messages(history)

    assert converted[0] == {"role": "user", "content": "Weather in Austin?"}
    assert converted[1]["role"] == "assistant"
    assert converted[1]["content"] is None
    assert converted[1]["tool_calls"][0]["id"] == "call_1"
    assert json.loads(converted[1]["tool_calls"][0]["function"]["arguments"]) == {"location": "Austin"}
    assert converted[2] == {"role": "tool", "tool_call_id": "call_1", "content": '{"temp": 25}'}
    assert converted[3] == {"role": "assistant", "content": "It is 25°C."}


def test_to_openai_messages_drops_unresolved_calls():
    history = [ClientMessage(role="assistant", content="", tool_invocations=[_invocation("call")])]
    assert to_openai_messages(history) == []


def test_step_to_openai_messages():
    step = StepOutput(text="Let me look.", tool_invocations=[_invocation("result", {"temp": 25})])
    messages = step_to_openai_messages(step)
    assert [m["role"] for m in messages] == ["assistant", "tool"]
    assert messages[0]["content"] == "Let me look."


def test_sanitize_drops_empty_and_unresolved():
    steps = [
        StepOutput(text="", tool_invocations=[_invocation("call")]),
        StepOutput(text="  ", tool_invocations=[]),
        StepOutput(text="", tool_invocations=[_invocation("result", {"temp": 25})]),
        StepOutput(text="It is warm.", tool_invocations=[]),
    ]

    sanitized = sanitize_response_messages(steps)

    assert len(sanitized) == 2
    assert sanitized[0].content == ""
    assert sanitized[0].tool_invocations[0].state == "result"
    assert sanitized[1].content == "It is warm."
    assert all(m.role == "assistant" for m in sanitized)
    assert len({m.id for m in sanitized}) == 2


def test_sanitize_attaches_reasoning_to_first_message():
    steps = [StepOutput(text="Answer one."), StepOutput(text="", tool_invocations=[_invocation("result", 1)])]

    sanitized = sanitize_response_messages(steps, reasoning="because")

    assert sanitized[0].reasoning == "because"
    assert sanitized[1].reasoning is None


def test_sanitize_keeps_reasoning_only_turn():
    sanitized = sanitize_response_messages([StepOutput(text="")], reasoning="thought about it")
    assert len(sanitized) == 1
    assert sanitized[0].reasoning == "thought about it"
    assert sanitize_response_messages([StepOutput(text="")]) == []
