"""Conversion between client messages, provider messages and stored rows."""

import json
from dataclasses import dataclass, field
from typing import Any

from app.schemas import ClientMessage, ToolInvocation


@dataclass
class StepOutput:
    """What the model produced in one step of a turn."""

    text: str = ""
    tool_invocations: list[ToolInvocation] = field(default_factory=list)


def get_most_recent_user_message(messages: list[ClientMessage]) -> ClientMessage | None:
    for message in reversed(messages):
        if message.role == "user":
            return message
    return None


def _tool_call(invocation: ToolInvocation) -> dict[str, Any]:
    return {
        "id": invocation.tool_call_id,
        "type": "function",
        "function": {
            "name": invocation.tool_name,
            "arguments": json.dumps(invocation.args, ensure_ascii=False),
        },
    }


def _tool_result(invocation: ToolInvocation) -> dict[str, Any]:
    return {
        "role": "tool",
        "tool_call_id": invocation.tool_call_id,
        "content": json.dumps(invocation.result, ensure_ascii=False, default=str),
    }


def to_openai_messages(messages: list[ClientMessage]) -> list[dict[str, Any]]:
    """Flatten client messages into chat-completions messages.

    Assistant tool invocations without a result are dropped; resolved ones
    become an assistant ``tool_calls`` message followed by ``tool`` results.
    """
    converted: list[dict[str, Any]] = []
    for message in messages:
        if message.role != "assistant":
            converted.append({"role": message.role, "content": message.content})
            continue

        resolved = [t for t in message.tool_invocations if t.state == "result"]
        if resolved:
            converted.append({
                "role": "assistant",
                "content": message.content or None,
                "tool_calls": [_tool_call(t) for t in resolved],
            })
            converted.extend(_tool_result(t) for t in resolved)
        elif message.content:
            converted.append({"role": "assistant", "content": message.content})
    return converted


def step_to_openai_messages(step: StepOutput) -> list[dict[str, Any]]:
    """Messages to append to the history after a step that called tools."""
    return to_openai_messages([
        ClientMessage(role="assistant", content=step.text, tool_invocations=step.tool_invocations)
    ])


def sanitize_response_messages(
    steps: list[StepOutput], reasoning: str | None = None
) -> list[ClientMessage]:
    """Turn step outputs into assistant messages worth storing.

    Tool calls without a result and empty text are dropped, reasoning goes on
    the first surviving message, and every message gets a fresh id.
    """
    sanitized: list[ClientMessage] = []
    reasoning = reasoning or None
    for step in steps:
        text = step.text.strip()
        invocations = [t for t in step.tool_invocations if t.state == "result"]
        if not text and not invocations and not (reasoning and not sanitized):
            continue
        sanitized.append(
            ClientMessage(
                role="assistant",
                content=step.text if text else "",
                reasoning=None if sanitized else reasoning,
                tool_invocations=invocations,
            )
        )
    return sanitized
