import asyncio
import re
from enum import Enum
from typing import Any, AsyncIterator, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from app.schemas import ToolInvocation

SSE_DONE = "data: [DONE]\n\n"


class DataType(str, Enum):
    ID = "id"
    TITLE = "title"
    KIND = "kind"
    CLEAR = "clear"
    FINISH = "finish"
    CONTENT_UPDATE = "content-update"
    WIDGET_UPDATE = "widget-update"
    SUGGESTION = "suggestion"


class DataPayload(BaseModel):
    type: DataType
    content: Any = ""


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    content: str


class ReasoningPart(BaseModel):
    type: Literal["reasoning"] = "reasoning"
    content: str


class DataPart(BaseModel):
    type: Literal["data"] = "data"
    data: DataPayload


class ToolInvocationPart(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["tool-invocation"] = "tool-invocation"
    tool_invocation: ToolInvocation = Field(alias="toolInvocation")


class ErrorPart(BaseModel):
    type: Literal["error"] = "error"
    error: str


class FinishPart(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["finish"] = "finish"
    finish_reason: str = Field(default="stop", alias="finishReason")


StreamPart = Union[TextPart, ReasoningPart, DataPart, ToolInvocationPart, ErrorPart, FinishPart]


class StreamClosedError(RuntimeError):
    """Raised when writing to a stream that has already been closed."""
    pass


def encode_sse(part: StreamPart) -> str:
    return f"data: {part.model_dump_json(by_alias=True, exclude_none=True)}\n\n"


class DataStream:
    """Single-producer, single-consumer channel of stream parts.

    The turn writes parts in generation order; the HTTP response iterates
    them until ``close()``.
    """

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, part: StreamPart) -> None:
        if self._closed:
            raise StreamClosedError("stream is closed")
        await self._queue.put(part)

    async def write_text(self, text: str) -> None:
        await self.write(TextPart(content=text))

    async def write_reasoning(self, text: str) -> None:
        await self.write(ReasoningPart(content=text))

    async def write_data(self, type: DataType, content: Any = "") -> None:
        await self.write(DataPart(data=DataPayload(type=type, content=content)))

    async def write_tool_invocation(self, invocation: ToolInvocation) -> None:
        await self.write(ToolInvocationPart(tool_invocation=invocation))

    async def write_error(self, message: str) -> None:
        await self.write(ErrorPart(error=message))

    async def write_finish(self, finish_reason: str = "stop") -> None:
        await self.write(FinishPart(finish_reason=finish_reason))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(self._CLOSED)

    async def __aiter__(self) -> AsyncIterator[StreamPart]:
        while True:
            part = await self._queue.get()
            if part is self._CLOSED:
                return
            yield part


class WordChunker:
    """Re-segment streamed text into word-sized chunks.

    A chunk is a word plus its trailing whitespace; whatever is left without
    trailing whitespace waits in the buffer until ``flush()``.
    """

    _WORD = re.compile(r"\s*\S+\s+")

    def __init__(self) -> None:
        self._buf = ""

    def push(self, text: str) -> list[str]:
        self._buf += text
        chunks: list[str] = []
        while True:
            match = self._WORD.match(self._buf)
            if not match:
                break
            chunks.append(match.group(0))
            self._buf = self._buf[match.end():]
        return chunks

    def flush(self) -> str:
        rest, self._buf = self._buf, ""
        return rest
