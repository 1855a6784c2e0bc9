import json
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Union

import httpx
from openai import AsyncOpenAI

from app.core.config import get_settings

logger = logging.getLogger(__name__)

INITIAL_RETRY_DELAY = 1.0
_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class LLMError(RuntimeError):
    """Raised when the model provider cannot produce a response."""
    pass


class _RetryableStatus(Exception):
    def __init__(self, status_code: int):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


@dataclass
class TextDelta:
    text: str


@dataclass
class ReasoningDelta:
    text: str


@dataclass
class ToolCallRequest:
    id: str
    name: str
    arguments: str


@dataclass
class StepFinish:
    finish_reason: str | None = None


StepEvent = Union[TextDelta, ReasoningDelta, ToolCallRequest, StepFinish]


def _partial_suffix(buf: str, tag: str) -> int:
    for k in range(min(len(tag) - 1, len(buf)), 0, -1):
        if buf.endswith(tag[:k]):
            return k
    return 0


class ThinkTagSplitter:
    """Route ``<think>...</think>`` spans of streamed content to reasoning."""

    OPEN = "<think>"
    CLOSE = "</think>"

    def __init__(self) -> None:
        self._in_think = False
        self._buf = ""

    def feed(self, text: str) -> list[tuple[bool, str]]:
        self._buf += text
        out: list[tuple[bool, str]] = []
        while self._buf:
            tag = self.CLOSE if self._in_think else self.OPEN
            idx = self._buf.find(tag)
            if idx >= 0:
                if idx:
                    out.append((self._in_think, self._buf[:idx]))
                self._buf = self._buf[idx + len(tag):]
                self._in_think = not self._in_think
                continue
            keep = _partial_suffix(self._buf, tag)
            emit = self._buf[: len(self._buf) - keep]
            if emit:
                out.append((self._in_think, emit))
            self._buf = self._buf[len(self._buf) - keep:]
            break
        return out

    def flush(self) -> list[tuple[bool, str]]:
        if not self._buf:
            return []
        out = [(self._in_think, self._buf)]
        self._buf = ""
        return out


class LLMClient:
    """Client for an OpenAI-compatible provider.

    Chat completions are streamed over raw SSE with httpx so partial tool-call
    deltas can be assembled as they arrive; embeddings and images go through
    the OpenAI SDK.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        max_retries: int | None = None,
        openai_client: AsyncOpenAI | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.openai_api_base).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.max_retries = max(1, max_retries or settings.chat_openai_max_retries)
        self.stream_timeout = settings.chat_stream_timeout_seconds
        self.request_timeout = settings.chat_openai_timeout_seconds
        self._openai = openai_client

    @property
    def openai(self) -> AsyncOpenAI:
        if self._openai is None:
            self._openai = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.request_timeout,
                max_retries=self.max_retries,
            )
        return self._openai

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise LLMError("OPENAI_API_KEY is not configured")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def stream_step(
        self,
        *,
        model: str,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = 0.7,
    ) -> AsyncIterator[StepEvent]:
        """Run one model step and yield its text, reasoning and tool-call events."""
        url = f"{self.base_url}/chat/completions"
        headers = self._headers()
        payload: dict[str, Any] = {
            "model": model,
            "messages": [{"role": "system", "content": system}, *messages],
            "stream": True,
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        delay = INITIAL_RETRY_DELAY
        attempt = 0
        while attempt < self.max_retries:
            try:
                async with httpx.AsyncClient(timeout=self.stream_timeout) as client:
                    async with client.stream("POST", url, headers=headers, json=payload) as resp:
                        if resp.status_code in (400, 422) and payload.get("tools"):
                            await resp.aread()
                            logger.warning(
                                "Provider rejected tool calling for model=%s (HTTP %s), retrying without tools",
                                model, resp.status_code,
                            )
                            # Dropping tools is a fallback, not a retry
                            payload.pop("tools", None)
                            payload.pop("tool_choice", None)
                            continue
                        if resp.status_code in _RETRYABLE_STATUS:
                            await resp.aread()
                            raise _RetryableStatus(resp.status_code)
                        resp.raise_for_status()

                        async for event in self._parse_stream(resp):
                            yield event
                        return
            except (httpx.ConnectError, httpx.ConnectTimeout, _RetryableStatus) as e:
                attempt += 1
                if attempt < self.max_retries:
                    logger.warning(
                        "LLM stream failed (attempt %s/%s): %s. Retrying in %.1fs...",
                        attempt, self.max_retries, e, delay,
                    )
                    await asyncio.sleep(delay)
                    delay *= 2
                    continue
                raise LLMError(f"Model request failed after {self.max_retries} attempts: {e}") from e
            except httpx.HTTPStatusError as e:
                raise LLMError(f"Model request failed: HTTP {e.response.status_code}") from e

        raise LLMError("Model request failed: retries exhausted")

    async def _parse_stream(self, resp: httpx.Response) -> AsyncIterator[StepEvent]:
        tool_calls_by_index: dict[int, dict[str, str]] = {}
        splitter = ThinkTagSplitter()
        finish_reason: str | None = None

        async for line in resp.aiter_lines():
            if not line.startswith("data: "):
                continue
            data_str = line[6:].strip()
            if data_str == "[DONE]":
                break

            try:
                chunk = json.loads(data_str)
            except json.JSONDecodeError:
                continue

            choices = chunk.get("choices") or []
            if not choices:
                continue

            delta = choices[0].get("delta") or {}
            finish_reason = choices[0].get("finish_reason") or finish_reason

            reasoning = delta.get("reasoning_content") or delta.get("reasoning")
            if reasoning:
                yield ReasoningDelta(reasoning)

            token = delta.get("content")
            if token:
                for is_reasoning, text in splitter.feed(token):
                    yield ReasoningDelta(text) if is_reasoning else TextDelta(text)

            for tc in delta.get("tool_calls") or []:
                idx = tc.get("index", 0)
                entry = tool_calls_by_index.setdefault(idx, {"id": "", "name": "", "arguments": ""})
                if tc.get("id"):
                    entry["id"] = tc["id"]
                fn = tc.get("function") or {}
                if fn.get("name"):
                    entry["name"] = fn["name"]
                if fn.get("arguments"):
                    entry["arguments"] += fn["arguments"]

        for is_reasoning, text in splitter.flush():
            yield ReasoningDelta(text) if is_reasoning else TextDelta(text)

        for idx in sorted(tool_calls_by_index):
            entry = tool_calls_by_index[idx]
            if not entry["name"]:
                logger.warning("Dropping tool call without a name at index %s", idx)
                continue
            yield ToolCallRequest(
                id=entry["id"] or f"call_{idx}",
                name=entry["name"],
                arguments=entry["arguments"] or "{}",
            )

        yield StepFinish(finish_reason)

    async def complete(
        self,
        *,
        model: str,
        system: str,
        prompt: str,
        json_mode: bool = False,
        temperature: float | None = 0.2,
    ) -> str:
        """Single non-streaming completion, returns the message text."""
        url = f"{self.base_url}/chat/completions"
        headers = self._headers()
        payload: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        delay = INITIAL_RETRY_DELAY
        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(timeout=self.request_timeout) as client:
                    resp = await client.post(url, headers=headers, json=payload)
                if resp.status_code in _RETRYABLE_STATUS:
                    raise _RetryableStatus(resp.status_code)
                resp.raise_for_status()
                data = resp.json()
                break
            except (httpx.ConnectError, httpx.ConnectTimeout, _RetryableStatus) as e:
                if attempt < self.max_retries - 1:
                    logger.warning(
                        "LLM completion failed (attempt %s/%s): %s. Retrying in %.1fs...",
                        attempt + 1, self.max_retries, e, delay,
                    )
                    await asyncio.sleep(delay)
                    delay *= 2
                    continue
                raise LLMError(f"Model request failed after {self.max_retries} attempts: {e}") from e
            except httpx.HTTPStatusError as e:
                raise LLMError(f"Model request failed: HTTP {e.response.status_code}") from e
        else:
            raise LLMError("Model request failed: retries exhausted")

        try:
            content = data["choices"][0]["message"].get("content") or ""
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise LLMError("Malformed completion response") from e
        return content.strip()

    async def embed_many(self, texts: list[str], *, model: str | None = None) -> list[list[float]]:
        if not texts:
            return []
        settings = get_settings()
        response = await self.openai.embeddings.create(
            model=model or settings.embedding_model,
            input=texts,
        )
        return [item.embedding for item in response.data]

    async def generate_image(self, prompt: str, *, model: str | None = None, size: str = "1024x1024") -> str:
        """Generate an image and return it base64-encoded."""
        settings = get_settings()
        response = await self.openai.images.generate(
            model=model or settings.image_model,
            prompt=prompt,
            n=1,
            size=size,
            response_format="b64_json",
        )
        image = response.data[0].b64_json if response.data else None
        if not image:
            raise LLMError("Image model returned no data")
        return image
