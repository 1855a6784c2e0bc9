"""In-memory stand-in for the model provider client."""

import re
from typing import Any, Callable

from app.models import EMBEDDING_DIMENSIONS
from app.services.llm_client import StepFinish, TextDelta

Step = list | Callable[[dict[str, Any]], list]


def fake_embed(text: str) -> list[float]:
    """Bag-of-words vector: identical texts score 1.0, disjoint texts 0.0."""
    vec = [0.0] * EMBEDDING_DIMENSIONS
    for word in re.findall(r"\w+", text.lower()):
        vec[sum(ord(c) * (i + 1) for i, c in enumerate(word)) % EMBEDDING_DIMENSIONS] += 1.0
    return vec


class FakeLLM:
    """Scripted model steps.

    Each entry of ``steps`` is a list of step events, or a callable that gets
    the ``stream_step`` kwargs and returns that list. Exceptions inside a list
    are raised when reached. Once the script runs out every step answers
    with plain text.
    """

    def __init__(
        self,
        steps: list[Step] | None = None,
        completion: str | Callable[[dict[str, Any]], str] = "A short title",
        image: str = "aW1hZ2U=",
    ):
        self.steps = list(steps or [])
        self.completion = completion
        self.image = image
        self.calls: list[dict[str, Any]] = []
        self.completions: list[dict[str, Any]] = []
        self.embedded: list[str] = []
        self.images: list[str] = []

    async def stream_step(self, **kwargs):
        self.calls.append(kwargs)
        step = self.steps.pop(0) if self.steps else [TextDelta("Done."), StepFinish("stop")]
        events = step(kwargs) if callable(step) else step
        for event in events:
            if isinstance(event, BaseException):
                raise event
            yield event

    async def complete(self, **kwargs) -> str:
        self.completions.append(kwargs)
        if callable(self.completion):
            return self.completion(kwargs)
        return self.completion

    async def embed_many(self, texts: list[str], *, model: str | None = None) -> list[list[float]]:
        self.embedded.extend(texts)
        return [fake_embed(t) for t in texts]

    async def generate_image(self, prompt: str, **kwargs) -> str:
        self.images.append(prompt)
        return self.image
