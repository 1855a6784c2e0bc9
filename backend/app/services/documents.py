import re
import uuid
import logging
from abc import ABC, abstractmethod

import httpx
from openai import OpenAIError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.models import Document, DocumentKind
from app.services.llm_client import LLMClient, LLMError, TextDelta
from app.services.persistence import DocumentStore, PersistenceError
from app.services.prompts import KIND_PROMPTS, update_document_prompt
from app.services.retrieval import RetrievalService
from app.services.stream import DataStream, DataType, WordChunker

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^\s*```[\w+#.-]*[ \t]*\n?(.*?)\n?```\s*$", re.DOTALL)


class UnsupportedKindError(ValueError):
    """Raised when no document handler is registered for a kind."""
    pass


def strip_code_fences(content: str) -> str:
    match = _FENCE_RE.match(content or "")
    return match.group(1) if match else content


class DocumentHandler(ABC):
    """Creates and updates one kind of document."""

    kind: str

    def __init__(self, llm: LLMClient):
        self.llm = llm

    @abstractmethod
    async def on_create(self, title: str, stream: DataStream) -> str:
        pass

    @abstractmethod
    async def on_update(self, document: Document, description: str, stream: DataStream) -> str:
        pass


class StreamingTextHandler(DocumentHandler):
    """Generates content with the block model, streaming word-sized deltas."""

    delta_type = DataType.CONTENT_UPDATE

    async def _generate(self, system: str, prompt: str, stream: DataStream) -> str:
        settings = get_settings()
        chunker = WordChunker()
        parts: list[str] = []
        async for event in self.llm.stream_step(
            model=settings.block_model,
            system=system,
            messages=[{"role": "user", "content": prompt}],
        ):
            if not isinstance(event, TextDelta):
                continue
            parts.append(event.text)
            for chunk in chunker.push(event.text):
                await stream.write_data(self.delta_type, chunk)

        rest = chunker.flush()
        if rest:
            await stream.write_data(self.delta_type, rest)
        return self.postprocess("".join(parts))

    def postprocess(self, content: str) -> str:
        return content

    async def on_create(self, title: str, stream: DataStream) -> str:
        return await self._generate(KIND_PROMPTS[self.kind], title, stream)

    async def on_update(self, document: Document, description: str, stream: DataStream) -> str:
        return await self._generate(update_document_prompt(document.content, self.kind), description, stream)


class TextDocumentHandler(StreamingTextHandler):
    kind = DocumentKind.TEXT.value


class CodeDocumentHandler(StreamingTextHandler):
    kind = DocumentKind.CODE.value

    def postprocess(self, content: str) -> str:
        return strip_code_fences(content)


class SheetDocumentHandler(StreamingTextHandler):
    kind = DocumentKind.SHEET.value

    def postprocess(self, content: str) -> str:
        return strip_code_fences(content).strip()


class WidgetDocumentHandler(StreamingTextHandler):
    kind = DocumentKind.WIDGET.value
    delta_type = DataType.WIDGET_UPDATE


class ImageDocumentHandler(DocumentHandler):
    """Content is a base64 PNG from the image model."""

    kind = DocumentKind.IMAGE.value

    async def _draw(self, prompt: str, stream: DataStream) -> str:
        image = await self.llm.generate_image(prompt)
        await stream.write_data(DataType.CONTENT_UPDATE, image)
        return image

    async def on_create(self, title: str, stream: DataStream) -> str:
        return await self._draw(title, stream)

    async def on_update(self, document: Document, description: str, stream: DataStream) -> str:
        return await self._draw(description, stream)


def default_handlers(llm: LLMClient) -> list[DocumentHandler]:
    return [
        TextDocumentHandler(llm),
        CodeDocumentHandler(llm),
        ImageDocumentHandler(llm),
        SheetDocumentHandler(llm),
        WidgetDocumentHandler(llm),
    ]


class DocumentRegistry:
    """Kind-keyed handlers wrapped with versioned persistence and indexing."""

    def __init__(
        self,
        db: AsyncSession,
        llm: LLMClient,
        handlers: list[DocumentHandler] | None = None,
        retrieval: RetrievalService | None = None,
    ):
        self.store = DocumentStore(db)
        self.retrieval = retrieval or RetrievalService(db, llm)
        self._handlers: dict[str, DocumentHandler] = {}
        for handler in default_handlers(llm) if handlers is None else handlers:
            self.register(handler)

    def register(self, handler: DocumentHandler) -> None:
        self._handlers[handler.kind] = handler

    @property
    def kinds(self) -> list[str]:
        return list(self._handlers)

    def get(self, kind: str) -> DocumentHandler:
        handler = self._handlers.get(kind)
        if handler is None:
            raise UnsupportedKindError(f"No document handler found for kind: {kind}")
        return handler

    async def create_document(
        self,
        *,
        document_id: uuid.UUID,
        title: str,
        kind: str,
        user_id: uuid.UUID,
        stream: DataStream,
    ) -> Document:
        handler = self.get(kind)
        content = await handler.on_create(title, stream)
        document = await self.store.save_document(document_id, title, kind, content, user_id)
        await self._index(document)
        return document

    async def update_document(
        self,
        *,
        document: Document,
        description: str,
        user_id: uuid.UUID,
        stream: DataStream,
    ) -> Document:
        handler = self.get(document.kind)
        content = await handler.on_update(document, description, stream)
        updated = await self.store.save_document(document.id, document.title, document.kind, content, user_id)
        await self._index(updated)
        return updated

    async def _index(self, document: Document) -> None:
        # Read before indexing; a failed commit there expires the row
        document_id, title, content = document.id, document.title, document.content
        if document.kind == DocumentKind.IMAGE.value or not content:
            return
        try:
            entries = await self.retrieval.index_text(title, content)
            logger.info("Indexed document %s into %s knowledge entries", document_id, len(entries))
        except (LLMError, OpenAIError, httpx.HTTPError, PersistenceError) as e:
            logger.warning("Failed to index document %s: %s", document_id, e)
