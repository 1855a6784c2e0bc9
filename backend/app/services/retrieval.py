import re
import uuid
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence, TypeVar

import httpx
import numpy as np
from openai import OpenAIError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.models import KnowledgeBaseEntry
from app.services.llm_client import LLMClient, LLMError
from app.services.persistence import KnowledgeStore, PersistenceError

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.5
MAX_RESULTS = 4
EMBEDDING_BATCH_SIZE = 256

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")

T = TypeVar("T")


@dataclass
class ScoredEntry:
    entry: KnowledgeBaseEntry
    similarity: float


def split_sentences(text: str) -> list[str]:
    """Split text on ``.``, ``!`` or ``?`` followed by whitespace."""
    parts = _SENTENCE_BOUNDARY.split((text or "").strip())
    return [p.strip() for p in parts if p and p.strip()]


def cosine_similarity(a: Any, b: Any) -> float:
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def rank(query_vec: Any, candidates: Sequence[tuple[T, Any]]) -> list[tuple[T, float]]:
    """Score candidates against the query vector, best first."""
    if not candidates:
        return []
    matrix = np.asarray([vec for _, vec in candidates], dtype=float)
    query = np.asarray(query_vec, dtype=float)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(norms == 0, 0.0, matrix @ query / norms)
    order = np.argsort(-scores, kind="stable")
    return [(candidates[i][0], float(scores[i])) for i in order]


class RetrievalService:
    """Embeds text and searches the knowledge base by cosine similarity."""

    def __init__(self, db: AsyncSession, llm: LLMClient | None = None):
        self.store = KnowledgeStore(db)
        self.llm = llm or LLMClient()

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_many([text.replace("\n", " ")])
        return vectors[0]

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for start in range(0, len(texts), EMBEDDING_BATCH_SIZE):
            vectors.extend(await self.llm.embed_many(texts[start:start + EMBEDDING_BATCH_SIZE]))
        return vectors

    async def backfill(self) -> int:
        """Compute embeddings for entries stored without one.

        Each batch is committed on its own so progress survives a later
        provider failure.
        """
        missing = await self.store.list_missing_embeddings()
        if not missing:
            return 0
        filled = 0
        for start in range(0, len(missing), EMBEDDING_BATCH_SIZE):
            batch = missing[start:start + EMBEDDING_BATCH_SIZE]
            vectors = await self.llm.embed_many([e.knowledge for e in batch])
            await self.store.set_embeddings(batch, vectors)
            filled += len(batch)
        logger.info("Backfilled %s knowledge embeddings", filled)
        return filled

    async def find_relevant(self, query: str, limit: int = MAX_RESULTS) -> list[ScoredEntry]:
        try:
            await self.backfill()
        except (LLMError, OpenAIError, httpx.HTTPError, PersistenceError) as e:
            # Already embedded entries stay searchable
            logger.warning("Knowledge backfill failed, searching embedded entries only: %s", e)
        entries = await self.store.list_embedded()
        if not entries:
            return []

        query_vec = await self.embed(query)
        ranked = rank(query_vec, [(e, e.embedding) for e in entries])
        matches = [
            ScoredEntry(entry=e, similarity=score)
            for e, score in ranked
            if score > SIMILARITY_THRESHOLD
        ]
        return matches[: min(limit, MAX_RESULTS)]

    async def find_best(self, query: str) -> ScoredEntry | None:
        matches = await self.find_relevant(query, limit=1)
        return matches[0] if matches else None

    async def _eager_embedding(self, knowledge: str) -> list[float] | None:
        if not get_settings().knowledge_embed_on_write:
            return None
        try:
            return await self.embed(knowledge)
        except (LLMError, OpenAIError, httpx.HTTPError) as e:
            logger.warning("Deferring embedding for knowledge entry: %s", e)
            return None

    async def add_entry(self, knowledge: str, title: str = "Knowledge Base Entry") -> KnowledgeBaseEntry:
        """Store one entry, embedding it now when enabled and possible."""
        embedding = await self._eager_embedding(knowledge)
        return await self.store.save(knowledge, title=title, embedding=embedding)

    async def upsert_entry(
        self,
        entry_id: uuid.UUID,
        knowledge: str,
        *,
        title: str = "Knowledge Base Entry",
        created_at: datetime | None = None,
    ) -> KnowledgeBaseEntry:
        embedding = await self._eager_embedding(knowledge)
        return await self.store.upsert(
            entry_id, knowledge, title=title, created_at=created_at, embedding=embedding
        )

    async def index_text(self, title: str, text: str) -> list[KnowledgeBaseEntry]:
        """Chunk text into sentences and store them as knowledge entries."""
        chunks = split_sentences(text)
        if not chunks:
            return []

        embeddings = None
        if get_settings().knowledge_embed_on_write:
            try:
                embeddings = await self.embed_many(chunks)
            except (LLMError, OpenAIError, httpx.HTTPError) as e:
                logger.warning("Deferring embeddings for %s chunks of %r: %s", len(chunks), title, e)
        return await self.store.save_many(title, chunks, embeddings)
