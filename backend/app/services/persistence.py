import uuid
import logging
from datetime import datetime, timedelta, timezone
from typing import Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Chat, Message, Vote, Document, Suggestion, KnowledgeBaseEntry

logger = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """Raised when a write to the store fails."""
    pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _Store:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _commit(self, what: str) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning("Failed to %s: %s", what, e)
            raise PersistenceError(f"Failed to {what}") from e


class ChatStore(_Store):
    """Chats, their append-only message log, and votes."""

    async def get_chat(self, chat_id: uuid.UUID) -> Chat | None:
        return await self.db.get(Chat, chat_id)

    async def create_chat(self, chat_id: uuid.UUID, user_id: uuid.UUID, title: str) -> Chat:
        chat = Chat(id=chat_id, user_id=user_id, title=title)
        self.db.add(chat)
        await self._commit("save chat")
        return chat

    async def set_visibility(self, chat_id: uuid.UUID, visibility: str) -> Chat:
        chat = await self.get_chat(chat_id)
        if chat is None:
            raise LookupError(f"Chat {chat_id} not found")
        chat.visibility = visibility
        await self._commit("update chat visibility")
        return chat

    async def list_chats(self, user_id: uuid.UUID) -> Sequence[Chat]:
        result = await self.db.execute(
            select(Chat).where(Chat.user_id == user_id).order_by(Chat.created_at.desc())
        )
        return result.scalars().all()

    async def list_messages(self, chat_id: uuid.UUID) -> Sequence[Message]:
        result = await self.db.execute(
            select(Message).where(Message.chat_id == chat_id).order_by(Message.created_at)
        )
        return result.scalars().all()

    async def get_message(self, message_id: uuid.UUID) -> Message | None:
        return await self.db.get(Message, message_id)

    async def save_messages(self, messages: list[Message]) -> int:
        """Append messages, skipping ids that are already stored.

        Returns the number of rows written.
        """
        if not messages:
            return 0

        ids = [m.id for m in messages]
        result = await self.db.execute(select(Message.id).where(Message.id.in_(ids)))
        existing = set(result.scalars().all())

        base = _utc_now()
        written = 0
        for offset, message in enumerate(messages):
            if message.id in existing:
                logger.debug("Message %s already stored, skipping", message.id)
                continue
            if message.created_at is None:
                # Strictly increasing within one batch so ordering survives equal clocks
                message.created_at = base + timedelta(microseconds=offset)
            self.db.add(message)
            existing.add(message.id)
            written += 1

        if written:
            await self._commit("save messages")
        return written

    async def replace_message(self, message_id: uuid.UUID, content: str) -> Message:
        """Truncate the chat at ``message_id`` and append the edited message."""
        target = await self.get_message(message_id)
        if target is None:
            raise LookupError(f"Message {message_id} not found")

        chat_id, role, cutoff = target.chat_id, target.role, target.created_at
        trailing = select(Message.id).where(
            Message.chat_id == chat_id, Message.created_at >= cutoff
        )
        await self.db.execute(
            delete(Vote)
            .where(Vote.chat_id == chat_id, Vote.message_id.in_(trailing))
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            delete(Message)
            .where(Message.chat_id == chat_id, Message.created_at >= cutoff)
            .execution_options(synchronize_session=False)
        )
        self.db.expunge(target)

        edited = Message(
            id=message_id,
            chat_id=chat_id,
            role=role,
            content=content,
            created_at=_utc_now(),
        )
        self.db.add(edited)
        await self._commit("replace message")
        return edited

    async def delete_chat(self, chat_id: uuid.UUID) -> None:
        await self.db.execute(delete(Vote).where(Vote.chat_id == chat_id))
        await self.db.execute(delete(Message).where(Message.chat_id == chat_id))
        await self.db.execute(delete(Chat).where(Chat.id == chat_id))
        await self._commit("delete chat")

    async def vote(self, chat_id: uuid.UUID, message_id: uuid.UUID, is_upvoted: bool) -> Vote:
        vote = await self.db.get(Vote, (chat_id, message_id))
        if vote is None:
            vote = Vote(chat_id=chat_id, message_id=message_id, is_upvoted=is_upvoted)
            self.db.add(vote)
        else:
            vote.is_upvoted = is_upvoted
        await self._commit("save vote")
        return vote

    async def list_votes(self, chat_id: uuid.UUID) -> Sequence[Vote]:
        result = await self.db.execute(select(Vote).where(Vote.chat_id == chat_id))
        return result.scalars().all()


class DocumentStore(_Store):
    """Append-only document versions plus their suggestions."""

    async def save_document(
        self,
        document_id: uuid.UUID,
        title: str,
        kind: str,
        content: str | None,
        user_id: uuid.UUID,
    ) -> Document:
        document = Document(
            id=document_id,
            created_at=_utc_now(),
            title=title,
            kind=kind,
            content=content,
            user_id=user_id,
        )
        self.db.add(document)
        await self._commit("save document")
        return document

    async def get_latest(self, document_id: uuid.UUID) -> Document | None:
        result = await self.db.execute(
            select(Document)
            .where(Document.id == document_id)
            .order_by(Document.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_versions(self, document_id: uuid.UUID) -> Sequence[Document]:
        result = await self.db.execute(
            select(Document).where(Document.id == document_id).order_by(Document.created_at)
        )
        return result.scalars().all()

    async def save_suggestions(self, suggestions: list[Suggestion]) -> None:
        if not suggestions:
            return
        self.db.add_all(suggestions)
        await self._commit("save suggestions")

    async def list_suggestions(self, document_id: uuid.UUID) -> Sequence[Suggestion]:
        result = await self.db.execute(
            select(Suggestion)
            .where(Suggestion.document_id == document_id)
            .order_by(Suggestion.created_at)
        )
        return result.scalars().all()


class KnowledgeStore(_Store):
    """Process-wide knowledge base entries."""

    async def save(
        self,
        knowledge: str,
        *,
        title: str = "Knowledge Base Entry",
        embedding: list[float] | None = None,
    ) -> KnowledgeBaseEntry:
        entry = KnowledgeBaseEntry(
            id=uuid.uuid4(),
            title=title,
            knowledge=knowledge,
            embedding=embedding,
            created_at=_utc_now(),
        )
        self.db.add(entry)
        await self._commit("save knowledge entry")
        return entry

    async def save_many(
        self, title: str, chunks: list[str], embeddings: list[list[float]] | None = None
    ) -> list[KnowledgeBaseEntry]:
        base = _utc_now()
        entries = [
            KnowledgeBaseEntry(
                id=uuid.uuid4(),
                title=title,
                knowledge=chunk,
                embedding=embeddings[i] if embeddings else None,
                created_at=base + timedelta(microseconds=i),
            )
            for i, chunk in enumerate(chunks)
        ]
        if not entries:
            return []
        self.db.add_all(entries)
        await self._commit("save knowledge entries")
        return entries

    async def upsert(
        self,
        entry_id: uuid.UUID,
        knowledge: str,
        *,
        title: str = "Knowledge Base Entry",
        created_at: datetime | None = None,
        embedding: list[float] | None = None,
    ) -> KnowledgeBaseEntry:
        entry = await self.db.get(KnowledgeBaseEntry, entry_id)
        if entry is None:
            entry = KnowledgeBaseEntry(id=entry_id, created_at=created_at or _utc_now())
            self.db.add(entry)
        elif entry.knowledge != knowledge:
            # Stale vector once the text changes; backfilled on next retrieval
            entry.embedding = None
        entry.title = title
        entry.knowledge = knowledge
        if embedding is not None:
            entry.embedding = embedding
        await self._commit("upsert knowledge entry")
        return entry

    async def list_recent(self) -> Sequence[KnowledgeBaseEntry]:
        result = await self.db.execute(
            select(KnowledgeBaseEntry).order_by(KnowledgeBaseEntry.created_at.desc())
        )
        return result.scalars().all()

    async def list_missing_embeddings(self) -> Sequence[KnowledgeBaseEntry]:
        result = await self.db.execute(
            select(KnowledgeBaseEntry).where(KnowledgeBaseEntry.embedding.is_(None))
        )
        return result.scalars().all()

    async def list_embedded(self) -> Sequence[KnowledgeBaseEntry]:
        result = await self.db.execute(
            select(KnowledgeBaseEntry).where(KnowledgeBaseEntry.embedding.is_not(None))
        )
        return result.scalars().all()

    async def set_embeddings(
        self, entries: Sequence[KnowledgeBaseEntry], embeddings: list[list[float]]
    ) -> None:
        for entry, embedding in zip(entries, embeddings):
            entry.embedding = embedding
        await self._commit("store embeddings")
