import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator


class ChatTurnLocks:
    """In-process mutual exclusion for turns on the same chat.

    Locks are created on first use and dropped once nobody holds or waits
    for them, so the registry only grows with concurrently active chats.
    """

    def __init__(self) -> None:
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}
        self._users: dict[uuid.UUID, int] = {}

    @asynccontextmanager
    async def hold(self, chat_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(chat_id, asyncio.Lock())
        self._users[chat_id] = self._users.get(chat_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[chat_id] -= 1
            if not self._users[chat_id]:
                self._users.pop(chat_id, None)
                self._locks.pop(chat_id, None)

    def is_locked(self, chat_id: uuid.UUID) -> bool:
        lock = self._locks.get(chat_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


chat_turn_locks = ChatTurnLocks()
