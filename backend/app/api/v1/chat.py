import uuid
import asyncio
import logging
from typing import Annotated, AsyncGenerator, Awaitable, Callable

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import CurrentUser, async_session_maker, get_current_user, get_db, get_optional_user
from app.models import MessageRole, Visibility
from app.schemas import ChatRequest, ChatResponse, MessageEdit, MessageResponse, VisibilityUpdate
from app.services.chat_service import ChatService
from app.services.persistence import ChatStore, PersistenceError
from app.services.stream import SSE_DONE, DataStream, encode_sse
from app.services.turn_locks import chat_turn_locks
from app.utils.messages import get_most_recent_user_message

logger = logging.getLogger(__name__)

router = APIRouter()

TurnRunner = Callable[[ChatRequest, uuid.UUID, DataStream], Awaitable[None]]


async def run_chat_turn(request: ChatRequest, user_id: uuid.UUID, stream: DataStream) -> None:
    """Run one turn with its own session, serialized per chat."""
    async with chat_turn_locks.hold(request.id):
        async with async_session_maker() as db:
            await ChatService(db, user_id).stream_turn(request, stream)


def get_turn_runner() -> TurnRunner:
    return run_chat_turn


async def _get_owned_chat(store: ChatStore, chat_id: uuid.UUID, user_id: uuid.UUID):
    chat = await store.get_chat(chat_id)
    if not chat:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    if chat.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return chat


@router.post("")
async def stream_chat(
    request: ChatRequest,
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    runner: Annotated[TurnRunner, Depends(get_turn_runner)],
):
    if get_most_recent_user_message(request.messages) is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No user message found")

    chat = await ChatStore(db).get_chat(request.id)
    if chat and chat.user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    async def event_generator() -> AsyncGenerator[str, None]:
        stream = DataStream()
        task = asyncio.create_task(runner(request, current_user.id, stream))
        try:
            async for part in stream:
                yield encode_sse(part)
            yield SSE_DONE
            # The runner may still be releasing its session and lock
            try:
                await asyncio.shield(task)
            except Exception:
                logger.exception("Turn on chat %s failed after streaming", request.id)
        finally:
            if not task.done() and not stream.closed:
                logger.info("Client left chat %s mid-turn, cancelling", request.id)
                task.cancel()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.delete("")
async def delete_chat(
    current_user: Annotated[CurrentUser | None, Depends(get_optional_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    id: uuid.UUID | None = Query(default=None),
):
    if id is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    if current_user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    store = ChatStore(db)
    await _get_owned_chat(store, id, current_user.id)
    try:
        await store.delete_chat(id)
    except PersistenceError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while processing your request",
        )
    return {"message": "Chat deleted"}


@router.get("/{chat_id}/messages", response_model=list[MessageResponse])
async def list_messages(
    chat_id: uuid.UUID,
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    store = ChatStore(db)
    chat = await store.get_chat(chat_id)
    if not chat:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    if chat.visibility != Visibility.PUBLIC.value and chat.user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return await store.list_messages(chat_id)


@router.patch("/{chat_id}/visibility", response_model=ChatResponse)
async def update_visibility(
    chat_id: uuid.UUID,
    update: VisibilityUpdate,
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    store = ChatStore(db)
    await _get_owned_chat(store, chat_id, current_user.id)
    return await store.set_visibility(chat_id, update.visibility)


@router.patch("/messages/{message_id}", response_model=MessageResponse)
async def edit_message(
    message_id: uuid.UUID,
    edit: MessageEdit,
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Replace a user message, dropping everything after it."""
    store = ChatStore(db)
    message = await store.get_message(message_id)
    if not message:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    await _get_owned_chat(store, message.chat_id, current_user.id)
    if message.role != MessageRole.USER.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only user messages can be edited")

    async with chat_turn_locks.hold(message.chat_id):
        return await store.replace_message(message_id, edit.content)
