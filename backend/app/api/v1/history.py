import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import CurrentUser, get_current_user, get_db
from app.schemas import ChatResponse, VoteRequest, VoteResponse
from app.services.persistence import ChatStore

router = APIRouter()


@router.get("/history", response_model=list[ChatResponse])
async def get_history(
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    return await ChatStore(db).list_chats(current_user.id)


@router.get("/vote", response_model=list[VoteResponse])
async def get_votes(
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    chat_id: uuid.UUID = Query(..., alias="chatId"),
):
    store = ChatStore(db)
    chat = await store.get_chat(chat_id)
    if not chat:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    if chat.user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return await store.list_votes(chat_id)


@router.patch("/vote", response_model=VoteResponse)
async def vote_message(
    vote: VoteRequest,
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    store = ChatStore(db)
    chat = await store.get_chat(vote.chat_id)
    if not chat:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    if chat.user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    message = await store.get_message(vote.message_id)
    if not message or message.chat_id != vote.chat_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")

    return await store.vote(vote.chat_id, vote.message_id, vote.type == "up")
