import uuid
import logging
from typing import Annotated

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from openai import OpenAIError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import CurrentUser, get_db, get_optional_user
from app.schemas import (
    KnowledgeResponse, KnowledgeUpsert, RelevantContentRequest, RelevantContentResponse, RelevantMatch,
)
from app.services.llm_client import LLMError
from app.services.persistence import PersistenceError
from app.services.retrieval import RetrievalService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_retrieval_service(db: Annotated[AsyncSession, Depends(get_db)]) -> RetrievalService:
    return RetrievalService(db)


@router.post("/knowledge", response_model=KnowledgeResponse)
async def upsert_knowledge(
    entry: KnowledgeUpsert,
    current_user: Annotated[CurrentUser | None, Depends(get_optional_user)],
    retrieval: Annotated[RetrievalService, Depends(get_retrieval_service)],
    id: uuid.UUID | None = Query(default=None),
):
    if id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing id")
    if current_user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    try:
        return await retrieval.upsert_entry(
            id, entry.knowledge, title=entry.title, created_at=entry.created_at
        )
    except PersistenceError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save knowledge entry",
        )


@router.post("/relevant-content", response_model=RelevantContentResponse)
async def relevant_content(
    request: RelevantContentRequest,
    retrieval: Annotated[RetrievalService, Depends(get_retrieval_service)],
):
    try:
        matches = await retrieval.find_relevant(request.input)
    except (LLMError, OpenAIError, httpx.HTTPError, PersistenceError):
        logger.exception("Error finding relevant content")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Failed to find relevant content"},
        )
    return RelevantContentResponse(
        content=[RelevantMatch(name=m.entry.knowledge, similarity=m.similarity) for m in matches]
    )
