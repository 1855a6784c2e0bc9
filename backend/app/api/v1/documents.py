import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import CurrentUser, get_current_user, get_db
from app.schemas import DocumentResponse, SuggestionResponse
from app.services.persistence import DocumentStore

router = APIRouter()


@router.get("/document", response_model=list[DocumentResponse])
async def get_document_versions(
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    id: uuid.UUID = Query(...),
):
    """All versions of a document, oldest first."""
    versions = await DocumentStore(db).list_versions(id)
    if not versions:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    if versions[-1].user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return versions


@router.get("/suggestions", response_model=list[SuggestionResponse])
async def get_suggestions(
    current_user: Annotated[CurrentUser, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    document_id: uuid.UUID = Query(..., alias="documentId"),
):
    store = DocumentStore(db)
    suggestions = await store.list_suggestions(document_id)
    if suggestions and suggestions[0].user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return suggestions
