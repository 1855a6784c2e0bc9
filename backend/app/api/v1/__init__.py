from fastapi import APIRouter
from app.api.v1 import chat, history, documents, knowledge, models

router = APIRouter()

router.include_router(chat.router, prefix="/chat", tags=["chat"])
router.include_router(history.router, tags=["history"])
router.include_router(documents.router, tags=["documents"])
router.include_router(knowledge.router, tags=["knowledge"])
router.include_router(models.router, prefix="/models", tags=["models"])
