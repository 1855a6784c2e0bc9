from fastapi import APIRouter

from app.schemas import ChatModelResponse
from app.services.model_catalog import CHAT_MODELS

router = APIRouter()


@router.get("", response_model=list[ChatModelResponse])
async def list_chat_models():
    return [
        ChatModelResponse(id=m.id, name=m.name, description=m.description, reasoning=m.is_reasoning)
        for m in CHAT_MODELS.values()
    ]
