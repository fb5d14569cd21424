"""Conversation management endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from src.api.dependencies import Services, get_services
from src.api.models import DeleteConversationResponse

router = APIRouter()


@router.delete(
    "/api/conversations/{conversation_id}", response_model=DeleteConversationResponse
)
async def delete_conversation(
    conversation_id: str,
    services: Annotated[Services, Depends(get_services)],
) -> DeleteConversationResponse:
    """Delete every stored chunk of a conversation."""
    deleted = await services.store.delete_by_conversation(conversation_id)
    return DeleteConversationResponse(conversation_id=conversation_id, deleted_chunks=deleted)
