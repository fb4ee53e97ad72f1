"""FastAPI routes exposing call records."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import get_repository
from api.schemas import CallerResponse, MessageResponse
from api.twilio_routes import router as twilio_router
from db.repository import CallRepository

router = APIRouter()
router.include_router(twilio_router)


@router.get(
    "/conversations/{call_sid}/messages",
    response_model=list[MessageResponse],
)
async def list_conversation_messages(
    call_sid: str,
    repo: CallRepository = Depends(get_repository),
) -> list[MessageResponse]:
    messages = await repo.list_messages(call_sid)
    return [
        MessageResponse(role=message.role, content=message.content, created_at=message.created_at)
        for message in messages
    ]


@router.get("/callers/{phone}", response_model=CallerResponse)
async def get_caller(
    phone: str,
    repo: CallRepository = Depends(get_repository),
) -> CallerResponse:
    caller = await repo.get_caller(phone)
    if caller is None:
        raise HTTPException(status_code=404, detail="Caller not found.")
    return CallerResponse(
        phone=caller.phone,
        name=caller.name,
        call_count=await repo.count_conversations(phone),
    )
