"""Chatbot testing endpoints: sessions and message processing."""
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import Optional

from services.models import ProcessResult, SessionStats, TestSession
from services.pipeline import MessagePipeline, get_pipeline


router = APIRouter()


class CreateSessionRequest(BaseModel):
    """Request to open a testing session."""
    business_id: int
    session_name: Optional[str] = None
    scenario_type: str = Field(default="manual", pattern="^(manual|automated|bulk)$")
    metadata: Optional[dict] = None


class MessageRequest(BaseModel):
    """A user message sent to a testing session."""
    business_id: int
    message: str = Field(min_length=1, max_length=2000)
    language: str = "en"
    user_context: Optional[dict] = None


@router.post("/sessions", response_model=TestSession, status_code=201)
async def create_session(
    request: CreateSessionRequest,
    pipeline: MessagePipeline = Depends(get_pipeline),
):
    """Open a new chatbot testing session for a business."""
    try:
        return await pipeline.create_session(
            business_id=request.business_id,
            session_name=request.session_name,
            scenario_type=request.scenario_type,
            metadata=request.metadata,
        )
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/sessions/{session_id}/messages", response_model=ProcessResult)
async def send_message(
    session_id: int,
    request: MessageRequest,
    pipeline: MessagePipeline = Depends(get_pipeline),
):
    """
    Send a message through the assistant pipeline.

    Returns 400 when the input is rejected by the security screen and 500
    for internal failures; the body carries the structured result either way.
    """
    if not request.message.strip():
        raise HTTPException(status_code=400, detail="Message cannot be empty")

    result = await pipeline.process_message(
        message=request.message,
        session_id=session_id,
        business_id=request.business_id,
        language=request.language,
        user_context=request.user_context,
    )
    if result.success:
        return result

    status_code = 400 if result.error_type == "SecurityRejection" else 500
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


@router.get("/sessions/{session_id}", response_model=SessionStats)
async def get_session(
    session_id: int,
    pipeline: MessagePipeline = Depends(get_pipeline),
):
    """Session statistics and the ordered message log."""
    try:
        return await pipeline.get_session_stats(session_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
