"""Read access to tracked unanswered questions."""
from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional

from services.models import (
    QuestionPriority,
    QuestionStatus,
    UnansweredQuestion,
    UnansweredQuestionStats,
)
from services.pipeline import MessagePipeline, get_pipeline


router = APIRouter()


@router.get(
    "/businesses/{business_id}/unanswered-questions",
    response_model=list[UnansweredQuestion],
)
async def list_unanswered_questions(
    business_id: int,
    status: Optional[QuestionStatus] = None,
    priority: Optional[QuestionPriority] = None,
    limit: int = Query(default=50, ge=1, le=200),
    pipeline: MessagePipeline = Depends(get_pipeline),
):
    """Questions the assistant could not answer, most frequent first."""
    try:
        return await pipeline.repository.list_unanswered_questions(
            business_id,
            status=status.value if status else None,
            priority=priority.value if priority else None,
            limit=limit,
        )
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get(
    "/businesses/{business_id}/unanswered-questions/stats",
    response_model=UnansweredQuestionStats,
)
async def unanswered_question_stats(
    business_id: int,
    pipeline: MessagePipeline = Depends(get_pipeline),
):
    """Counts by status, priority and language, and the top five questions."""
    try:
        return await pipeline.repository.unanswered_question_stats(business_id)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
