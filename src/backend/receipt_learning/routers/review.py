"""
Review API router: users confirm or reject a learned suggestion.
"""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import Optional

from receipt_learning.models.receipt import FieldValues
from receipt_learning.services.learning import get_learning_service

router = APIRouter(prefix="/review", tags=["review"])


class FeedbackRequest(BaseModel):
    user_id: str
    pattern_id: str
    was_correct: bool
    corrections: Optional[FieldValues] = None


class FeedbackResponse(BaseModel):
    success: bool
    pattern_id: str
    success_rate: float
    corrected: bool


@router.post("/feedback", response_model=FeedbackResponse)
async def submit_feedback(request: FeedbackRequest):
    """
    Record whether a pattern's suggestion was right.

    A confirmation raises the pattern's success rate by 0.1, a rejection
    lowers it by 0.2 (kept within 0.1 to 1.0). Corrections sent with a
    rejection are attached if the pattern has none yet.

    Args:
        request: Feedback for one pattern

    Returns:
        Updated success rate
    """
    try:
        service = get_learning_service(request.user_id)
        pattern = service.report_outcome(
            request.pattern_id,
            request.was_correct,
            request.corrections
        )

        if pattern is None:
            raise HTTPException(
                status_code=404,
                detail=f"Pattern {request.pattern_id} not found"
            )

        return FeedbackResponse(
            success=True,
            pattern_id=pattern.id,
            success_rate=pattern.success_rate,
            corrected=pattern.was_corrected
        )

    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=500,
            detail=f"Failed to submit feedback: {str(e)}"
        )
