"""
Analytics API router for the diagnostics view.
"""

from fastapi import APIRouter, HTTPException, Query
import logging

from receipt_learning.models.receipt import AnalyticsSummary
from receipt_learning.services.learning import get_learning_service

router = APIRouter(prefix="/analytics", tags=["analytics"])
logger = logging.getLogger(__name__)


@router.get("/summary", response_model=AnalyticsSummary)
async def get_summary(user_id: str = Query(..., description="User ID")):
    """Success rates, distributions and suggestions over the user's learned patterns."""
    try:
        return get_learning_service(user_id).analytics()

    except Exception as e:
        logger.error("Error computing analytics", extra={
            "user_id": user_id,
            "error": str(e)
        }, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Failed to compute analytics: {str(e)}"
        )
