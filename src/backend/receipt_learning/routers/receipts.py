"""
Receipts API router: extract fields from OCR output and save finalized
receipts as learned patterns.
"""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
import logging

from receipt_learning.models.receipt import (
    ExtractionOutcome,
    FeedbackSuggestion,
    FieldValues,
    MatchStrategy,
    OCRResult,
    Region,
)
from receipt_learning.services.learning import get_learning_service
from receipt_learning.services.region_classifier import words_from_tesseract

router = APIRouter(prefix="/receipts", tags=["receipts"])
logger = logging.getLogger(__name__)


class ExtractRequest(BaseModel):
    user_id: str
    ocr: OCRResult
    # Raw pytesseract.image_to_data() output, used when ocr.words is empty
    tesseract_data: Optional[Dict[str, List[Any]]] = None


class MatchSummary(BaseModel):
    """What the UI needs to show a "similar receipt" hint."""
    is_match: bool
    confidence: int
    strategy: MatchStrategy
    pattern_id: Optional[str] = None
    similarity: Optional[float] = None
    suggested_fields: FieldValues = Field(default_factory=FieldValues)


class ExtractResponse(BaseModel):
    outcome: ExtractionOutcome
    match: MatchSummary
    needs_manual_entry: bool
    feedback: List[FeedbackSuggestion] = []


class FinalizeRequest(BaseModel):
    user_id: str
    ocr: OCRResult
    final_fields: FieldValues
    user_corrections: Optional[FieldValues] = None


class FinalizeResponse(BaseModel):
    pattern_id: str
    merchant_name: Optional[str]
    confidence: int
    date_region: Optional[Region]
    amount_region: Optional[Region]


@router.post("/extract", response_model=ExtractResponse)
async def extract_receipt(request: ExtractRequest):
    """
    Extract amount, date and merchant from OCR output.

    Low-confidence results come back with feedback questions; the caller
    should ask for manual entry when `needs_manual_entry` is set.
    """
    try:
        ocr = request.ocr
        if not ocr.words and request.tesseract_data:
            ocr = ocr.model_copy(update={'words': words_from_tesseract(request.tesseract_data)})

        service = get_learning_service(request.user_id)
        outcome, match = service.extract(ocr)

        feedback = []
        if outcome.needs_manual_entry:
            feedback = service.feedback_questions(outcome, ocr.text)

        return ExtractResponse(
            outcome=outcome,
            match=MatchSummary(
                is_match=match.is_match,
                confidence=match.confidence,
                strategy=match.strategy,
                pattern_id=match.matched_pattern.id if match.matched_pattern else None,
                similarity=match.similarity,
                suggested_fields=match.suggested_fields,
            ),
            needs_manual_entry=outcome.needs_manual_entry,
            feedback=feedback,
        )

    except Exception as e:
        logger.error("Error extracting receipt", extra={
            "user_id": request.user_id,
            "error": str(e)
        }, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Failed to extract receipt: {str(e)}"
        )


@router.post("/finalize", response_model=FinalizeResponse)
async def finalize_receipt(request: FinalizeRequest):
    """
    Save a confirmed or corrected receipt so future receipts can match it.
    """
    try:
        service = get_learning_service(request.user_id)
        pattern = service.finalize(
            request.ocr.text,
            request.ocr.words,
            request.ocr.image_width,
            request.ocr.image_height,
            request.final_fields,
            request.user_corrections,
        )

        return FinalizeResponse(
            pattern_id=pattern.id,
            merchant_name=pattern.merchant_name,
            confidence=pattern.confidence,
            date_region=pattern.date_region,
            amount_region=pattern.amount_region,
        )

    except Exception as e:
        logger.error("Error finalizing receipt", extra={
            "user_id": request.user_id,
            "error": str(e)
        }, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Failed to finalize receipt: {str(e)}"
        )
