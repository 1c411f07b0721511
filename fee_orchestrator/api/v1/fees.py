"""Transfer fee API endpoints"""
from fastapi import APIRouter, HTTPException

from fee_orchestrator.exceptions import ValidationError
from fee_orchestrator.schemas.fees import FeeQuoteRequest, FeeQuoteResponse
from fee_orchestrator.services.fees import quote_transfer

router = APIRouter()


@router.post("/quote", response_model=FeeQuoteResponse)
async def quote_fee(request: FeeQuoteRequest):
    """Fee withheld and net amount delivered for a transfer"""
    try:
        quote = quote_transfer(request.amount, request.fee_basis_points, request.maximum_fee)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return FeeQuoteResponse(**quote.to_dict())
