"""Transfer fee schemas"""
from pydantic import BaseModel, Field


class FeeQuoteRequest(BaseModel):
    amount: int = Field(..., ge=0)
    fee_basis_points: int = Field(..., ge=0, le=10_000)
    maximum_fee: int = Field(..., ge=0)


class FeeQuoteResponse(BaseModel):
    amount: int
    fee: int
    net_amount: int
