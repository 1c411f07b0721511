"""API v1 router aggregation"""
from fastapi import APIRouter

from fee_orchestrator.api.v1 import fees, mints

api_router = APIRouter()

api_router.include_router(fees.router, prefix="/fees", tags=["Fees"])
api_router.include_router(mints.router, prefix="/mints", tags=["Mints"])
