"""Mint and withheld fee schemas"""
from pydantic import BaseModel
from typing import List, Optional


class TransferFeeSchedule(BaseModel):
    epoch: int
    maximum_fee: int
    transfer_fee_basis_points: int


class TransferFeeConfigResponse(BaseModel):
    mint: str
    decimals: int
    supply: int
    transfer_fee_config_authority: Optional[str] = None
    withdraw_withheld_authority: Optional[str] = None
    withheld_amount: int
    older_transfer_fee: TransferFeeSchedule
    newer_transfer_fee: TransferFeeSchedule


class WithheldAccountResponse(BaseModel):
    address: str
    owner: str
    withheld_amount: int


class WithheldFeesResponse(BaseModel):
    mint: str
    accounts: List[WithheldAccountResponse]
    accounts_withheld: int
    mint_withheld: int
    total_withheld: int
