"""Withheld fee collection operations.

Three ways to collect withheld transfer fees, modelled as one tagged union so
callers dispatch on the operation type instead of calling free functions:

- WithdrawFromAccounts: token accounts -> destination (withdraw authority signs)
- HarvestToMint: token accounts -> mint pool (anyone may submit)
- WithdrawFromMint: mint pool -> destination (withdraw authority signs)

Harvesting and withdrawing from accounts resolve the same accrued fees, so a
given amount goes through exactly one of them.
"""
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Iterable, Tuple, Union

from solders.pubkey import Pubkey

from fee_orchestrator.exceptions import ValidationError


class CollectionPath(str, Enum):
    """How fees accrued at token accounts are collected in a cycle"""
    WITHDRAW_FROM_ACCOUNTS = "withdraw_from_accounts"
    HARVEST_TO_MINT = "harvest_to_mint"


def _as_sources(sources: Iterable[Pubkey]) -> Tuple[Pubkey, ...]:
    sources = tuple(sources)
    if not sources:
        raise ValidationError("a collection operation needs at least one source account")
    if len(set(sources)) != len(sources):
        raise ValidationError("duplicate source accounts")
    return sources


@dataclass(frozen=True)
class WithdrawFromAccounts:
    sources: Tuple[Pubkey, ...]
    destination: Pubkey
    requires_withdraw_authority: ClassVar[bool] = True

    def __post_init__(self):
        object.__setattr__(self, "sources", _as_sources(self.sources))


@dataclass(frozen=True)
class HarvestToMint:
    sources: Tuple[Pubkey, ...]
    requires_withdraw_authority: ClassVar[bool] = False

    def __post_init__(self):
        object.__setattr__(self, "sources", _as_sources(self.sources))


@dataclass(frozen=True)
class WithdrawFromMint:
    destination: Pubkey
    requires_withdraw_authority: ClassVar[bool] = True


CollectionOperation = Union[WithdrawFromAccounts, HarvestToMint, WithdrawFromMint]


def operation_name(operation: CollectionOperation) -> str:
    match operation:
        case WithdrawFromAccounts():
            return "withdraw_from_accounts"
        case HarvestToMint():
            return "harvest_to_mint"
        case WithdrawFromMint():
            return "withdraw_from_mint"
    raise ValidationError(f"unknown collection operation {operation!r}")
