"""Token-2022 transfer fee services"""
from .solana_client import SolanaClient
from .fees import calculate_fee, quote_transfer, TransferFeeQuote
from .operations import CollectionPath, WithdrawFromAccounts, HarvestToMint, WithdrawFromMint
from .discovery import find_withheld_accounts, WithheldAccount
from .ledger import WithheldFeeLedger
from .collector import FeeCollector, CollectionResult
from .token_service import TokenService

__all__ = [
    "SolanaClient",
    # Fee computation
    "calculate_fee",
    "quote_transfer",
    "TransferFeeQuote",
    # Collection
    "CollectionPath",
    "WithdrawFromAccounts",
    "HarvestToMint",
    "WithdrawFromMint",
    "FeeCollector",
    "CollectionResult",
    "find_withheld_accounts",
    "WithheldAccount",
    "WithheldFeeLedger",
    # Token operations
    "TokenService",
]
