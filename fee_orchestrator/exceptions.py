"""Exception types raised by the fee orchestrator"""
from typing import Optional


class FeeOrchestratorError(Exception):
    """Base class for all orchestrator errors"""


class ValidationError(FeeOrchestratorError, ValueError):
    """Bad input detected locally, before any instruction is built"""


class AuthorityError(ValidationError):
    """The caller does not hold the capability an operation requires"""


class InsufficientFundsError(ValidationError):
    """A transfer would overdraw the source account"""


class AccountLayoutError(FeeOrchestratorError):
    """Account bytes could not be unpacked under the Token-2022 layout"""

    def __init__(self, message: str, address: Optional[str] = None):
        super().__init__(message if address is None else f"{address}: {message}")
        self.address = address


class SubmissionError(FeeOrchestratorError):
    """The cluster or the on-chain program rejected a transaction.

    Resubmitting the same instructions cannot succeed, so this is never retried.
    """

    def __init__(self, message: str, signature: Optional[str] = None, reason: object = None):
        super().__init__(message)
        self.signature = signature
        self.reason = reason


class ConfirmationError(FeeOrchestratorError):
    """A transaction did not reach the requested commitment.

    ``signature`` is set when the transaction was sent; check its status before
    resubmitting with a fresh blockhash.
    """

    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message)
        self.signature = signature


class LedgerMismatchError(FeeOrchestratorError):
    """Withheld balances observed on chain differ from the client's ledger"""
