"""Client-side model of a transfer-fee mint's balances and withheld fees.

Mirrors what the token program does on chain so the orchestrator can predict
withheld balances and check them against what discovery observes.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

import structlog
from solders.pubkey import Pubkey

from fee_orchestrator.exceptions import (
    AuthorityError,
    InsufficientFundsError,
    ValidationError,
)
from fee_orchestrator.services.fees import (
    TransferFeeQuote,
    check_expected_fee,
    quote_transfer,
    validate_amount,
    validate_fee_parameters,
)
from fee_orchestrator.services.operations import (
    CollectionOperation,
    HarvestToMint,
    WithdrawFromAccounts,
    WithdrawFromMint,
)

logger = structlog.get_logger()


@dataclass
class LedgerAccount:
    """Balance and withheld fees of one token account"""
    address: Pubkey
    owner: Pubkey
    balance: int = 0
    withheld: int = 0


class WithheldFeeLedger:
    """
    Tracks supply, balances and withheld fees for a single mint.

    Invariants:
    - withheld amounts only grow through fee-bearing transfers and only shrink
      through withdraw or harvest, never below zero
    - harvest moves value into the mint pool; total withheld is unchanged
    - withdrawing from an account that holds nothing credits nothing
    """

    def __init__(
        self,
        mint: Pubkey,
        fee_basis_points: int,
        maximum_fee: int,
        withdraw_withheld_authority: Optional[Pubkey] = None,
    ):
        validate_fee_parameters(fee_basis_points, maximum_fee)
        self.mint = mint
        self.fee_basis_points = fee_basis_points
        self.maximum_fee = maximum_fee
        self.withdraw_withheld_authority = withdraw_withheld_authority
        self.accounts: Dict[Pubkey, LedgerAccount] = {}
        self.mint_withheld = 0
        self.supply = 0

    # --- accounts -----------------------------------------------------------

    def open_account(self, address: Pubkey, owner: Pubkey) -> LedgerAccount:
        if address in self.accounts:
            raise ValidationError(f"account {address} already exists")
        account = LedgerAccount(address=address, owner=owner)
        self.accounts[address] = account
        return account

    def account(self, address: Pubkey) -> LedgerAccount:
        try:
            return self.accounts[address]
        except KeyError:
            raise ValidationError(f"unknown token account {address}")

    def close_account(self, address: Pubkey) -> None:
        """Token accounts close only when both balance and withheld fees are zero"""
        account = self.account(address)
        if account.balance:
            raise ValidationError(f"account {address} still holds {account.balance} tokens")
        if account.withheld:
            raise ValidationError(
                f"account {address} still holds {account.withheld} withheld fees; harvest first"
            )
        del self.accounts[address]

    # --- supply and transfers -----------------------------------------------

    def mint_to(self, address: Pubkey, amount: int) -> None:
        validate_amount(amount)
        self.account(address).balance += amount
        self.supply += amount

    def transfer(
        self,
        source: Pubkey,
        destination: Pubkey,
        amount: int,
        fee: Optional[int] = None,
    ) -> TransferFeeQuote:
        """Move ``amount`` out of ``source``; the fee stays withheld at ``destination``"""
        validate_amount(amount)
        if fee is not None:
            check_expected_fee(amount, fee, self.fee_basis_points, self.maximum_fee)
        quote = quote_transfer(amount, self.fee_basis_points, self.maximum_fee)

        src = self.account(source)
        dst = self.account(destination)
        if src.balance < amount:
            raise InsufficientFundsError(
                f"account {source} holds {src.balance}, cannot transfer {amount}"
            )
        src.balance -= amount
        dst.balance += quote.net_amount
        dst.withheld += quote.fee
        return quote

    # --- collection ---------------------------------------------------------

    def _check_authority(self, authority: Optional[Pubkey]) -> None:
        if self.withdraw_withheld_authority is None:
            return
        if authority != self.withdraw_withheld_authority:
            raise AuthorityError(
                f"{authority} is not the withdraw withheld authority of mint {self.mint}"
            )

    def withdraw_from_accounts(
        self,
        sources: Iterable[Pubkey],
        destination: Pubkey,
        authority: Optional[Pubkey] = None,
    ) -> int:
        self._check_authority(authority)
        dst = self.account(destination)
        accounts = [self.account(source) for source in sources]
        withdrawn = 0
        for account in accounts:
            withdrawn += account.withheld
            account.withheld = 0
        dst.balance += withdrawn
        return withdrawn

    def harvest_to_mint(self, sources: Iterable[Pubkey]) -> int:
        accounts = [self.account(source) for source in sources]
        harvested = 0
        for account in accounts:
            harvested += account.withheld
            account.withheld = 0
        self.mint_withheld += harvested
        return harvested

    def withdraw_from_mint(self, destination: Pubkey, authority: Optional[Pubkey] = None) -> int:
        self._check_authority(authority)
        dst = self.account(destination)
        withdrawn = self.mint_withheld
        self.mint_withheld = 0
        dst.balance += withdrawn
        return withdrawn

    def apply(self, operation: CollectionOperation, authority: Optional[Pubkey] = None) -> int:
        """Apply a collection operation; returns the amount moved"""
        match operation:
            case WithdrawFromAccounts(sources=sources, destination=destination):
                moved = self.withdraw_from_accounts(sources, destination, authority)
            case HarvestToMint(sources=sources):
                moved = self.harvest_to_mint(sources)
            case WithdrawFromMint(destination=destination):
                moved = self.withdraw_from_mint(destination, authority)
            case _:
                raise ValidationError(f"unknown collection operation {operation!r}")
        logger.debug(
            "Applied collection operation",
            operation=type(operation).__name__,
            mint=str(self.mint),
            moved=moved,
        )
        return moved

    # --- views --------------------------------------------------------------

    def withheld_accounts(self) -> Dict[Pubkey, int]:
        """Accounts with non-zero withheld fees"""
        return {
            address: account.withheld
            for address, account in self.accounts.items()
            if account.withheld > 0
        }

    @property
    def total_withheld(self) -> int:
        """Withheld fees across all accounts plus the mint pool"""
        return sum(a.withheld for a in self.accounts.values()) + self.mint_withheld
