"""Withheld fee collection orchestrator"""
from dataclasses import dataclass, field
from typing import List, Optional

import structlog
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from fee_orchestrator.exceptions import AuthorityError, ValidationError
from fee_orchestrator.services import instructions as ix
from fee_orchestrator.services.discovery import (
    WithheldAccount,
    find_withheld_accounts,
    get_mint,
    total_withheld,
)
from fee_orchestrator.services.operations import (
    CollectionOperation,
    CollectionPath,
    HarvestToMint,
    WithdrawFromAccounts,
    WithdrawFromMint,
    operation_name,
)
from fee_orchestrator.services.solana_client import SolanaClient

logger = structlog.get_logger()

# Source accounts per transaction; keeps withdraw/harvest under the packet size limit
DEFAULT_MAX_SOURCES_PER_TRANSACTION = 20


@dataclass
class CollectionResult:
    """Outcome of one collection cycle"""
    operation: Optional[CollectionOperation]
    expected_amount: int
    signatures: List[str] = field(default_factory=list)
    accounts: List[WithheldAccount] = field(default_factory=list)

    @property
    def executed(self) -> bool:
        return bool(self.signatures)


class FeeCollector:
    """
    Collects a mint's withheld transfer fees.

    Every cycle re-runs discovery before building a withdraw or harvest, since
    balances change between transfers. Operations that move fees to a wallet
    are checked locally against the mint's withdraw withheld authority before
    anything is submitted.
    """

    def __init__(
        self,
        client: SolanaClient,
        mint: Pubkey,
        payer: Keypair,
        withdraw_authority: Optional[Keypair] = None,
        max_sources_per_transaction: int = DEFAULT_MAX_SOURCES_PER_TRANSACTION,
    ):
        if not 1 <= max_sources_per_transaction <= ix.MAX_WITHHELD_SOURCES:
            raise ValidationError(
                f"max_sources_per_transaction must be between 1 and {ix.MAX_WITHHELD_SOURCES}"
            )
        self.client = client
        self.mint = mint
        self.payer = payer
        self.withdraw_authority = withdraw_authority
        self.max_sources_per_transaction = max_sources_per_transaction
        self._configured_authority: Optional[Pubkey] = None
        self._authority_loaded = False

    async def configured_withdraw_authority(self) -> Optional[Pubkey]:
        """The mint's withdraw withheld authority, read once from chain"""
        if not self._authority_loaded:
            mint = await get_mint(self.client, self.mint)
            if mint is None:
                raise ValidationError(f"mint {self.mint} does not exist")
            config = mint.transfer_fee_config
            if config is None:
                raise ValidationError(f"mint {self.mint} has no transfer fee extension")
            self._configured_authority = config.withdraw_withheld_authority
            self._authority_loaded = True
        return self._configured_authority

    async def check_capability(self, operation: CollectionOperation) -> None:
        """Raise AuthorityError unless this collector may submit ``operation``"""
        if not operation.requires_withdraw_authority:
            return
        configured = await self.configured_withdraw_authority()
        if configured is None:
            raise AuthorityError(f"mint {self.mint} has no withdraw withheld authority")
        if self.withdraw_authority is None:
            raise AuthorityError(
                f"{operation_name(operation)} requires the withdraw withheld authority {configured}"
            )
        if self.withdraw_authority.pubkey() != configured:
            raise AuthorityError(
                f"{self.withdraw_authority.pubkey()} is not the withdraw withheld authority "
                f"{configured} of mint {self.mint}"
            )

    def build_instructions(self, operation: CollectionOperation) -> List[Instruction]:
        """Instructions for ``operation``, one per batch of source accounts"""
        step = self.max_sources_per_transaction
        match operation:
            case WithdrawFromAccounts(sources=sources, destination=destination):
                if self.withdraw_authority is None:
                    raise AuthorityError("withdraw from accounts requires a withdraw authority")
                return [
                    ix.withdraw_withheld_tokens_from_accounts(
                        self.mint, destination, self.withdraw_authority.pubkey(), sources[i:i + step]
                    )
                    for i in range(0, len(sources), step)
                ]
            case HarvestToMint(sources=sources):
                return [
                    ix.harvest_withheld_tokens_to_mint(self.mint, sources[i:i + step])
                    for i in range(0, len(sources), step)
                ]
            case WithdrawFromMint(destination=destination):
                if self.withdraw_authority is None:
                    raise AuthorityError("withdraw from mint requires a withdraw authority")
                return [
                    ix.withdraw_withheld_tokens_from_mint(
                        self.mint, destination, self.withdraw_authority.pubkey()
                    )
                ]
        raise ValidationError(f"unknown collection operation {operation!r}")

    async def execute(self, operation: CollectionOperation) -> List[str]:
        """Check capability, then submit ``operation``; returns transaction signatures"""
        await self.check_capability(operation)
        signers = [self.payer]
        if operation.requires_withdraw_authority:
            signers.append(self.withdraw_authority)

        signatures = []
        for instruction in self.build_instructions(operation):
            signature = await self.client.send_and_confirm_transaction([instruction], signers)
            signatures.append(signature)
        logger.info(
            "Executed collection operation",
            operation=operation_name(operation),
            mint=str(self.mint),
            transactions=len(signatures),
            signatures=signatures,
        )
        return signatures

    async def discover(self) -> List[WithheldAccount]:
        return await find_withheld_accounts(self.client, self.mint)

    async def plan(self, path: CollectionPath, destination: Optional[Pubkey] = None) -> CollectionResult:
        """Discover withheld accounts and choose the operation for ``path`` without submitting"""
        accounts = await self.discover()
        if not accounts:
            return CollectionResult(operation=None, expected_amount=0)

        sources = tuple(a.address for a in accounts)
        match path:
            case CollectionPath.WITHDRAW_FROM_ACCOUNTS:
                if destination is None:
                    raise ValidationError("withdraw from accounts needs a destination")
                operation = WithdrawFromAccounts(sources=sources, destination=destination)
            case CollectionPath.HARVEST_TO_MINT:
                operation = HarvestToMint(sources=sources)
            case _:
                raise ValidationError(f"unknown collection path {path!r}")
        return CollectionResult(
            operation=operation,
            expected_amount=total_withheld(accounts),
            accounts=accounts,
        )

    async def collect(self, path: CollectionPath, destination: Optional[Pubkey] = None) -> CollectionResult:
        """
        Run one collection cycle over the fees accrued at token accounts.

        Nothing is submitted when discovery finds no withheld fees, so
        collecting twice without an intervening transfer never credits twice.
        """
        result = await self.plan(path, destination)
        if result.operation is None:
            logger.info("No withheld fees to collect", mint=str(self.mint), path=path.value)
            return result
        result.signatures = await self.execute(result.operation)
        return result

    async def mint_withheld_amount(self) -> int:
        """Fees harvested into the mint and not yet withdrawn"""
        mint = await get_mint(self.client, self.mint)
        if mint is None or mint.transfer_fee_config is None:
            raise ValidationError(f"mint {self.mint} has no transfer fee extension")
        return mint.transfer_fee_config.withheld_amount

    async def withdraw_from_mint(self, destination: Pubkey) -> CollectionResult:
        """Withdraw the mint's harvested pool; a no-op when the pool is empty"""
        operation = WithdrawFromMint(destination=destination)
        await self.check_capability(operation)
        pooled = await self.mint_withheld_amount()
        if pooled == 0:
            logger.info("Mint withheld pool is empty", mint=str(self.mint))
            return CollectionResult(operation=None, expected_amount=0)
        signatures = await self.execute(operation)
        return CollectionResult(operation=operation, expected_amount=pooled, signatures=signatures)
