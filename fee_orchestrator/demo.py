#!/usr/bin/env python3
"""
Transfer fee walkthrough against a live cluster (devnet by default).

Creates a mint with a transfer fee, mints supply, transfers with a fee and
collects the withheld fees through all three paths:

    withdraw from accounts -> transfer again -> harvest to mint -> withdraw from mint

After every collection step the withheld balances observed on chain are
compared with the local ledger; a mismatch aborts the run.

Usage:
    fee-orchestrator-demo [--close-mint]

Options:
    --close-mint    Also create a mint with a close authority and close it
"""

import asyncio
import sys
from typing import Dict, List

import structlog
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from fee_orchestrator.config import get_settings
from fee_orchestrator.exceptions import FeeOrchestratorError, LedgerMismatchError
from fee_orchestrator.log_config import configure_logging
from fee_orchestrator.services.collector import FeeCollector
from fee_orchestrator.services.discovery import WithheldAccount
from fee_orchestrator.services.ledger import WithheldFeeLedger
from fee_orchestrator.services.operations import CollectionPath
from fee_orchestrator.services.solana_client import SolanaClient
from fee_orchestrator.services.token_service import TokenService
from fee_orchestrator.services.wallets import airdrop_sol_if_needed, get_or_create_keypair

logger = structlog.get_logger()
settings = get_settings()


def _by_address(balances: Dict[Pubkey, int]) -> Dict[str, int]:
    return {str(address): amount for address, amount in balances.items()}


def verify_withheld(observed: List[WithheldAccount], ledger: WithheldFeeLedger) -> None:
    """Compare discovered withheld balances with the ledger's prediction"""
    seen: Dict[Pubkey, int] = {a.address: a.withheld_amount for a in observed}
    expected = ledger.withheld_accounts()
    if seen != expected:
        raise LedgerMismatchError(
            f"withheld balances diverged: chain={_by_address(seen)} expected={_by_address(expected)}"
        )


def _report(step: str, signature: str) -> None:
    logger.info(step, signature=signature, url=settings.explorer_tx_url(signature))


async def create_and_close_mint(tokens: TokenService, wallet: Keypair) -> List[str]:
    """Create a mint carrying a close authority, then close it to reclaim its rent"""
    creation = await tokens.create_mint_with_close_authority(decimals=9, close_authority=wallet.pubkey())
    _report("Create New Mint Account with Close Authority", creation.signature)

    signature = await tokens.close_account(creation.mint, wallet.pubkey(), wallet)
    _report("Close Mint Account", signature)
    return [creation.signature, signature]


async def run_transfer_fee_demo(client: SolanaClient, wallet_1: Keypair, wallet_2: Keypair) -> Dict[str, str]:
    """The transfer fee lifecycle; returns step name -> signature"""
    tokens = TokenService(client, wallet_1)
    decimals = settings.demo_decimals
    fee_basis_points = settings.demo_fee_basis_points
    maximum_fee = settings.demo_maximum_fee
    signatures: Dict[str, str] = {}

    creation = await tokens.create_mint_with_transfer_fee(
        decimals=decimals,
        transfer_fee_basis_points=fee_basis_points,
        maximum_fee=maximum_fee,
    )
    mint = creation.mint
    signatures["create_mint"] = creation.signature
    _report("Create New Mint Account with Transfer Fee", creation.signature)

    ledger = WithheldFeeLedger(mint, fee_basis_points, maximum_fee, wallet_1.pubkey())
    transfer_fee = await tokens.get_transfer_fee(mint)

    source, _ = await tokens.create_associated_token_account(wallet_1.pubkey(), mint)
    ledger.open_account(source, wallet_1.pubkey())
    signatures["mint_to"] = await tokens.mint_to(mint, source, settings.demo_mint_amount)
    ledger.mint_to(source, settings.demo_mint_amount)

    destination, _ = await tokens.create_associated_token_account(wallet_2.pubkey(), mint)
    ledger.open_account(destination, wallet_2.pubkey())

    amount = settings.demo_transfer_amount
    fee = transfer_fee.calculate_fee(amount)
    signature, _ = await tokens.transfer_checked_with_fee(
        source, mint, destination, wallet_1, amount, decimals, transfer_fee, fee=fee
    )
    ledger.transfer(source, destination, amount, fee)
    signatures["transfer"] = signature
    _report("Transfer Tokens with Fee", signature)

    collector = FeeCollector(client, mint, payer=wallet_1, withdraw_authority=wallet_1)

    result = await collector.collect(CollectionPath.WITHDRAW_FROM_ACCOUNTS, destination)
    verify_withheld(result.accounts, ledger)
    if result.operation is not None:
        ledger.apply(result.operation, wallet_1.pubkey())
        signatures["withdraw_from_accounts"] = result.signatures[-1]
        _report("Withdraw Fees", result.signatures[-1])
    verify_withheld(await collector.discover(), ledger)

    signature, _ = await tokens.transfer_checked_with_fee(
        source, mint, destination, wallet_1, amount, decimals, transfer_fee, fee=fee
    )
    ledger.transfer(source, destination, amount, fee)
    signatures["transfer_again"] = signature
    _report("Transfer Tokens with Fee Again", signature)

    # Harvest is permissionless; the withdraw authority is only needed for the mint pool
    harvester = FeeCollector(client, mint, payer=wallet_1)
    result = await harvester.collect(CollectionPath.HARVEST_TO_MINT)
    verify_withheld(result.accounts, ledger)
    if result.operation is not None:
        ledger.apply(result.operation)
        signatures["harvest_to_mint"] = result.signatures[-1]
        _report("Harvest Fee from Token Account", result.signatures[-1])
    verify_withheld(await collector.discover(), ledger)

    pooled = await collector.mint_withheld_amount()
    if pooled != ledger.mint_withheld:
        raise LedgerMismatchError(f"mint pool holds {pooled}, expected {ledger.mint_withheld}")
    result = await collector.withdraw_from_mint(destination)
    if result.operation is not None:
        ledger.apply(result.operation, wallet_1.pubkey())
        signatures["withdraw_from_mint"] = result.signatures[-1]
        _report("Withdraw Fees from Mint Account", result.signatures[-1])

    logger.info(
        "Transfer fee walkthrough complete",
        mint=str(mint),
        destination_balance=ledger.account(destination).balance,
        total_withheld=ledger.total_withheld,
    )
    return signatures


async def main_async(close_mint: bool = False) -> Dict[str, str]:
    client = SolanaClient()
    await client.connect()
    try:
        # Use existing keypairs or generate new ones if they don't exist
        wallet_1 = get_or_create_keypair("wallet_1")
        wallet_2 = get_or_create_keypair("wallet_2")
        await airdrop_sol_if_needed(client, wallet_1.pubkey())

        if close_mint:
            await create_and_close_mint(TokenService(client, wallet_1), wallet_1)
        return await run_transfer_fee_demo(client, wallet_1, wallet_2)
    finally:
        await client.disconnect()


def main():
    configure_logging()
    close_mint = "--close-mint" in sys.argv

    try:
        asyncio.run(main_async(close_mint))
    except FeeOrchestratorError as e:
        logger.error("Walkthrough failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    main()
