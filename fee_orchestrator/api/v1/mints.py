"""Mint transfer fee state API endpoints"""
from fastapi import APIRouter, Depends, HTTPException
import structlog
from solana.exceptions import SolanaRpcException
from solders.pubkey import Pubkey

from fee_orchestrator.exceptions import AccountLayoutError, FeeOrchestratorError
from fee_orchestrator.schemas.mint import (
    TransferFeeConfigResponse,
    TransferFeeSchedule,
    WithheldAccountResponse,
    WithheldFeesResponse,
)
from fee_orchestrator.services.discovery import find_withheld_accounts, get_mint, total_withheld
from fee_orchestrator.services.solana_client import SolanaClient, get_solana_client
from fee_orchestrator.services.token_layout import Mint, TransferFeeConfig

logger = structlog.get_logger()

router = APIRouter()


def _parse_mint(mint_address: str) -> Pubkey:
    try:
        return Pubkey.from_string(mint_address)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid mint address")


async def _load_fee_mint(client: SolanaClient, mint: Pubkey) -> tuple[Mint, TransferFeeConfig]:
    try:
        unpacked = await get_mint(client, mint)
    except AccountLayoutError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except (FeeOrchestratorError, SolanaRpcException) as e:
        logger.error("Failed to load mint", mint=str(mint), error=str(e))
        raise HTTPException(status_code=502, detail=str(e))
    if unpacked is None:
        raise HTTPException(status_code=404, detail="Mint not found")
    config = unpacked.transfer_fee_config
    if config is None:
        raise HTTPException(status_code=404, detail="Mint has no transfer fee extension")
    return unpacked, config


@router.get("/{mint_address}/transfer-fee-config", response_model=TransferFeeConfigResponse)
async def get_transfer_fee_config(
    mint_address: str,
    client: SolanaClient = Depends(get_solana_client),
):
    """Fee authorities, schedules and the mint's withheld pool"""
    mint, config = await _load_fee_mint(client, _parse_mint(mint_address))
    return TransferFeeConfigResponse(
        mint=mint_address,
        decimals=mint.decimals,
        supply=mint.supply,
        transfer_fee_config_authority=(
            str(config.transfer_fee_config_authority)
            if config.transfer_fee_config_authority is not None else None
        ),
        withdraw_withheld_authority=(
            str(config.withdraw_withheld_authority)
            if config.withdraw_withheld_authority is not None else None
        ),
        withheld_amount=config.withheld_amount,
        older_transfer_fee=TransferFeeSchedule(
            epoch=config.older_transfer_fee.epoch,
            maximum_fee=config.older_transfer_fee.maximum_fee,
            transfer_fee_basis_points=config.older_transfer_fee.transfer_fee_basis_points,
        ),
        newer_transfer_fee=TransferFeeSchedule(
            epoch=config.newer_transfer_fee.epoch,
            maximum_fee=config.newer_transfer_fee.maximum_fee,
            transfer_fee_basis_points=config.newer_transfer_fee.transfer_fee_basis_points,
        ),
    )


@router.get("/{mint_address}/withheld", response_model=WithheldFeesResponse)
async def get_withheld_fees(
    mint_address: str,
    client: SolanaClient = Depends(get_solana_client),
):
    """Token accounts holding withheld fees, plus the mint's harvested pool.

    The mint pool and the account scan are two separate RPC reads and may be
    served at different slots. A harvest landing between them can make a fee
    appear in both places or in neither, so ``total_withheld`` is a snapshot
    estimate, not a consistent balance.
    """
    mint = _parse_mint(mint_address)
    _, config = await _load_fee_mint(client, mint)
    try:
        accounts = await find_withheld_accounts(client, mint)
    except AccountLayoutError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except (FeeOrchestratorError, SolanaRpcException) as e:
        logger.error("Withheld fee discovery failed", mint=mint_address, error=str(e))
        raise HTTPException(status_code=502, detail=str(e))

    accounts_withheld = total_withheld(accounts)
    return WithheldFeesResponse(
        mint=mint_address,
        accounts=[
            WithheldAccountResponse(
                address=str(a.address),
                owner=str(a.owner),
                withheld_amount=a.withheld_amount,
            )
            for a in accounts
        ],
        accounts_withheld=accounts_withheld,
        mint_withheld=config.withheld_amount,
        total_withheld=accounts_withheld + config.withheld_amount,
    )
