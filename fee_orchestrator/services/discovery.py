"""Discovery of token accounts holding withheld transfer fees"""
import base64
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog
from solana.rpc.types import MemcmpOpts
from solders.pubkey import Pubkey

from fee_orchestrator.exceptions import AccountLayoutError
from fee_orchestrator.services.solana_client import SolanaClient
from fee_orchestrator.services.token_layout import (
    ACCOUNT_MINT_OFFSET,
    TOKEN_2022_PROGRAM_ID,
    Mint,
    unpack_account,
    unpack_mint,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class WithheldAccount:
    """A token account with a non-zero withheld fee balance"""
    address: Pubkey
    owner: Pubkey
    withheld_amount: int


def mint_filter(mint: Pubkey) -> MemcmpOpts:
    """Server-side filter matching token accounts of ``mint``"""
    return MemcmpOpts(offset=ACCOUNT_MINT_OFFSET, bytes=str(mint))


def account_data(account: Dict[str, Any]) -> bytes:
    """Raw bytes from an RPC account payload"""
    data = account.get("data")
    # Handle data - might be bytes directly or base64 encoded
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    if isinstance(data, list) and len(data) >= 1:
        return base64.b64decode(data[0])
    if isinstance(data, str):
        return base64.b64decode(data)
    raise AccountLayoutError(f"unsupported account data encoding {type(data).__name__}")


async def find_withheld_accounts(
    client: SolanaClient,
    mint: Pubkey,
    program_id: Pubkey = TOKEN_2022_PROGRAM_ID,
) -> List[WithheldAccount]:
    """
    Every token account of ``mint`` whose withheld fee balance is above zero.

    An account that does not unpack raises AccountLayoutError rather than
    being skipped; an unreadable account could be hiding withheld fees.
    Results are ordered by address so repeated scans compare equal.
    """
    accounts = await client.get_program_accounts(program_id, filters=[mint_filter(mint)])

    withheld: List[WithheldAccount] = []
    for account_info in accounts:
        address = Pubkey.from_string(account_info["pubkey"])
        owner = account_info["account"].get("owner")
        if owner is not None and owner != str(program_id):
            raise AccountLayoutError(f"account is owned by {owner}, not {program_id}", str(address))

        account = unpack_account(address, account_data(account_info["account"]))
        if account.mint != mint:
            raise AccountLayoutError(f"account belongs to mint {account.mint}, not {mint}", str(address))

        fee_amount = account.transfer_fee_amount
        if fee_amount is not None and fee_amount.withheld_amount > 0:
            withheld.append(
                WithheldAccount(
                    address=address,
                    owner=account.owner,
                    withheld_amount=fee_amount.withheld_amount,
                )
            )

    withheld.sort(key=lambda a: bytes(a.address))
    logger.info(
        "Discovered withheld fees",
        mint=str(mint),
        scanned=len(accounts),
        accounts=len(withheld),
        total=total_withheld(withheld),
    )
    return withheld


def total_withheld(accounts: List[WithheldAccount]) -> int:
    return sum(a.withheld_amount for a in accounts)


async def get_mint(client: SolanaClient, mint: Pubkey) -> Optional[Mint]:
    """Fetch and unpack a mint; None when the account does not exist"""
    info = await client.get_account_info(mint)
    if info is None:
        return None
    if info.get("owner") != str(TOKEN_2022_PROGRAM_ID):
        raise AccountLayoutError(f"mint is owned by {info.get('owner')}", str(mint))
    return unpack_mint(mint, account_data(info))
