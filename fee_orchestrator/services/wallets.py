"""Wallet provisioning: persisted keypairs and devnet funding"""
import json
import os
from pathlib import Path
from typing import Optional

import structlog
from dotenv import dotenv_values, set_key
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from fee_orchestrator.config import get_settings
from fee_orchestrator.exceptions import ValidationError
from fee_orchestrator.services.solana_client import SolanaClient

logger = structlog.get_logger()
settings = get_settings()

LAMPORTS_PER_SOL = 1_000_000_000


def keypair_from_json(value: str) -> Keypair:
    """Parse a JSON array of the 64 secret key bytes"""
    try:
        secret = bytes(json.loads(value))
        return Keypair.from_bytes(secret)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"invalid keypair encoding: {e}")


def keypair_to_json(keypair: Keypair) -> str:
    return json.dumps(list(bytes(keypair)))


def get_or_create_keypair(name: str, env_file: Optional[str] = None) -> Keypair:
    """
    Return the keypair stored under ``name``, generating and persisting one if absent.

    The process environment is checked first, then the ``.env`` file. New keys
    are written to the ``.env`` file so later runs reuse the same wallet.
    """
    path = Path(env_file or settings.wallet_env_file)
    stored = os.environ.get(name)
    if stored is None and path.exists():
        stored = dotenv_values(path).get(name)

    if stored:
        keypair = keypair_from_json(stored)
        logger.debug("Loaded keypair", name=name, pubkey=str(keypair.pubkey()))
        return keypair

    keypair = Keypair()
    path.touch(exist_ok=True)
    set_key(str(path), name, keypair_to_json(keypair))
    logger.info("Generated new keypair", name=name, pubkey=str(keypair.pubkey()), env_file=str(path))
    return keypair


async def airdrop_sol_if_needed(
    client: SolanaClient,
    address: Pubkey,
    threshold_lamports: Optional[int] = None,
    amount_lamports: Optional[int] = None,
) -> Optional[str]:
    """Fund ``address`` when its balance is below the threshold"""
    threshold = settings.airdrop_threshold_lamports if threshold_lamports is None else threshold_lamports
    amount = settings.airdrop_amount_lamports if amount_lamports is None else amount_lamports

    balance = await client.get_balance(address)
    logger.info("Wallet balance", address=str(address), sol=balance / LAMPORTS_PER_SOL)
    if balance >= threshold:
        return None

    logger.info("Requesting airdrop", address=str(address), sol=amount / LAMPORTS_PER_SOL)
    signature = await client.request_airdrop(address, amount)
    new_balance = await client.get_balance(address)
    logger.info("Airdrop confirmed", signature=signature, sol=new_balance / LAMPORTS_PER_SOL)
    return signature
