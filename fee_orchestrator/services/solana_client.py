"""Solana RPC Client wrapper for the fee orchestrator"""
from typing import Optional, List, Dict, Any, Sequence, Union

import structlog
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import (
    RPCException,
    TransactionExpiredBlockheightExceededError,
    UnconfirmedTxError,
)
from solana.rpc.types import MemcmpOpts, TxOpts
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from fee_orchestrator.config import get_settings
from fee_orchestrator.exceptions import ConfirmationError, SubmissionError, ValidationError

logger = structlog.get_logger()
settings = get_settings()

ProgramAccountFilter = Union[int, MemcmpOpts]


class SolanaClient:
    """Async Solana RPC client that builds, signs and confirms transactions"""

    def __init__(self, rpc_url: Optional[str] = None, commitment: Optional[str] = None):
        self.rpc_url = rpc_url or settings.solana_rpc_url
        self.commitment = Commitment(commitment or settings.commitment)
        self._client: Optional[AsyncClient] = None

    async def connect(self) -> None:
        """Establish connection to Solana RPC"""
        if self._client is None:
            self._client = AsyncClient(self.rpc_url, commitment=self.commitment)
            logger.info("Connected to Solana RPC", url=self.rpc_url)

    async def disconnect(self) -> None:
        """Close RPC connection"""
        if self._client:
            await self._client.close()
            self._client = None
            logger.info("Disconnected from Solana RPC")

    @property
    def client(self) -> AsyncClient:
        """Get the async client, raise if not connected"""
        if self._client is None:
            raise RuntimeError("Solana client not connected. Call connect() first.")
        return self._client

    async def get_epoch(self) -> int:
        """Get current epoch, used to pick the active transfer fee schedule"""
        response = await self.client.get_epoch_info(commitment=self.commitment)
        return response.value.epoch

    async def get_balance(self, address: Pubkey) -> int:
        """Get lamport balance"""
        response = await self.client.get_balance(address, commitment=self.commitment)
        return response.value

    async def get_minimum_balance_for_rent_exemption(self, size: int) -> int:
        """Lamports needed to keep an account of ``size`` bytes rent exempt"""
        response = await self.client.get_minimum_balance_for_rent_exemption(
            size, commitment=self.commitment
        )
        return response.value

    async def get_account_info(
        self,
        address: Pubkey,
    ) -> Optional[Dict[str, Any]]:
        """Get account info"""
        response = await self.client.get_account_info(
            address,
            commitment=self.commitment,
            encoding="base64",
        )
        if response.value is None:
            return None
        return {
            "lamports": response.value.lamports,
            "owner": str(response.value.owner),
            "data": response.value.data,
            "executable": response.value.executable,
            "rent_epoch": response.value.rent_epoch,
        }

    async def get_program_accounts(
        self,
        program_id: Pubkey,
        filters: Optional[Sequence[ProgramAccountFilter]] = None,
    ) -> List[Dict[str, Any]]:
        """Get all accounts owned by a program"""
        response = await self.client.get_program_accounts(
            program_id,
            commitment=self.commitment,
            encoding="base64",
            filters=filters,
        )
        return [
            {
                "pubkey": str(account.pubkey),
                "account": {
                    "lamports": account.account.lamports,
                    "data": account.account.data,
                    "owner": str(account.account.owner),
                }
            }
            for account in response.value
        ]

    async def request_airdrop(self, address: Pubkey, lamports: int) -> str:
        """Request devnet SOL and wait for the airdrop to confirm"""
        try:
            response = await self.client.request_airdrop(
                address, lamports, commitment=self.commitment
            )
        except RPCException as e:
            raise SubmissionError(f"Airdrop rejected: {e}", reason=e.args[0] if e.args else None)
        except SolanaRpcException as e:
            raise ConfirmationError(f"Airdrop request failed: {e}")
        blockhash = await self.client.get_latest_blockhash(commitment=self.commitment)
        await self.confirm_transaction(
            response.value, blockhash.value.last_valid_block_height
        )
        return str(response.value)

    async def send_and_confirm_transaction(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair],
        payer: Optional[Keypair] = None,
    ) -> str:
        """
        Build, sign, send and confirm one atomic transaction.

        Raises:
            ValidationError: a required signer is missing
            SubmissionError: preflight or on-chain execution rejected it
            ConfirmationError: it could not be confirmed in time
        """
        if not instructions:
            raise ValidationError("a transaction needs at least one instruction")
        payer = payer or signers[0]
        unique: Dict[Pubkey, Keypair] = {payer.pubkey(): payer}
        for kp in signers:
            unique.setdefault(kp.pubkey(), kp)
        signers = list(unique.values())

        latest = await self.client.get_latest_blockhash(commitment=self.commitment)
        blockhash = latest.value.blockhash
        message = Message.new_with_blockhash(list(instructions), payer.pubkey(), blockhash)

        required = message.account_keys[:message.header.num_required_signatures]
        provided = {kp.pubkey() for kp in signers}
        missing = [str(key) for key in required if key not in provided]
        if missing:
            raise ValidationError(f"missing signatures for {', '.join(missing)}")
        signers = [kp for kp in signers if kp.pubkey() in required]

        transaction = Transaction(signers, message, blockhash)
        try:
            response = await self.client.send_transaction(
                transaction,
                opts=TxOpts(skip_confirmation=True, preflight_commitment=self.commitment),
            )
        except RPCException as e:
            logger.error("Transaction rejected", error=str(e))
            raise SubmissionError(
                f"Transaction rejected: {e}",
                signature=str(transaction.signatures[0]),
                reason=e.args[0] if e.args else None,
            )
        except SolanaRpcException as e:
            raise ConfirmationError(
                f"Failed to submit transaction: {e}",
                signature=str(transaction.signatures[0]),
            )

        signature = response.value
        await self.confirm_transaction(signature, latest.value.last_valid_block_height)
        logger.info(
            "Transaction confirmed",
            signature=str(signature),
            url=settings.explorer_tx_url(str(signature)),
        )
        return str(signature)

    async def confirm_transaction(
        self,
        signature: Signature,
        last_valid_block_height: Optional[int] = None,
    ) -> None:
        """Wait for ``signature`` to reach the client commitment"""
        try:
            response = await self.client.confirm_transaction(
                signature,
                commitment=self.commitment,
                sleep_seconds=settings.confirmation_sleep_seconds,
                last_valid_block_height=last_valid_block_height,
            )
        except (UnconfirmedTxError, TransactionExpiredBlockheightExceededError) as e:
            raise ConfirmationError(f"Transaction not confirmed: {e}", signature=str(signature))
        except SolanaRpcException as e:
            raise ConfirmationError(f"Confirmation request failed: {e}", signature=str(signature))

        status = response.value[0] if response.value else None
        if status is not None and status.err is not None:
            raise SubmissionError(
                f"Transaction failed: {status.err}",
                signature=str(signature),
                reason=status.err,
            )


# Singleton instance
_solana_client: Optional[SolanaClient] = None


async def get_solana_client() -> SolanaClient:
    """Get or create Solana client singleton"""
    global _solana_client
    if _solana_client is None:
        _solana_client = SolanaClient()
        await _solana_client.connect()
    return _solana_client


async def close_solana_client() -> None:
    """Close Solana client singleton"""
    global _solana_client
    if _solana_client is not None:
        await _solana_client.disconnect()
        _solana_client = None
