"""Unit tests for the Solana RPC client wrapper"""
import pytest
from unittest.mock import AsyncMock, MagicMock
from solana.rpc.core import RPCException, UnconfirmedTxError
from solders.hash import Hash
from solders.keypair import Keypair
from solders.signature import Signature

from fee_orchestrator.exceptions import ConfirmationError, SubmissionError, ValidationError
from fee_orchestrator.services import instructions as ix
from fee_orchestrator.services.solana_client import SolanaClient


@pytest.fixture
def rpc():
    """Mocked solana-py AsyncClient"""
    mock = MagicMock()
    latest = MagicMock()
    latest.value.blockhash = Hash.new_unique()
    latest.value.last_valid_block_height = 100
    mock.get_latest_blockhash = AsyncMock(return_value=latest)
    mock.send_transaction = AsyncMock(return_value=MagicMock(value=Signature.new_unique()))
    mock.confirm_transaction = AsyncMock(return_value=MagicMock(value=[MagicMock(err=None)]))
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def client(rpc):
    client = SolanaClient(rpc_url="https://api.devnet.solana.com")
    client._client = rpc
    return client


def _mint_to(authority: Keypair):
    return ix.mint_to(Keypair().pubkey(), Keypair().pubkey(), authority.pubkey(), 10)


class TestSolanaClient:
    """Tests for SolanaClient"""

    def test_not_connected(self):
        client = SolanaClient(rpc_url="https://api.devnet.solana.com")
        with pytest.raises(RuntimeError, match="not connected"):
            client.client

    @pytest.mark.asyncio
    async def test_send_and_confirm(self, client, rpc):
        payer = Keypair()
        signature = await client.send_and_confirm_transaction([_mint_to(payer)], [payer])

        assert signature == str(rpc.send_transaction.return_value.value)
        assert rpc.send_transaction.call_args.kwargs["opts"].skip_confirmation
        transaction = rpc.send_transaction.call_args.args[0]
        assert transaction.message.account_keys[0] == payer.pubkey()
        rpc.confirm_transaction.assert_awaited_once()
        assert rpc.confirm_transaction.call_args.kwargs["last_valid_block_height"] == 100

    @pytest.mark.asyncio
    async def test_duplicate_signers_collapsed(self, client, rpc):
        payer = Keypair()
        await client.send_and_confirm_transaction([_mint_to(payer)], [payer, payer])
        transaction = rpc.send_transaction.call_args.args[0]
        assert len(transaction.signatures) == 1

    @pytest.mark.asyncio
    async def test_missing_signer(self, client, rpc):
        payer = Keypair()
        authority = Keypair()
        with pytest.raises(ValidationError, match="missing signatures"):
            await client.send_and_confirm_transaction([_mint_to(authority)], [payer])
        rpc.send_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_transaction(self, client):
        with pytest.raises(ValidationError):
            await client.send_and_confirm_transaction([], [Keypair()])

    @pytest.mark.asyncio
    async def test_preflight_rejection(self, client, rpc):
        rpc.send_transaction.side_effect = RPCException("custom program error: 0x1")
        payer = Keypair()
        with pytest.raises(SubmissionError) as exc_info:
            await client.send_and_confirm_transaction([_mint_to(payer)], [payer])
        assert exc_info.value.signature is not None
        assert exc_info.value.reason == "custom program error: 0x1"

    @pytest.mark.asyncio
    async def test_failed_status(self, client, rpc):
        rpc.confirm_transaction.return_value = MagicMock(value=[MagicMock(err="InstructionError")])
        payer = Keypair()
        with pytest.raises(SubmissionError, match="InstructionError"):
            await client.send_and_confirm_transaction([_mint_to(payer)], [payer])

    @pytest.mark.asyncio
    async def test_unconfirmed(self, client, rpc):
        rpc.confirm_transaction.side_effect = UnconfirmedTxError("timed out")
        payer = Keypair()
        with pytest.raises(ConfirmationError) as exc_info:
            await client.send_and_confirm_transaction([_mint_to(payer)], [payer])
        assert exc_info.value.signature == str(rpc.send_transaction.return_value.value)

    @pytest.mark.asyncio
    async def test_disconnect(self, client, rpc):
        await client.disconnect()
        rpc.close.assert_awaited_once()
        with pytest.raises(RuntimeError):
            client.client
