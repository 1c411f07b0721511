"""Pytest configuration and fixtures for fee orchestrator tests"""
from dataclasses import dataclass
from typing import AsyncGenerator, Dict, List, Optional, Sequence

import pytest
import pytest_asyncio
from dotenv import load_dotenv
from httpx import AsyncClient, ASGITransport
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYS_PROGRAM_ID
from solders.system_program import decode_create_account

from fee_orchestrator.exceptions import SubmissionError
from fee_orchestrator.services.instructions import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    decode_token_instruction,
    get_associated_token_address,
)
from fee_orchestrator.services.token_layout import (
    TOKEN_2022_PROGRAM_ID,
    ExtensionType,
    Mint,
    MintCloseAuthority,
    TokenAccount,
    TransferFee,
    TransferFeeAmount,
    TransferFeeConfig,
    get_mint_len,
    pack_account,
    pack_mint,
    unpack_account,
    unpack_mint,
)
from fee_orchestrator.services.token_service import TokenService

# Load environment variables
load_dotenv()


class ProgramError(Exception):
    """Raised inside the fake program; surfaces as SubmissionError"""


class FakeCluster:
    """
    In-memory stand-in for SolanaClient.

    Executes the system, associated-token and Token-2022 instructions this
    package builds against in-memory Mint/TokenAccount state. A transaction is
    atomic: any program error rolls the whole state back.
    """

    def __init__(self, epoch: int = 0):
        self.epoch = epoch
        self.lamports: Dict[Pubkey, int] = {}
        self.allocations: Dict[Pubkey, int] = {}
        self.pending_extensions: Dict[Pubkey, Dict[int, object]] = {}
        self.mints: Dict[Pubkey, Mint] = {}
        self.token_accounts: Dict[Pubkey, TokenAccount] = {}
        self.raw_accounts: Dict[Pubkey, dict] = {}
        self.transactions: List[List[Instruction]] = []

    # --- reads --------------------------------------------------------------

    async def get_epoch(self) -> int:
        return self.epoch

    async def get_balance(self, address: Pubkey) -> int:
        return self.lamports.get(address, 0)

    async def request_airdrop(self, address: Pubkey, lamports: int) -> str:
        self.lamports[address] = self.lamports.get(address, 0) + lamports
        return str(Signature.new_unique())

    async def get_minimum_balance_for_rent_exemption(self, size: int) -> int:
        return (size + 128) * 6960

    def _program_accounts(self) -> Dict[Pubkey, dict]:
        accounts = {
            address: {"lamports": 0, "data": pack_mint(mint), "owner": str(TOKEN_2022_PROGRAM_ID)}
            for address, mint in self.mints.items()
        }
        accounts.update({
            address: {"lamports": 0, "data": pack_account(account), "owner": str(TOKEN_2022_PROGRAM_ID)}
            for address, account in self.token_accounts.items()
        })
        accounts.update(self.raw_accounts)
        return accounts

    async def get_account_info(self, address: Pubkey) -> Optional[dict]:
        return self._program_accounts().get(address)

    async def get_program_accounts(self, program_id: Pubkey, filters=None) -> List[dict]:
        results = []
        for address, account in self._program_accounts().items():
            if account["owner"] != str(program_id):
                continue
            data = account["data"]
            matched = True
            for f in filters or []:
                expected = bytes(Pubkey.from_string(f.bytes))
                if data[f.offset:f.offset + len(expected)] != expected:
                    matched = False
            if matched:
                results.append({"pubkey": str(address), "account": dict(account)})
        return results

    def inject_raw_account(self, address: Pubkey, data: bytes, owner: Pubkey = TOKEN_2022_PROGRAM_ID) -> None:
        self.raw_accounts[address] = {"lamports": 0, "data": data, "owner": str(owner)}

    # --- writes -------------------------------------------------------------

    async def send_and_confirm_transaction(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair],
        payer: Optional[Keypair] = None,
    ) -> str:
        signed = {kp.pubkey() for kp in signers}
        if payer is not None:
            signed.add(payer.pubkey())

        snapshot = self._snapshot()
        try:
            for instruction in instructions:
                for meta in instruction.accounts:
                    if meta.is_signer and meta.pubkey not in signed:
                        raise ProgramError(f"missing required signature for {meta.pubkey}")
                self._execute(instruction)
        except ProgramError as e:
            self._restore(snapshot)
            raise SubmissionError(f"Transaction failed: {e}", reason=str(e))

        self.transactions.append(list(instructions))
        return str(Signature.new_unique())

    def _snapshot(self) -> tuple:
        return (
            dict(self.allocations),
            {address: dict(pending) for address, pending in self.pending_extensions.items()},
            {address: pack_mint(mint) for address, mint in self.mints.items()},
            {address: pack_account(account) for address, account in self.token_accounts.items()},
        )

    def _restore(self, snapshot: tuple) -> None:
        allocations, pending, mints, accounts = snapshot
        self.allocations = allocations
        self.pending_extensions = pending
        self.mints = {address: unpack_mint(address, data) for address, data in mints.items()}
        self.token_accounts = {
            address: unpack_account(address, data) for address, data in accounts.items()
        }

    def _execute(self, instruction: Instruction) -> None:
        if instruction.program_id == SYS_PROGRAM_ID:
            params = decode_create_account(instruction)
            if params["to_pubkey"] in self.allocations or params["to_pubkey"] in self.mints:
                raise ProgramError("account already in use")
            self.allocations[params["to_pubkey"]] = params["space"]
            self.pending_extensions[params["to_pubkey"]] = {}
        elif instruction.program_id == ASSOCIATED_TOKEN_PROGRAM_ID:
            self._create_associated_account(instruction)
        elif instruction.program_id == TOKEN_2022_PROGRAM_ID:
            self._execute_token(instruction)
        else:
            raise ProgramError(f"unknown program {instruction.program_id}")

    def _create_associated_account(self, instruction: Instruction) -> None:
        keys = [meta.pubkey for meta in instruction.accounts]
        address, owner, mint_address = keys[1], keys[2], keys[3]
        if address != get_associated_token_address(owner, mint_address):
            raise ProgramError("associated address mismatch")
        if address in self.token_accounts:
            raise ProgramError("account already in use")
        mint = self._mint(mint_address)
        extensions: Dict[int, object] = {ExtensionType.IMMUTABLE_OWNER: b""}
        if mint.transfer_fee_config is not None:
            extensions[ExtensionType.TRANSFER_FEE_AMOUNT] = TransferFeeAmount(withheld_amount=0)
        self.token_accounts[address] = TokenAccount(
            address=address, mint=mint_address, owner=owner, amount=0, extensions=extensions
        )

    def _mint(self, address: Pubkey) -> Mint:
        mint = self.mints.get(address)
        if mint is None:
            raise ProgramError(f"mint {address} not initialized")
        return mint

    def _account(self, address: Pubkey, mint: Pubkey) -> TokenAccount:
        account = self.token_accounts.get(address)
        if account is None:
            raise ProgramError(f"token account {address} not found")
        if account.mint != mint:
            raise ProgramError("mint mismatch")
        return account

    def _fee_config(self, mint: Mint) -> TransferFeeConfig:
        if mint.transfer_fee_config is None:
            raise ProgramError("mint has no transfer fee config")
        return mint.transfer_fee_config

    def _execute_token(self, instruction: Instruction) -> None:
        decoded = decode_token_instruction(instruction)
        keys = decoded.accounts
        args = decoded.args

        match decoded.kind:
            case "initialize_transfer_fee_config" | "initialize_mint_close_authority":
                mint_address = keys[0]
                if mint_address in self.mints:
                    raise ProgramError("mint already initialized")
                if mint_address not in self.allocations:
                    raise ProgramError("account not allocated")
                if decoded.kind == "initialize_transfer_fee_config":
                    fee = TransferFee(self.epoch, args["maximum_fee"], args["transfer_fee_basis_points"])
                    self.pending_extensions[mint_address][ExtensionType.TRANSFER_FEE_CONFIG] = TransferFeeConfig(
                        transfer_fee_config_authority=args["transfer_fee_config_authority"],
                        withdraw_withheld_authority=args["withdraw_withheld_authority"],
                        withheld_amount=0,
                        older_transfer_fee=fee,
                        newer_transfer_fee=fee,
                    )
                else:
                    self.pending_extensions[mint_address][ExtensionType.MINT_CLOSE_AUTHORITY] = (
                        MintCloseAuthority(close_authority=args["close_authority"])
                    )

            case "initialize_mint":
                mint_address = keys[0]
                if mint_address in self.mints:
                    raise ProgramError("mint already initialized")
                if mint_address not in self.allocations:
                    raise ProgramError("account not allocated")
                extensions = self.pending_extensions.pop(mint_address)
                if self.allocations.pop(mint_address) != get_mint_len(list(extensions)):
                    raise ProgramError("invalid account data size for extensions")
                self.mints[mint_address] = Mint(
                    address=mint_address,
                    mint_authority=args["mint_authority"],
                    supply=0,
                    decimals=args["decimals"],
                    is_initialized=True,
                    freeze_authority=args["freeze_authority"],
                    extensions=extensions,
                )

            case "mint_to":
                mint = self._mint(keys[0])
                if keys[2] != mint.mint_authority:
                    raise ProgramError("owner does not match mint authority")
                self._account(keys[1], keys[0]).amount += args["amount"]
                mint.supply += args["amount"]

            case "transfer_checked_with_fee":
                source_address, mint_address, destination_address, authority = keys
                mint = self._mint(mint_address)
                config = self._fee_config(mint)
                source = self._account(source_address, mint_address)
                destination = self._account(destination_address, mint_address)
                if authority != source.owner:
                    raise ProgramError("owner does not match")
                if args["decimals"] != mint.decimals:
                    raise ProgramError("mint decimals mismatch")
                if args["fee"] != config.calculate_epoch_fee(self.epoch, args["amount"]):
                    raise ProgramError("fee mismatch")
                if source.amount < args["amount"]:
                    raise ProgramError("insufficient funds")
                source.amount -= args["amount"]
                destination.amount += args["amount"] - args["fee"]
                destination.transfer_fee_amount.withheld_amount += args["fee"]

            case "withdraw_withheld_tokens_from_mint":
                mint_address, destination_address, authority = keys
                config = self._fee_config(self._mint(mint_address))
                if authority != config.withdraw_withheld_authority:
                    raise ProgramError("withdraw authority mismatch")
                self._account(destination_address, mint_address).amount += config.withheld_amount
                config.withheld_amount = 0

            case "withdraw_withheld_tokens_from_accounts":
                mint_address, destination_address, authority, *sources = keys
                config = self._fee_config(self._mint(mint_address))
                if authority != config.withdraw_withheld_authority:
                    raise ProgramError("withdraw authority mismatch")
                if args["num_token_accounts"] != len(sources):
                    raise ProgramError("source count mismatch")
                destination = self._account(destination_address, mint_address)
                for source_address in sources:
                    fee_amount = self._account(source_address, mint_address).transfer_fee_amount
                    destination.amount += fee_amount.withheld_amount
                    fee_amount.withheld_amount = 0

            case "harvest_withheld_tokens_to_mint":
                mint_address, *sources = keys
                config = self._fee_config(self._mint(mint_address))
                for source_address in sources:
                    fee_amount = self._account(source_address, mint_address).transfer_fee_amount
                    config.withheld_amount += fee_amount.withheld_amount
                    fee_amount.withheld_amount = 0

            case "close_account":
                address, destination, authority = keys
                if address in self.mints:
                    mint = self.mints[address]
                    close = mint.mint_close_authority
                    if close is None or close.close_authority != authority:
                        raise ProgramError("mint has no matching close authority")
                    if mint.supply:
                        raise ProgramError("mint supply is not zero")
                    del self.mints[address]
                else:
                    account = self.token_accounts.get(address)
                    if account is None or account.owner != authority:
                        raise ProgramError("cannot close account")
                    if account.amount or account.withheld_amount:
                        raise ProgramError("account not empty")
                    del self.token_accounts[address]

            case _:
                raise ProgramError(f"unsupported instruction {decoded.kind}")


@dataclass
class FeeMintSetup:
    """A transfer-fee mint with a funded source and an empty destination account"""
    tokens: TokenService
    payer: Keypair
    recipient: Keypair
    mint: Pubkey
    source: Pubkey
    destination: Pubkey
    decimals: int
    fee_basis_points: int
    maximum_fee: int
    transfer_fee: TransferFee


@pytest.fixture
def cluster() -> FakeCluster:
    """Fresh in-memory cluster"""
    return FakeCluster()


@pytest.fixture
def payer() -> Keypair:
    return Keypair()


@pytest.fixture
def recipient() -> Keypair:
    return Keypair()


@pytest_asyncio.fixture(scope="function")
async def fee_mint(cluster: FakeCluster, payer: Keypair, recipient: Keypair) -> FeeMintSetup:
    """Mint with 50 bps / max 5000 fee; 1,000,000,000 tokens minted to the payer's account"""
    tokens = TokenService(cluster, payer)
    creation = await tokens.create_mint_with_transfer_fee(
        decimals=9, transfer_fee_basis_points=50, maximum_fee=5_000
    )
    source, _ = await tokens.create_associated_token_account(payer.pubkey(), creation.mint)
    await tokens.mint_to(creation.mint, source, 1_000_000_000)
    destination, _ = await tokens.create_associated_token_account(recipient.pubkey(), creation.mint)
    return FeeMintSetup(
        tokens=tokens,
        payer=payer,
        recipient=recipient,
        mint=creation.mint,
        source=source,
        destination=destination,
        decimals=9,
        fee_basis_points=50,
        maximum_fee=5_000,
        transfer_fee=await tokens.get_transfer_fee(creation.mint),
    )


async def transfer_with_fee(setup: FeeMintSetup, amount: int = 1_000_000, destination: Optional[Pubkey] = None):
    """Fee-bearing transfer from the setup's source account"""
    return await setup.tokens.transfer_checked_with_fee(
        setup.source,
        setup.mint,
        destination or setup.destination,
        setup.payer,
        amount,
        setup.decimals,
        setup.transfer_fee,
    )


@pytest.fixture
def transfer():
    """Helper performing a fee-bearing transfer on a FeeMintSetup"""
    return transfer_with_fee


@pytest_asyncio.fixture(scope="function")
async def client(cluster: FakeCluster) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client backed by the fake cluster"""
    from fee_orchestrator.main import app
    from fee_orchestrator.services.solana_client import get_solana_client

    async def override_get_solana_client():
        return cluster

    app.dependency_overrides[get_solana_client] = override_get_solana_client

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
