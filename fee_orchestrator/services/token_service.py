"""Token-2022 operations, one confirmed transaction each"""
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import structlog
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from fee_orchestrator.exceptions import ValidationError
from fee_orchestrator.services import instructions as ix
from fee_orchestrator.services.discovery import get_mint
from fee_orchestrator.services.fees import (
    TransferFeeQuote,
    check_expected_fee,
    validate_fee_parameters,
)
from fee_orchestrator.services.solana_client import SolanaClient
from fee_orchestrator.services.token_layout import (
    ExtensionType,
    TransferFee,
    get_mint_len,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class TransferFeeExtension:
    """Transfer fee settings applied when the mint is created"""
    transfer_fee_basis_points: int
    maximum_fee: int
    transfer_fee_config_authority: Optional[Pubkey] = None
    withdraw_withheld_authority: Optional[Pubkey] = None

    extension_type = ExtensionType.TRANSFER_FEE_CONFIG

    def __post_init__(self):
        validate_fee_parameters(self.transfer_fee_basis_points, self.maximum_fee)

    def instruction(self, mint: Pubkey) -> Instruction:
        return ix.initialize_transfer_fee_config(
            mint,
            self.transfer_fee_config_authority,
            self.withdraw_withheld_authority,
            self.transfer_fee_basis_points,
            self.maximum_fee,
        )


@dataclass(frozen=True)
class CloseAuthorityExtension:
    close_authority: Pubkey

    extension_type = ExtensionType.MINT_CLOSE_AUTHORITY

    def instruction(self, mint: Pubkey) -> Instruction:
        return ix.initialize_mint_close_authority(mint, self.close_authority)


MintExtension = Union[TransferFeeExtension, CloseAuthorityExtension]


def build_create_mint_instructions(
    payer: Pubkey,
    mint: Pubkey,
    lamports: int,
    decimals: int,
    mint_authority: Pubkey,
    freeze_authority: Optional[Pubkey],
    extensions: Sequence[MintExtension],
) -> List[Instruction]:
    """
    Instructions that create and initialize a mint, in the order the program requires:

    1. allocate the account at the size of the requested extension set
    2. initialize every extension
    3. initialize the base mint fields last
    """
    types = [ext.extension_type for ext in extensions]
    if len(set(types)) != len(types):
        raise ValidationError("each mint extension may be configured only once")
    space = get_mint_len(types)
    return (
        [ix.create_mint_account(payer, mint, space, lamports)]
        + [ext.instruction(mint) for ext in extensions]
        + [ix.initialize_mint(mint, decimals, mint_authority, freeze_authority)]
    )


@dataclass
class MintCreation:
    """Result of creating a mint"""
    mint: Pubkey
    signature: str
    space: int
    lamports: int
    decimals: int


class TokenService:
    """Submits the token operations used around withheld fee collection"""

    def __init__(self, client: SolanaClient, payer: Keypair):
        self.client = client
        self.payer = payer

    async def create_mint(
        self,
        decimals: int,
        extensions: Sequence[MintExtension] = (),
        mint_keypair: Optional[Keypair] = None,
        mint_authority: Optional[Pubkey] = None,
        freeze_authority: Optional[Pubkey] = None,
    ) -> MintCreation:
        """Create a mint account with ``extensions`` in a single transaction"""
        mint_keypair = mint_keypair or Keypair()
        mint = mint_keypair.pubkey()
        space = get_mint_len([ext.extension_type for ext in extensions])
        lamports = await self.client.get_minimum_balance_for_rent_exemption(space)

        instructions = build_create_mint_instructions(
            payer=self.payer.pubkey(),
            mint=mint,
            lamports=lamports,
            decimals=decimals,
            mint_authority=mint_authority or self.payer.pubkey(),
            freeze_authority=freeze_authority,
            extensions=extensions,
        )
        signature = await self.client.send_and_confirm_transaction(
            instructions, [self.payer, mint_keypair]
        )
        logger.info(
            "Created mint",
            mint=str(mint),
            extensions=[ext.extension_type.name for ext in extensions],
            space=space,
            signature=signature,
        )
        return MintCreation(
            mint=mint, signature=signature, space=space, lamports=lamports, decimals=decimals
        )

    async def create_mint_with_transfer_fee(
        self,
        decimals: int,
        transfer_fee_basis_points: int,
        maximum_fee: int,
        mint_keypair: Optional[Keypair] = None,
        transfer_fee_config_authority: Optional[Pubkey] = None,
        withdraw_withheld_authority: Optional[Pubkey] = None,
    ) -> MintCreation:
        """Mint whose transfers withhold a fee; both fee authorities default to the payer"""
        extension = TransferFeeExtension(
            transfer_fee_basis_points=transfer_fee_basis_points,
            maximum_fee=maximum_fee,
            transfer_fee_config_authority=transfer_fee_config_authority or self.payer.pubkey(),
            withdraw_withheld_authority=withdraw_withheld_authority or self.payer.pubkey(),
        )
        return await self.create_mint(decimals, [extension], mint_keypair=mint_keypair)

    async def create_mint_with_close_authority(
        self,
        decimals: int,
        close_authority: Optional[Pubkey] = None,
        mint_keypair: Optional[Keypair] = None,
    ) -> MintCreation:
        extension = CloseAuthorityExtension(close_authority=close_authority or self.payer.pubkey())
        return await self.create_mint(
            decimals,
            [extension],
            mint_keypair=mint_keypair,
            freeze_authority=self.payer.pubkey(),
        )

    async def create_associated_token_account(self, owner: Pubkey, mint: Pubkey) -> Tuple[Pubkey, str]:
        """Create the associated token account of ``owner`` for ``mint``"""
        address = ix.get_associated_token_address(owner, mint)
        signature = await self.client.send_and_confirm_transaction(
            [ix.create_associated_token_account(self.payer.pubkey(), owner, mint)],
            [self.payer],
        )
        logger.info("Created token account", address=str(address), owner=str(owner), mint=str(mint))
        return address, signature

    async def mint_to(
        self,
        mint: Pubkey,
        destination: Pubkey,
        amount: int,
        mint_authority: Optional[Keypair] = None,
    ) -> str:
        authority = mint_authority or self.payer
        signature = await self.client.send_and_confirm_transaction(
            [ix.mint_to(mint, destination, authority.pubkey(), amount)],
            [self.payer, authority],
        )
        logger.info("Minted tokens", mint=str(mint), destination=str(destination), amount=amount)
        return signature

    async def get_transfer_fee(self, mint: Pubkey) -> TransferFee:
        """Fee schedule currently in force for ``mint``"""
        unpacked = await get_mint(self.client, mint)
        if unpacked is None:
            raise ValidationError(f"mint {mint} does not exist")
        config = unpacked.transfer_fee_config
        if config is None:
            raise ValidationError(f"mint {mint} has no transfer fee extension")
        epoch = await self.client.get_epoch()
        return config.get_epoch_fee(epoch)

    async def transfer_checked_with_fee(
        self,
        source: Pubkey,
        mint: Pubkey,
        destination: Pubkey,
        owner: Keypair,
        amount: int,
        decimals: int,
        transfer_fee: TransferFee,
        fee: Optional[int] = None,
    ) -> Tuple[str, TransferFeeQuote]:
        """
        Transfer ``amount`` with the fee checked against ``transfer_fee``.

        When ``fee`` is given it must equal the locally computed fee; the
        transaction is never built otherwise.
        """
        expected = transfer_fee.calculate_fee(amount)
        if fee is not None:
            check_expected_fee(
                amount, fee, transfer_fee.transfer_fee_basis_points, transfer_fee.maximum_fee
            )
        quote = TransferFeeQuote(amount=amount, fee=expected)

        signature = await self.client.send_and_confirm_transaction(
            [ix.transfer_checked_with_fee(
                source, mint, destination, owner.pubkey(), amount, decimals, quote.fee
            )],
            [self.payer, owner],
        )
        logger.info(
            "Transferred with fee",
            mint=str(mint),
            source=str(source),
            destination=str(destination),
            amount=amount,
            fee=quote.fee,
            net_amount=quote.net_amount,
        )
        return signature, quote

    async def close_account(
        self,
        account: Pubkey,
        destination: Pubkey,
        authority: Optional[Keypair] = None,
    ) -> str:
        """Close a token account or a mint with a close authority"""
        authority = authority or self.payer
        signature = await self.client.send_and_confirm_transaction(
            [ix.close_account(account, destination, authority.pubkey())],
            [self.payer, authority],
        )
        logger.info("Closed account", account=str(account), destination=str(destination))
        return signature
