"""Token-2022 instruction builders.

Each builder range-checks its integer arguments and packs them little-endian,
returning a solders ``Instruction`` ready to be placed in a transaction.
"""
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Optional, Sequence, Tuple

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYS_PROGRAM_ID
from solders.system_program import CreateAccountParams, create_account
from solders.sysvar import RENT

from fee_orchestrator.exceptions import ValidationError
from fee_orchestrator.services.fees import validate_amount, validate_fee_parameters
from fee_orchestrator.services.token_layout import TOKEN_2022_PROGRAM_ID

ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

MAX_WITHHELD_SOURCES = 255


class TokenInstruction(IntEnum):
    INITIALIZE_MINT = 0
    MINT_TO = 7
    CLOSE_ACCOUNT = 9
    INITIALIZE_MINT_CLOSE_AUTHORITY = 25
    TRANSFER_FEE_EXTENSION = 26


class TransferFeeInstruction(IntEnum):
    INITIALIZE_TRANSFER_FEE_CONFIG = 0
    TRANSFER_CHECKED_WITH_FEE = 1
    WITHDRAW_WITHHELD_TOKENS_FROM_MINT = 2
    WITHDRAW_WITHHELD_TOKENS_FROM_ACCOUNTS = 3
    HARVEST_WITHHELD_TOKENS_TO_MINT = 4


def _signer(pubkey: Pubkey, writable: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_signer=True, is_writable=writable)


def _writable(pubkey: Pubkey) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_signer=False, is_writable=True)


def _readonly(pubkey: Pubkey) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_signer=False, is_writable=False)


def _pack_optional_key(key: Optional[Pubkey]) -> bytes:
    if key is None:
        return b"\x00" + bytes(32)
    return b"\x01" + bytes(key)


def _pack_pubkey_option(key: Optional[Pubkey]) -> bytes:
    """Instruction-data option: a single 0 byte when absent, tag and key when present"""
    if key is None:
        return b"\x00"
    return b"\x01" + bytes(key)


def _validate_decimals(decimals: int) -> int:
    if isinstance(decimals, bool) or not isinstance(decimals, int) or not 0 <= decimals <= 255:
        raise ValidationError(f"decimals must fit in a u8, got {decimals!r}")
    return decimals


def _validate_sources(sources: Sequence[Pubkey]) -> list:
    sources = list(sources)
    if not sources:
        raise ValidationError("at least one source account is required")
    if len(sources) > MAX_WITHHELD_SOURCES:
        raise ValidationError(
            f"at most {MAX_WITHHELD_SOURCES} source accounts per instruction, got {len(sources)}"
        )
    if len(set(sources)) != len(sources):
        raise ValidationError("source accounts must be distinct")
    return sources


# --- account creation -------------------------------------------------------

def create_mint_account(
    payer: Pubkey,
    mint: Pubkey,
    space: int,
    lamports: int,
    program_id: Pubkey = TOKEN_2022_PROGRAM_ID,
) -> Instruction:
    """System program allocation of a mint account owned by the token program"""
    return create_account(
        CreateAccountParams(
            from_pubkey=payer,
            to_pubkey=mint,
            lamports=validate_amount(lamports, "lamports"),
            space=validate_amount(space, "space"),
            owner=program_id,
        )
    )


def get_associated_token_address(
    owner: Pubkey,
    mint: Pubkey,
    program_id: Pubkey = TOKEN_2022_PROGRAM_ID,
) -> Pubkey:
    """Derive the associated token account for (owner, mint)"""
    address, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(program_id), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


def create_associated_token_account(
    payer: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    program_id: Pubkey = TOKEN_2022_PROGRAM_ID,
) -> Instruction:
    associated = get_associated_token_address(owner, mint, program_id)
    return Instruction(
        program_id=ASSOCIATED_TOKEN_PROGRAM_ID,
        data=b"",
        accounts=[
            _signer(payer, writable=True),
            _writable(associated),
            _readonly(owner),
            _readonly(mint),
            _readonly(SYS_PROGRAM_ID),
            _readonly(program_id),
        ],
    )


# --- mint initialization ----------------------------------------------------

def initialize_transfer_fee_config(
    mint: Pubkey,
    transfer_fee_config_authority: Optional[Pubkey],
    withdraw_withheld_authority: Optional[Pubkey],
    transfer_fee_basis_points: int,
    maximum_fee: int,
    program_id: Pubkey = TOKEN_2022_PROGRAM_ID,
) -> Instruction:
    """Configure the transfer fee extension; must precede initialize_mint"""
    validate_fee_parameters(transfer_fee_basis_points, maximum_fee)
    data = (
        bytes([TokenInstruction.TRANSFER_FEE_EXTENSION, TransferFeeInstruction.INITIALIZE_TRANSFER_FEE_CONFIG])
        + _pack_pubkey_option(transfer_fee_config_authority)
        + _pack_pubkey_option(withdraw_withheld_authority)
        + struct.pack("<HQ", transfer_fee_basis_points, maximum_fee)
    )
    return Instruction(program_id=program_id, data=data, accounts=[_writable(mint)])


def initialize_mint_close_authority(
    mint: Pubkey,
    close_authority: Optional[Pubkey],
    program_id: Pubkey = TOKEN_2022_PROGRAM_ID,
) -> Instruction:
    """Configure the mint close authority extension; must precede initialize_mint"""
    data = bytes([TokenInstruction.INITIALIZE_MINT_CLOSE_AUTHORITY]) + _pack_optional_key(close_authority)
    return Instruction(program_id=program_id, data=data, accounts=[_writable(mint)])


def initialize_mint(
    mint: Pubkey,
    decimals: int,
    mint_authority: Pubkey,
    freeze_authority: Optional[Pubkey] = None,
    program_id: Pubkey = TOKEN_2022_PROGRAM_ID,
) -> Instruction:
    data = (
        bytes([TokenInstruction.INITIALIZE_MINT, _validate_decimals(decimals)])
        + bytes(mint_authority)
        + _pack_optional_key(freeze_authority)
    )
    return Instruction(
        program_id=program_id,
        data=data,
        accounts=[_writable(mint), _readonly(RENT)],
    )


# --- supply and transfers ---------------------------------------------------

def mint_to(
    mint: Pubkey,
    destination: Pubkey,
    authority: Pubkey,
    amount: int,
    program_id: Pubkey = TOKEN_2022_PROGRAM_ID,
) -> Instruction:
    data = bytes([TokenInstruction.MINT_TO]) + struct.pack("<Q", validate_amount(amount))
    return Instruction(
        program_id=program_id,
        data=data,
        accounts=[_writable(mint), _writable(destination), _signer(authority)],
    )


def transfer_checked_with_fee(
    source: Pubkey,
    mint: Pubkey,
    destination: Pubkey,
    authority: Pubkey,
    amount: int,
    decimals: int,
    fee: int,
    program_id: Pubkey = TOKEN_2022_PROGRAM_ID,
) -> Instruction:
    data = bytes(
        [TokenInstruction.TRANSFER_FEE_EXTENSION, TransferFeeInstruction.TRANSFER_CHECKED_WITH_FEE]
    ) + struct.pack(
        "<QBQ",
        validate_amount(amount),
        _validate_decimals(decimals),
        validate_amount(fee, "fee"),
    )
    return Instruction(
        program_id=program_id,
        data=data,
        accounts=[
            _writable(source),
            _readonly(mint),
            _writable(destination),
            _signer(authority),
        ],
    )


def close_account(
    account: Pubkey,
    destination: Pubkey,
    authority: Pubkey,
    program_id: Pubkey = TOKEN_2022_PROGRAM_ID,
) -> Instruction:
    """Close a token account or mint, sending its lamports to ``destination``"""
    return Instruction(
        program_id=program_id,
        data=bytes([TokenInstruction.CLOSE_ACCOUNT]),
        accounts=[_writable(account), _writable(destination), _signer(authority)],
    )


# --- withheld fee collection ------------------------------------------------

def withdraw_withheld_tokens_from_mint(
    mint: Pubkey,
    destination: Pubkey,
    authority: Pubkey,
    program_id: Pubkey = TOKEN_2022_PROGRAM_ID,
) -> Instruction:
    data = bytes(
        [TokenInstruction.TRANSFER_FEE_EXTENSION, TransferFeeInstruction.WITHDRAW_WITHHELD_TOKENS_FROM_MINT]
    )
    return Instruction(
        program_id=program_id,
        data=data,
        accounts=[_writable(mint), _writable(destination), _signer(authority)],
    )


def withdraw_withheld_tokens_from_accounts(
    mint: Pubkey,
    destination: Pubkey,
    authority: Pubkey,
    sources: Sequence[Pubkey],
    program_id: Pubkey = TOKEN_2022_PROGRAM_ID,
) -> Instruction:
    sources = _validate_sources(sources)
    data = bytes([
        TokenInstruction.TRANSFER_FEE_EXTENSION,
        TransferFeeInstruction.WITHDRAW_WITHHELD_TOKENS_FROM_ACCOUNTS,
        len(sources),
    ])
    return Instruction(
        program_id=program_id,
        data=data,
        accounts=[_readonly(mint), _writable(destination), _signer(authority)]
        + [_writable(source) for source in sources],
    )


def harvest_withheld_tokens_to_mint(
    mint: Pubkey,
    sources: Sequence[Pubkey],
    program_id: Pubkey = TOKEN_2022_PROGRAM_ID,
) -> Instruction:
    """Permissionless: move withheld fees from ``sources`` into the mint's pool"""
    sources = _validate_sources(sources)
    data = bytes(
        [TokenInstruction.TRANSFER_FEE_EXTENSION, TransferFeeInstruction.HARVEST_WITHHELD_TOKENS_TO_MINT]
    )
    return Instruction(
        program_id=program_id,
        data=data,
        accounts=[_writable(mint)] + [_writable(source) for source in sources],
    )


# --- decoding ---------------------------------------------------------------

@dataclass
class DecodedInstruction:
    """A Token-2022 instruction split into its kind and arguments"""
    kind: str
    args: Dict[str, Any]
    accounts: list


def _read_optional_key(data: bytes, offset: int) -> Optional[Pubkey]:
    if data[offset] == 0:
        return None
    return Pubkey.from_bytes(data[offset + 1:offset + 33])


def _read_pubkey_option(data: bytes, offset: int) -> Tuple[Optional[Pubkey], int]:
    """Read a variable-length option; returns the key and the offset after it"""
    if data[offset] == 0:
        return None, offset + 1
    return Pubkey.from_bytes(data[offset + 1:offset + 33]), offset + 33


def decode_token_instruction(ix: Instruction) -> DecodedInstruction:
    """Decode the instructions built by this module"""
    data = bytes(ix.data)
    accounts = [meta.pubkey for meta in ix.accounts]
    if not data:
        raise ValidationError("empty instruction data")
    tag = data[0]

    if tag == TokenInstruction.INITIALIZE_MINT:
        return DecodedInstruction("initialize_mint", {
            "decimals": data[1],
            "mint_authority": Pubkey.from_bytes(data[2:34]),
            "freeze_authority": _read_optional_key(data, 34),
        }, accounts)
    if tag == TokenInstruction.MINT_TO:
        (amount,) = struct.unpack_from("<Q", data, 1)
        return DecodedInstruction("mint_to", {"amount": amount}, accounts)
    if tag == TokenInstruction.CLOSE_ACCOUNT:
        return DecodedInstruction("close_account", {}, accounts)
    if tag == TokenInstruction.INITIALIZE_MINT_CLOSE_AUTHORITY:
        return DecodedInstruction("initialize_mint_close_authority", {
            "close_authority": _read_optional_key(data, 1),
        }, accounts)
    if tag == TokenInstruction.TRANSFER_FEE_EXTENSION:
        sub = data[1]
        if sub == TransferFeeInstruction.INITIALIZE_TRANSFER_FEE_CONFIG:
            config_authority, offset = _read_pubkey_option(data, 2)
            withdraw_authority, offset = _read_pubkey_option(data, offset)
            basis_points, maximum_fee = struct.unpack_from("<HQ", data, offset)
            return DecodedInstruction("initialize_transfer_fee_config", {
                "transfer_fee_config_authority": config_authority,
                "withdraw_withheld_authority": withdraw_authority,
                "transfer_fee_basis_points": basis_points,
                "maximum_fee": maximum_fee,
            }, accounts)
        if sub == TransferFeeInstruction.TRANSFER_CHECKED_WITH_FEE:
            amount, decimals, fee = struct.unpack_from("<QBQ", data, 2)
            return DecodedInstruction("transfer_checked_with_fee", {
                "amount": amount, "decimals": decimals, "fee": fee,
            }, accounts)
        if sub == TransferFeeInstruction.WITHDRAW_WITHHELD_TOKENS_FROM_MINT:
            return DecodedInstruction("withdraw_withheld_tokens_from_mint", {}, accounts)
        if sub == TransferFeeInstruction.WITHDRAW_WITHHELD_TOKENS_FROM_ACCOUNTS:
            return DecodedInstruction("withdraw_withheld_tokens_from_accounts", {
                "num_token_accounts": data[2],
            }, accounts)
        if sub == TransferFeeInstruction.HARVEST_WITHHELD_TOKENS_TO_MINT:
            return DecodedInstruction("harvest_withheld_tokens_to_mint", {}, accounts)
        raise ValidationError(f"unknown transfer fee instruction {sub}")
    raise ValidationError(f"unknown token instruction {tag}")
