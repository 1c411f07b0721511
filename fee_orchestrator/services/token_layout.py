"""Token-2022 account layout: base mint/account structs plus TLV extensions.

Layout (all integers little-endian):
- base mint: 82 bytes, base token account: 165 bytes
- with extensions, a mint is zero-padded to 165 bytes; byte 165 holds the
  account type (1 = mint, 2 = account) and TLV entries follow:
  u16 extension type, u16 value length, value bytes
"""
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Iterable, List, Optional

from solders.pubkey import Pubkey

from fee_orchestrator.exceptions import AccountLayoutError
from fee_orchestrator.services.fees import calculate_fee

TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")

MINT_SIZE = 82
ACCOUNT_SIZE = 165
MULTISIG_SIZE = 355
ACCOUNT_TYPE_SIZE = 1
TYPE_SIZE = 2
LENGTH_SIZE = 2

# Offset of the mint pubkey inside a token account, used for memcmp filters
ACCOUNT_MINT_OFFSET = 0

_MINT_STRUCT = struct.Struct("<I32sQBBI32s")
_ACCOUNT_STRUCT = struct.Struct("<32s32sQI32sBIQQI32s")
_TRANSFER_FEE_CONFIG_STRUCT = struct.Struct("<32s32sQQQHQQH")
_TRANSFER_FEE_AMOUNT_STRUCT = struct.Struct("<Q")
_TLV_HEADER = struct.Struct("<HH")

_ZERO_KEY = bytes(32)


class AccountType(IntEnum):
    UNINITIALIZED = 0
    MINT = 1
    ACCOUNT = 2


class AccountState(IntEnum):
    UNINITIALIZED = 0
    INITIALIZED = 1
    FROZEN = 2


class ExtensionType(IntEnum):
    """Extension discriminators as stored in the TLV type field"""
    UNINITIALIZED = 0
    TRANSFER_FEE_CONFIG = 1
    TRANSFER_FEE_AMOUNT = 2
    MINT_CLOSE_AUTHORITY = 3
    CONFIDENTIAL_TRANSFER_MINT = 4
    CONFIDENTIAL_TRANSFER_ACCOUNT = 5
    DEFAULT_ACCOUNT_STATE = 6
    IMMUTABLE_OWNER = 7
    MEMO_TRANSFER = 8
    NON_TRANSFERABLE = 9
    INTEREST_BEARING_CONFIG = 10
    CPI_GUARD = 11
    PERMANENT_DELEGATE = 12
    NON_TRANSFERABLE_ACCOUNT = 13
    TRANSFER_HOOK = 14
    TRANSFER_HOOK_ACCOUNT = 15


# Fixed value sizes for the extensions this package can allocate
EXTENSION_SIZES: Dict[ExtensionType, int] = {
    ExtensionType.TRANSFER_FEE_CONFIG: 108,
    ExtensionType.TRANSFER_FEE_AMOUNT: 8,
    ExtensionType.MINT_CLOSE_AUTHORITY: 32,
    ExtensionType.DEFAULT_ACCOUNT_STATE: 1,
    ExtensionType.IMMUTABLE_OWNER: 0,
    ExtensionType.MEMO_TRANSFER: 1,
    ExtensionType.NON_TRANSFERABLE: 0,
    ExtensionType.INTEREST_BEARING_CONFIG: 52,
    ExtensionType.CPI_GUARD: 1,
    ExtensionType.PERMANENT_DELEGATE: 32,
    ExtensionType.NON_TRANSFERABLE_ACCOUNT: 0,
    ExtensionType.TRANSFER_HOOK: 64,
    ExtensionType.TRANSFER_HOOK_ACCOUNT: 1,
}

# Token account extension required by each mint extension
_ACCOUNT_EXTENSION_FOR_MINT = {
    ExtensionType.TRANSFER_FEE_CONFIG: ExtensionType.TRANSFER_FEE_AMOUNT,
    ExtensionType.NON_TRANSFERABLE: ExtensionType.NON_TRANSFERABLE_ACCOUNT,
    ExtensionType.TRANSFER_HOOK: ExtensionType.TRANSFER_HOOK_ACCOUNT,
}


@dataclass(frozen=True)
class TransferFee:
    """One fee schedule of a transfer fee config"""
    epoch: int
    maximum_fee: int
    transfer_fee_basis_points: int

    def calculate_fee(self, amount: int) -> int:
        return calculate_fee(amount, self.transfer_fee_basis_points, self.maximum_fee)


@dataclass
class TransferFeeConfig:
    """Mint extension holding fee authorities, schedules and the mint's withheld pool"""
    transfer_fee_config_authority: Optional[Pubkey]
    withdraw_withheld_authority: Optional[Pubkey]
    withheld_amount: int
    older_transfer_fee: TransferFee
    newer_transfer_fee: TransferFee

    def get_epoch_fee(self, epoch: int) -> TransferFee:
        """Schedule in force at ``epoch``"""
        if epoch >= self.newer_transfer_fee.epoch:
            return self.newer_transfer_fee
        return self.older_transfer_fee

    def calculate_epoch_fee(self, epoch: int, amount: int) -> int:
        return self.get_epoch_fee(epoch).calculate_fee(amount)


@dataclass
class TransferFeeAmount:
    """Token account extension: fees withheld at this account"""
    withheld_amount: int


@dataclass
class MintCloseAuthority:
    close_authority: Optional[Pubkey]


@dataclass
class Mint:
    """Unpacked mint account"""
    address: Pubkey
    mint_authority: Optional[Pubkey]
    supply: int
    decimals: int
    is_initialized: bool
    freeze_authority: Optional[Pubkey]
    extensions: Dict[int, Any] = field(default_factory=dict)

    @property
    def extension_types(self) -> List[ExtensionType]:
        return [ExtensionType(t) for t in self.extensions if t in ExtensionType._value2member_map_]

    @property
    def transfer_fee_config(self) -> Optional[TransferFeeConfig]:
        return self.extensions.get(ExtensionType.TRANSFER_FEE_CONFIG)

    @property
    def mint_close_authority(self) -> Optional[MintCloseAuthority]:
        return self.extensions.get(ExtensionType.MINT_CLOSE_AUTHORITY)


@dataclass
class TokenAccount:
    """Unpacked token account"""
    address: Pubkey
    mint: Pubkey
    owner: Pubkey
    amount: int
    delegate: Optional[Pubkey] = None
    state: AccountState = AccountState.INITIALIZED
    is_native: Optional[int] = None
    delegated_amount: int = 0
    close_authority: Optional[Pubkey] = None
    extensions: Dict[int, Any] = field(default_factory=dict)

    @property
    def is_initialized(self) -> bool:
        return self.state != AccountState.UNINITIALIZED

    @property
    def is_frozen(self) -> bool:
        return self.state == AccountState.FROZEN

    @property
    def transfer_fee_amount(self) -> Optional[TransferFeeAmount]:
        return self.extensions.get(ExtensionType.TRANSFER_FEE_AMOUNT)

    @property
    def withheld_amount(self) -> int:
        """Withheld fees at this account, 0 when the extension is absent"""
        fee_amount = self.transfer_fee_amount
        return fee_amount.withheld_amount if fee_amount is not None else 0


# --- sizing -----------------------------------------------------------------

def _type_len(extension: ExtensionType) -> int:
    try:
        return EXTENSION_SIZES[ExtensionType(extension)]
    except KeyError:
        raise ValueError(f"Unknown size for extension {extension!r}")


def _get_len(extensions: Iterable[ExtensionType], base_size: int) -> int:
    extensions = list(dict.fromkeys(extensions))
    if not extensions:
        return base_size
    length = ACCOUNT_SIZE + ACCOUNT_TYPE_SIZE + sum(
        TYPE_SIZE + LENGTH_SIZE + _type_len(ext) for ext in extensions
    )
    # An extended account must never be mistaken for a multisig
    if length == MULTISIG_SIZE:
        return length + TYPE_SIZE
    return length


def get_mint_len(extensions: Iterable[ExtensionType]) -> int:
    """Bytes to allocate for a mint carrying ``extensions``"""
    return _get_len(extensions, MINT_SIZE)


def get_account_len(extensions: Iterable[ExtensionType]) -> int:
    """Bytes to allocate for a token account carrying ``extensions``"""
    return _get_len(extensions, ACCOUNT_SIZE)


def get_account_extensions_for_mint(mint_extensions: Iterable[ExtensionType]) -> List[ExtensionType]:
    """Token account extensions implied by a mint's extensions"""
    required = []
    for ext in mint_extensions:
        account_ext = _ACCOUNT_EXTENSION_FOR_MINT.get(ext)
        if account_ext is not None and account_ext not in required:
            required.append(account_ext)
    return required


def get_account_len_for_mint(mint: Mint) -> int:
    return get_account_len(get_account_extensions_for_mint(mint.extension_types))


# --- unpacking --------------------------------------------------------------

def _optional_key(tag: int, key: bytes) -> Optional[Pubkey]:
    return Pubkey.from_bytes(key) if tag else None


def _nonzero_key(key: bytes) -> Optional[Pubkey]:
    return None if key == _ZERO_KEY else Pubkey.from_bytes(key)


def _parse_extension(ext_type: int, value: bytes, address: Optional[str]) -> Any:
    try:
        if ext_type == ExtensionType.TRANSFER_FEE_CONFIG:
            (
                config_authority, withdraw_authority, withheld,
                older_epoch, older_max, older_bps,
                newer_epoch, newer_max, newer_bps,
            ) = _TRANSFER_FEE_CONFIG_STRUCT.unpack(value)
            return TransferFeeConfig(
                transfer_fee_config_authority=_nonzero_key(config_authority),
                withdraw_withheld_authority=_nonzero_key(withdraw_authority),
                withheld_amount=withheld,
                older_transfer_fee=TransferFee(older_epoch, older_max, older_bps),
                newer_transfer_fee=TransferFee(newer_epoch, newer_max, newer_bps),
            )
        if ext_type == ExtensionType.TRANSFER_FEE_AMOUNT:
            (withheld,) = _TRANSFER_FEE_AMOUNT_STRUCT.unpack(value)
            return TransferFeeAmount(withheld_amount=withheld)
        if ext_type == ExtensionType.MINT_CLOSE_AUTHORITY:
            if len(value) != 32:
                raise struct.error("close authority must be 32 bytes")
            return MintCloseAuthority(close_authority=_nonzero_key(value))
    except struct.error as e:
        raise AccountLayoutError(
            f"malformed extension {ext_type} ({len(value)} bytes): {e}", address
        )
    return value


def _parse_tlv(data: bytes, address: Optional[str]) -> Dict[int, Any]:
    extensions: Dict[int, Any] = {}
    offset = ACCOUNT_SIZE + ACCOUNT_TYPE_SIZE
    while offset + _TLV_HEADER.size <= len(data):
        ext_type, length = _TLV_HEADER.unpack_from(data, offset)
        if ext_type == ExtensionType.UNINITIALIZED:
            break
        start = offset + _TLV_HEADER.size
        end = start + length
        if end > len(data):
            raise AccountLayoutError(
                f"extension {ext_type} overruns account data ({end} > {len(data)})", address
            )
        extensions[ext_type] = _parse_extension(ext_type, data[start:end], address)
        offset = end
    return extensions


def _check_extended(data: bytes, account_type: AccountType, address: Optional[str]) -> None:
    if len(data) <= ACCOUNT_SIZE:
        raise AccountLayoutError(f"invalid account size {len(data)}", address)
    if len(data) == MULTISIG_SIZE:
        raise AccountLayoutError("account has multisig size", address)
    if data[ACCOUNT_SIZE] != account_type:
        raise AccountLayoutError(
            f"account type {data[ACCOUNT_SIZE]} is not {account_type.name.lower()}", address
        )


def unpack_mint(address: Pubkey, data: bytes) -> Mint:
    """Parse raw mint account bytes"""
    data = bytes(data)
    label = str(address)
    if len(data) < MINT_SIZE:
        raise AccountLayoutError(f"mint data too short ({len(data)} bytes)", label)
    extensions: Dict[int, Any] = {}
    if len(data) > MINT_SIZE:
        _check_extended(data, AccountType.MINT, label)
        extensions = _parse_tlv(data, label)

    (
        authority_tag, authority, supply, decimals, is_initialized,
        freeze_tag, freeze_authority,
    ) = _MINT_STRUCT.unpack_from(data, 0)
    return Mint(
        address=address,
        mint_authority=_optional_key(authority_tag, authority),
        supply=supply,
        decimals=decimals,
        is_initialized=bool(is_initialized),
        freeze_authority=_optional_key(freeze_tag, freeze_authority),
        extensions=extensions,
    )


def unpack_account(address: Pubkey, data: bytes) -> TokenAccount:
    """Parse raw token account bytes"""
    data = bytes(data)
    label = str(address)
    if len(data) < ACCOUNT_SIZE:
        raise AccountLayoutError(f"token account data too short ({len(data)} bytes)", label)
    extensions: Dict[int, Any] = {}
    if len(data) > ACCOUNT_SIZE:
        _check_extended(data, AccountType.ACCOUNT, label)
        extensions = _parse_tlv(data, label)

    (
        mint, owner, amount, delegate_tag, delegate, state,
        native_tag, native_amount, delegated_amount, close_tag, close_authority,
    ) = _ACCOUNT_STRUCT.unpack_from(data, 0)
    try:
        account_state = AccountState(state)
    except ValueError:
        raise AccountLayoutError(f"invalid account state {state}", label)
    return TokenAccount(
        address=address,
        mint=Pubkey.from_bytes(mint),
        owner=Pubkey.from_bytes(owner),
        amount=amount,
        delegate=_optional_key(delegate_tag, delegate),
        state=account_state,
        is_native=native_amount if native_tag else None,
        delegated_amount=delegated_amount,
        close_authority=_optional_key(close_tag, close_authority),
        extensions=extensions,
    )


# --- packing ----------------------------------------------------------------

def _key_or_zero(key: Optional[Pubkey]) -> bytes:
    return bytes(key) if key is not None else _ZERO_KEY


def _pack_extension(ext_type: int, value: Any) -> bytes:
    if isinstance(value, TransferFeeConfig):
        return _TRANSFER_FEE_CONFIG_STRUCT.pack(
            _key_or_zero(value.transfer_fee_config_authority),
            _key_or_zero(value.withdraw_withheld_authority),
            value.withheld_amount,
            value.older_transfer_fee.epoch,
            value.older_transfer_fee.maximum_fee,
            value.older_transfer_fee.transfer_fee_basis_points,
            value.newer_transfer_fee.epoch,
            value.newer_transfer_fee.maximum_fee,
            value.newer_transfer_fee.transfer_fee_basis_points,
        )
    if isinstance(value, TransferFeeAmount):
        return _TRANSFER_FEE_AMOUNT_STRUCT.pack(value.withheld_amount)
    if isinstance(value, MintCloseAuthority):
        return _key_or_zero(value.close_authority)
    return bytes(value or b"")


def _pack_extended(base: bytes, account_type: AccountType, extensions: Dict[int, Any]) -> bytes:
    if not extensions:
        return base
    body = bytearray(base.ljust(ACCOUNT_SIZE, b"\x00"))
    body.append(account_type)
    for ext_type, value in extensions.items():
        payload = _pack_extension(ext_type, value)
        body += _TLV_HEADER.pack(int(ext_type), len(payload)) + payload
    if len(body) == MULTISIG_SIZE:
        body += bytes(TYPE_SIZE)
    return bytes(body)


def pack_mint(mint: Mint) -> bytes:
    """Serialize a Mint back into account bytes"""
    base = _MINT_STRUCT.pack(
        1 if mint.mint_authority is not None else 0,
        _key_or_zero(mint.mint_authority),
        mint.supply,
        mint.decimals,
        1 if mint.is_initialized else 0,
        1 if mint.freeze_authority is not None else 0,
        _key_or_zero(mint.freeze_authority),
    )
    return _pack_extended(base, AccountType.MINT, mint.extensions)


def pack_account(account: TokenAccount) -> bytes:
    """Serialize a TokenAccount back into account bytes"""
    base = _ACCOUNT_STRUCT.pack(
        bytes(account.mint),
        bytes(account.owner),
        account.amount,
        1 if account.delegate is not None else 0,
        _key_or_zero(account.delegate),
        int(account.state),
        1 if account.is_native is not None else 0,
        account.is_native or 0,
        account.delegated_amount,
        1 if account.close_authority is not None else 0,
        _key_or_zero(account.close_authority),
    )
    return _pack_extended(base, AccountType.ACCOUNT, account.extensions)
