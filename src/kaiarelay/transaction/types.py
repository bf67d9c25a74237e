"""Fee-delegated transaction types and the type registry.

Each variant is a frozen dataclass whose field set is exactly the set the
chain's typed-transaction layout defines for that tag. Signatures are not
part of the body; they are attached by the state objects in
`kaiarelay.transaction.state`.

Layouts (signed form, before signatures):
    0x09 ValueTransfer           nonce, gasPrice, gas, to, value, from
    0x0a ValueTransferWithRatio  nonce, gasPrice, gas, to, value, from, feeRatio
    0x11 ValueTransferMemo       nonce, gasPrice, gas, to, value, from, input
    0x29 SmartContractDeploy     nonce, gasPrice, gas, to(empty), value, from, input,
                                 humanReadable, codeFormat
    0x31 SmartContractExecution  nonce, gasPrice, gas, to, value, from, input
"""

import dataclasses
import re
from dataclasses import MISSING, dataclass
from enum import IntEnum
from typing import Any, ClassVar, Mapping, Union

from eth_utils import to_checksum_address

from kaiarelay.errors import InvalidTransactionFields

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")

MAX_FEE_RATIO = 99


class TxType(IntEnum):
    """Type tags of the supported fee-delegated transactions."""

    FEE_DELEGATED_VALUE_TRANSFER = 0x09
    FEE_DELEGATED_VALUE_TRANSFER_WITH_RATIO = 0x0A
    FEE_DELEGATED_VALUE_TRANSFER_MEMO = 0x11
    FEE_DELEGATED_SMART_CONTRACT_DEPLOY = 0x29
    FEE_DELEGATED_SMART_CONTRACT_EXECUTION = 0x31

    @property
    def tag(self) -> str:
        """Hex tag as used on the wire, e.g. '0x31'."""
        return f"0x{self.value:02x}"

    @property
    def type_byte(self) -> bytes:
        return bytes([self.value])


# Request-level names accepted by the inbound operations
REQUEST_TYPE_NAMES: dict[str, TxType] = {
    "value_transfer": TxType.FEE_DELEGATED_VALUE_TRANSFER,
    "value_transfer_memo": TxType.FEE_DELEGATED_VALUE_TRANSFER_MEMO,
    "contract_execution": TxType.FEE_DELEGATED_SMART_CONTRACT_EXECUTION,
    "contract_deploy": TxType.FEE_DELEGATED_SMART_CONTRACT_DEPLOY,
    "value_transfer_with_ratio": TxType.FEE_DELEGATED_VALUE_TRANSFER_WITH_RATIO,
}

# Wire/JSON names mapped onto dataclass attribute names
FIELD_ALIASES = {
    "gasPrice": "gas_price",
    "gas": "gas_limit",
    "gasLimit": "gas_limit",
    "from": "sender",
    "data": "input",
    "feeRatio": "fee_ratio",
    "humanReadable": "human_readable",
    "codeFormat": "code_format",
}

INT_FIELDS = frozenset({"nonce", "gas_price", "gas_limit", "value", "fee_ratio", "code_format"})


def is_address(value: Any) -> bool:
    return isinstance(value, str) and bool(ADDRESS_PATTERN.match(value))


def _check_address(name: str, value: Any) -> str:
    if not is_address(value):
        raise InvalidTransactionFields(f"Field '{name}' must be a 20-byte hex address", field=name)
    return to_checksum_address(value)


def _check_uint(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidTransactionFields(f"Field '{name}' must be an integer", field=name)
    if value < 0:
        raise InvalidTransactionFields(f"Field '{name}' must not be negative", field=name)
    return value


def _check_bytes(name: str, value: Any) -> bytes:
    if not isinstance(value, (bytes, bytearray)):
        raise InvalidTransactionFields(f"Field '{name}' must be bytes", field=name)
    return bytes(value)


@dataclass(frozen=True)
class FeeDelegatedTransaction:
    """Fields shared by every fee-delegated variant."""

    TX_TYPE: ClassVar[TxType]
    LAYOUT: ClassVar[tuple[str, ...]]

    nonce: int
    gas_price: int
    gas_limit: int
    sender: str

    def __post_init__(self):
        for name in ("nonce", "gas_price", "gas_limit"):
            _check_uint(name, getattr(self, name))
        object.__setattr__(self, "sender", _check_address("sender", self.sender))

    @property
    def tx_type(self) -> TxType:
        return self.TX_TYPE

    def to_rpc_dict(self) -> dict:
        """JSON view with hex quantities and wire field names."""
        data: dict[str, Any] = {
            "type": self.TX_TYPE.tag,
            "typeName": self.TX_TYPE.name,
            "nonce": hex(self.nonce),
            "gasPrice": hex(self.gas_price),
            "gas": hex(self.gas_limit),
            "from": self.sender,
        }
        for name in self.LAYOUT:
            if name in ("nonce", "gas_price", "gas_limit", "sender"):
                continue
            value = getattr(self, name)
            if name == "to":
                data["to"] = value
            elif name == "input":
                data["input"] = "0x" + value.hex()
            elif name == "human_readable":
                data["humanReadable"] = value
            elif name == "fee_ratio":
                data["feeRatio"] = value
            elif name == "code_format":
                data["codeFormat"] = hex(value)
            else:
                data[name] = hex(value)
        return data


@dataclass(frozen=True)
class ValueTransfer(FeeDelegatedTransaction):
    TX_TYPE: ClassVar[TxType] = TxType.FEE_DELEGATED_VALUE_TRANSFER
    LAYOUT: ClassVar[tuple[str, ...]] = ("nonce", "gas_price", "gas_limit", "to", "value", "sender")

    to: str
    value: int

    def __post_init__(self):
        super().__post_init__()
        object.__setattr__(self, "to", _check_address("to", self.to))
        _check_uint("value", self.value)


@dataclass(frozen=True)
class ValueTransferMemo(FeeDelegatedTransaction):
    TX_TYPE: ClassVar[TxType] = TxType.FEE_DELEGATED_VALUE_TRANSFER_MEMO
    LAYOUT: ClassVar[tuple[str, ...]] = (
        "nonce", "gas_price", "gas_limit", "to", "value", "sender", "input",
    )

    to: str
    value: int
    input: bytes

    def __post_init__(self):
        super().__post_init__()
        object.__setattr__(self, "to", _check_address("to", self.to))
        _check_uint("value", self.value)
        object.__setattr__(self, "input", _check_bytes("input", self.input))


@dataclass(frozen=True)
class SmartContractExecution(FeeDelegatedTransaction):
    TX_TYPE: ClassVar[TxType] = TxType.FEE_DELEGATED_SMART_CONTRACT_EXECUTION
    LAYOUT: ClassVar[tuple[str, ...]] = (
        "nonce", "gas_price", "gas_limit", "to", "value", "sender", "input",
    )

    to: str
    input: bytes
    value: int = 0

    def __post_init__(self):
        super().__post_init__()
        object.__setattr__(self, "to", _check_address("to", self.to))
        _check_uint("value", self.value)
        object.__setattr__(self, "input", _check_bytes("input", self.input))


@dataclass(frozen=True)
class SmartContractDeploy(FeeDelegatedTransaction):
    TX_TYPE: ClassVar[TxType] = TxType.FEE_DELEGATED_SMART_CONTRACT_DEPLOY
    LAYOUT: ClassVar[tuple[str, ...]] = (
        "nonce", "gas_price", "gas_limit", "to", "value", "sender", "input",
        "human_readable", "code_format",
    )

    input: bytes
    value: int = 0
    human_readable: bool = False
    code_format: int = 0

    def __post_init__(self):
        super().__post_init__()
        _check_uint("value", self.value)
        object.__setattr__(self, "input", _check_bytes("input", self.input))
        if not isinstance(self.human_readable, bool):
            raise InvalidTransactionFields(
                "Field 'human_readable' must be a boolean", field="human_readable"
            )
        _check_uint("code_format", self.code_format)

    @property
    def to(self) -> None:
        # deploys have no recipient; the layout slot is encoded empty
        return None


@dataclass(frozen=True)
class ValueTransferWithRatio(FeeDelegatedTransaction):
    TX_TYPE: ClassVar[TxType] = TxType.FEE_DELEGATED_VALUE_TRANSFER_WITH_RATIO
    LAYOUT: ClassVar[tuple[str, ...]] = (
        "nonce", "gas_price", "gas_limit", "to", "value", "sender", "fee_ratio",
    )

    to: str
    value: int
    fee_ratio: int

    def __post_init__(self):
        super().__post_init__()
        object.__setattr__(self, "to", _check_address("to", self.to))
        _check_uint("value", self.value)
        _check_uint("fee_ratio", self.fee_ratio)
        if self.fee_ratio > MAX_FEE_RATIO:
            raise InvalidTransactionFields(
                f"Field 'fee_ratio' must be between 0 and {MAX_FEE_RATIO}", field="fee_ratio"
            )


Transaction = Union[
    ValueTransfer,
    ValueTransferMemo,
    SmartContractExecution,
    SmartContractDeploy,
    ValueTransferWithRatio,
]

TRANSACTION_TYPES: dict[TxType, type] = {
    cls.TX_TYPE: cls
    for cls in (
        ValueTransfer,
        ValueTransferMemo,
        SmartContractExecution,
        SmartContractDeploy,
        ValueTransferWithRatio,
    )
}


def resolve_tx_type(tx_type: Union[TxType, int, str]) -> TxType:
    """Resolve a TxType from an enum, tag int, hex tag or request name.

    Raises:
        InvalidTransactionFields: If the type is not a supported fee-delegated type
    """
    if isinstance(tx_type, TxType):
        return tx_type

    try:
        if isinstance(tx_type, int) and not isinstance(tx_type, bool):
            return TxType(tx_type)
        if isinstance(tx_type, str):
            if tx_type in REQUEST_TYPE_NAMES:
                return REQUEST_TYPE_NAMES[tx_type]
            if tx_type.lower().startswith("0x"):
                return TxType(int(tx_type, 16))
            return TxType[tx_type.upper()]
    except (KeyError, ValueError):
        pass

    raise InvalidTransactionFields(f"Unsupported transaction type: {tx_type}", field="type")


def transaction_class(tx_type: Union[TxType, int, str]) -> type:
    return TRANSACTION_TYPES[resolve_tx_type(tx_type)]


def _parse_int(name: str, value: Any) -> int:
    if isinstance(value, str):
        try:
            return int(value, 16) if value.lower().startswith("0x") else int(value, 10)
        except ValueError:
            raise InvalidTransactionFields(f"Field '{name}' is not a valid integer: {value}", field=name)
    return value


def _parse_bytes(name: str, value: Any) -> bytes:
    if isinstance(value, str):
        text = value[2:] if value.lower().startswith("0x") else value
        try:
            return bytes.fromhex(text)
        except ValueError:
            raise InvalidTransactionFields(f"Field '{name}' is not valid hex", field=name)
    return value


def create_transaction(
    tx_type: Union[TxType, int, str],
    fields: Mapping[str, Any],
) -> Transaction:
    """Create a transaction of the given type from a field mapping.

    Field names may be attribute names (`gas_limit`, `sender`) or wire names
    (`gas`, `from`). A `None` value counts as absent.

    Args:
        tx_type: TxType, hex tag or request type name
        fields: Field values; integers may be ints or decimal/hex strings

    Returns:
        Frozen transaction instance

    Raises:
        InvalidTransactionFields: Naming the first missing, extra or invalid field
    """
    cls = transaction_class(tx_type)

    canonical: dict[str, Any] = {}
    for key, value in fields.items():
        if value is None:
            continue
        name = FIELD_ALIASES.get(key, key)
        if name in canonical:
            raise InvalidTransactionFields(f"Field '{name}' given more than once", field=name)
        canonical[name] = value

    declared = {f.name: f for f in dataclasses.fields(cls)}

    extra = [name for name in canonical if name not in declared]
    if extra:
        raise InvalidTransactionFields(
            f"Field '{extra[0]}' is not allowed on {cls.__name__}", field=extra[0]
        )

    missing = [
        name for name, f in declared.items()
        if name not in canonical and f.default is MISSING and f.default_factory is MISSING
    ]
    if missing:
        raise InvalidTransactionFields(
            f"Missing required field '{missing[0]}' for {cls.__name__}", field=missing[0]
        )

    for name, value in list(canonical.items()):
        if name in INT_FIELDS:
            canonical[name] = _parse_int(name, value)
        elif name == "input":
            canonical[name] = _parse_bytes(name, value)

    return cls(**canonical)
