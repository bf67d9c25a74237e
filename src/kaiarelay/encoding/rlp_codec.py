"""Canonical RLP encoding of fee-delegated transactions.

Canonical rules:
- integers are minimal big-endian; zero is the empty string
- addresses are always 20 bytes, never trimmed
- the deploy `to` slot is the empty string
- booleans are 0x01 / empty

Three encodings are produced:

    sender signing payload:
        type || RLP([ RLP([type, *fields]), chainId, "", "" ])

    fee payer signing payload:
        type || RLP([ RLP([type, *fields]), feePayer, chainId, "", "" ])

    signed (broadcast) form:
        type || RLP([ *fields, [[V,R,S]...], feePayer, [[V,R,S]...] ])

The double wrap of the signing payloads is required by the chain; a single
EIP-155 style wrap hashes to a different digest and signatures over it
never verify.
"""

from typing import Any, Union

import rlp
from eth_utils import keccak, to_checksum_address
from rlp.exceptions import DecodingError, DeserializationError, SerializationError
from rlp.sedes import Binary, big_endian_int, binary, boolean

from kaiarelay.errors import InvalidTransactionFields, MalformedTransaction
from kaiarelay.signing.signature import Signature
from kaiarelay.transaction.state import FullySigned, SenderSigned
from kaiarelay.transaction.types import TRANSACTION_TYPES, Transaction, TxType


ADDRESS_LENGTH = 20

address = Binary.fixed_length(ADDRESS_LENGTH)
optional_address = Binary.fixed_length(ADDRESS_LENGTH, allow_empty=True)

# Serializer per layout slot
FIELD_SEDES = {
    "nonce": big_endian_int,
    "gas_price": big_endian_int,
    "gas_limit": big_endian_int,
    "to": optional_address,
    "value": big_endian_int,
    "sender": address,
    "input": binary,
    "human_readable": boolean,
    "code_format": big_endian_int,
    "fee_ratio": big_endian_int,
}


def encode_int(value: int) -> bytes:
    """Minimal big-endian encoding; 0 -> b'', 256 -> b'\\x01\\x00'."""
    return big_endian_int.serialize(value)


def _address_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:])


def _serialize_field(name: str, value: Any) -> bytes:
    if name in ("to", "sender"):
        value = b"" if value is None else _address_bytes(value)
    try:
        return FIELD_SEDES[name].serialize(value)
    except SerializationError as e:
        raise InvalidTransactionFields(f"Field '{name}' cannot be encoded: {e}", field=name) from e


def serialize_fields(tx: Transaction) -> list[bytes]:
    """Ordered, serialized body fields of a transaction (no signatures)."""
    return [_serialize_field(name, getattr(tx, name)) for name in tx.LAYOUT]


def _serialize_signatures(signatures) -> list[list[bytes]]:
    return [[encode_int(sig.v), encode_int(sig.r), encode_int(sig.s)] for sig in signatures]


def _inner_signing_list(tx: Transaction) -> bytes:
    return rlp.encode([encode_int(tx.TX_TYPE.value), *serialize_fields(tx)])


def encode_for_signing_hash(tx: Transaction, chain_id: int) -> bytes:
    """Payload the sender signs: type || RLP([RLP([type, *fields]), chainId, "", ""])."""
    outer = rlp.encode([_inner_signing_list(tx), encode_int(chain_id), b"", b""])
    return tx.TX_TYPE.type_byte + outer


def signing_hash(tx: Transaction, chain_id: int) -> bytes:
    return keccak(encode_for_signing_hash(tx, chain_id))


def encode_for_fee_payer_hash(tx: Transaction, fee_payer: str, chain_id: int) -> bytes:
    """Payload the fee payer signs; binds the fee payer address into the digest."""
    outer = rlp.encode([
        _inner_signing_list(tx),
        _serialize_field("sender", to_checksum_address(fee_payer)),
        encode_int(chain_id),
        b"",
        b"",
    ])
    return tx.TX_TYPE.type_byte + outer


def fee_payer_signing_hash(tx: Transaction, fee_payer: str, chain_id: int) -> bytes:
    return keccak(encode_for_fee_payer_hash(tx, fee_payer, chain_id))


def encode_signed(signed: Union[SenderSigned, FullySigned]) -> bytes:
    """Signed form: type || RLP([*fields, senderSigs, feePayer?, feePayerSigs?]).

    The fee payer pair is only present on FullySigned.
    """
    items: list[Any] = serialize_fields(signed.tx)
    items.append(_serialize_signatures(signed.sender_signatures))

    if isinstance(signed, FullySigned):
        items.append(_address_bytes(signed.fee_payer))
        items.append(_serialize_signatures(signed.fee_payer_signatures))

    return signed.tx.TX_TYPE.type_byte + rlp.encode(items)


def transaction_hash(raw: bytes) -> str:
    """keccak-256 of the raw signed bytes, 0x-prefixed."""
    return "0x" + keccak(raw).hex()


def _deserialize_signatures(name: str, item: Any) -> tuple[Signature, ...]:
    if not isinstance(item, list):
        raise MalformedTransaction(f"'{name}' must be a list", field=name)

    signatures = []
    for entry in item:
        if not isinstance(entry, list) or len(entry) != 3:
            raise MalformedTransaction(f"'{name}' entries must be [V, R, S]", field=name)
        if not all(isinstance(part, bytes) for part in entry):
            raise MalformedTransaction(f"'{name}' V, R and S must be byte strings", field=name)
        v, r, s = (big_endian_int.deserialize(part) for part in entry)
        signatures.append(Signature(v=v, r=r, s=s))
    return tuple(signatures)


def decode_signed(raw: Union[bytes, str]) -> Union[SenderSigned, FullySigned]:
    """Decode the output of `encode_signed`.

    Raises:
        MalformedTransaction: Unknown type tag, wrong item count, non-canonical
            integers or malformed RLP
    """
    if isinstance(raw, str):
        text = raw[2:] if raw.lower().startswith("0x") else raw
        try:
            raw = bytes.fromhex(text)
        except ValueError as e:
            raise MalformedTransaction("Raw transaction is not valid hex") from e

    if len(raw) < 2:
        raise MalformedTransaction("Raw transaction is too short")

    try:
        tx_type = TxType(raw[0])
    except ValueError:
        raise MalformedTransaction(f"Unsupported transaction type tag 0x{raw[0]:02x}", field="type")

    cls = TRANSACTION_TYPES[tx_type]
    layout = cls.LAYOUT

    try:
        items = rlp.decode(raw[1:])
    except DecodingError as e:
        raise MalformedTransaction(f"Invalid RLP: {e}") from e

    if not isinstance(items, list) or len(items) not in (len(layout) + 1, len(layout) + 3):
        raise MalformedTransaction(
            f"{cls.__name__} expects {len(layout) + 1} or {len(layout) + 3} items"
        )

    try:
        fields: dict[str, Any] = {}
        for name, item in zip(layout, items):
            if isinstance(item, list):
                raise MalformedTransaction(f"Field '{name}' must be a byte string", field=name)
            value = FIELD_SEDES[name].deserialize(item)
            if name in ("to", "sender"):
                if not value:
                    if name == "to" and tx_type == TxType.FEE_DELEGATED_SMART_CONTRACT_DEPLOY:
                        continue
                    raise MalformedTransaction(f"Field '{name}' is empty", field=name)
                if name == "to" and tx_type == TxType.FEE_DELEGATED_SMART_CONTRACT_DEPLOY:
                    raise MalformedTransaction("Deploy transaction must not carry 'to'", field="to")
                value = to_checksum_address(value)
            fields[name] = value

        tx = cls(**fields)
        sender_signatures = _deserialize_signatures("sender_signatures", items[len(layout)])

        if len(items) == len(layout) + 1:
            return SenderSigned(tx=tx, sender_signatures=sender_signatures)

        fee_payer_raw = items[len(layout) + 1]
        if isinstance(fee_payer_raw, list):
            raise MalformedTransaction("'fee_payer' must be a byte string", field="fee_payer")
        fee_payer = to_checksum_address(address.deserialize(fee_payer_raw))
        fee_payer_signatures = _deserialize_signatures(
            "fee_payer_signatures", items[len(layout) + 2]
        )
    except DeserializationError as e:
        raise MalformedTransaction(f"Non-canonical field encoding: {e}") from e

    return FullySigned(
        tx=tx,
        sender_signatures=sender_signatures,
        fee_payer=fee_payer,
        fee_payer_signatures=fee_payer_signatures,
    )
