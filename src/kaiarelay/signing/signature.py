"""Signature primitives: signing, recovery, compact parsing and the V formula.

Kaia binds every signature to one chain through V:

    V = 27 + parity + 2 * chain_id

The same formula is used for the sender and the fee payer. For chain 1001
(Kairos) a parity of 0 gives V = 2029 and a parity of 1 gives V = 2030.
"""

import logging
from dataclasses import dataclass
from typing import Union

from eth_account import Account
from eth_keys import keys
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as KeyValidationError
from eth_utils import to_checksum_address

from kaiarelay.errors import InvalidSignature, MalformedSignature

logger = logging.getLogger(__name__)

V_OFFSET = 27
SIGNATURE_LENGTH = 65  # r(32) + s(32) + v(1)
HASH_LENGTH = 32


@dataclass(frozen=True)
class Signature:
    """A (V, R, S) triple. V is chain-bound once normalized."""

    v: int
    r: int
    s: int

    def parity(self, chain_id: int) -> int:
        return parity_from_v(self.v, chain_id)

    def to_compact(self, chain_id: int) -> bytes:
        """65-byte R||S||V with the legacy 27/28 V a wallet would emit."""
        return (
            self.r.to_bytes(32, "big")
            + self.s.to_bytes(32, "big")
            + bytes([V_OFFSET + self.parity(chain_id)])
        )

    def to_rpc(self) -> dict:
        return {"V": hex(self.v), "R": hex(self.r), "S": hex(self.s)}


def compute_v(parity: int, chain_id: int) -> int:
    """The single V formula used for every signature in the pipeline."""
    if parity not in (0, 1):
        raise MalformedSignature(f"Recovery parity must be 0 or 1, got {parity}")
    return V_OFFSET + parity + 2 * chain_id


def parity_from_v(v: int, chain_id: int) -> int:
    """Invert `compute_v` for a chain-bound V.

    Raises:
        MalformedSignature: If V is not bound to `chain_id`
    """
    parity = v - V_OFFSET - 2 * chain_id
    if parity not in (0, 1):
        raise MalformedSignature(f"V={v} is not bound to chain {chain_id}")
    return parity


def _private_key(private_key: Union[bytes, str]) -> keys.PrivateKey:
    if isinstance(private_key, str):
        text = private_key[2:] if private_key.lower().startswith("0x") else private_key
        private_key = bytes.fromhex(text)
    return keys.PrivateKey(private_key)


def _check_hash(message_hash: bytes) -> bytes:
    if len(message_hash) != HASH_LENGTH:
        raise MalformedSignature(f"Message hash must be {HASH_LENGTH} bytes, got {len(message_hash)}")
    return bytes(message_hash)


def address_of(private_key: Union[bytes, str]) -> str:
    """Checksum address controlled by a private key."""
    return Account.from_key(_private_key(private_key).to_bytes()).address


def sign_hash(message_hash: bytes, private_key: Union[bytes, str], chain_id: int) -> Signature:
    """Sign a 32-byte hash and bind the result to `chain_id`.

    Args:
        message_hash: keccak-256 digest to sign
        private_key: 32-byte secp256k1 key (bytes or hex)
        chain_id: Chain the signature is valid on

    Returns:
        Signature with V = 27 + parity + 2 * chain_id
    """
    pk = _private_key(private_key)
    raw = pk.sign_msg_hash(_check_hash(message_hash))
    return Signature(v=compute_v(raw.v, chain_id), r=raw.r, s=raw.s)


def recover_signer(message_hash: bytes, signature: Signature, chain_id: int) -> str:
    """Recover the checksum address that produced `signature` over `message_hash`.

    Raises:
        MalformedSignature: If V is not chain-bound or R/S are out of range
    """
    parity = parity_from_v(signature.v, chain_id)
    try:
        raw = keys.Signature(vrs=(parity, signature.r, signature.s))
        public_key = raw.recover_public_key_from_msg_hash(_check_hash(message_hash))
    except (BadSignature, KeyValidationError) as e:
        raise MalformedSignature(f"Signature cannot be recovered: {e}") from e
    return public_key.to_checksum_address()


def verify_signer(message_hash: bytes, signature: Signature, chain_id: int, expected: str) -> str:
    """Check that `signature` over `message_hash` was made by `expected`.

    Returns:
        The recovered checksum address

    Raises:
        InvalidSignature: If the recovered address differs from `expected`
    """
    recovered = recover_signer(message_hash, signature, chain_id)
    expected_checksum = to_checksum_address(expected)
    if recovered != expected_checksum:
        raise InvalidSignature(
            f"Signature recovers to {recovered}, expected {expected_checksum}",
            expected=expected_checksum,
            recovered=recovered,
        )
    return recovered


def parse_compact(data: Union[bytes, str]) -> Signature:
    """Parse a 65-byte R||S||V blob (bytes or hex).

    V is returned exactly as found; use `normalize_signature` to bind it to
    a chain.

    Raises:
        MalformedSignature: If the blob is not 65 bytes
    """
    if isinstance(data, str):
        text = data[2:] if data.lower().startswith("0x") else data
        try:
            data = bytes.fromhex(text)
        except ValueError as e:
            raise MalformedSignature("Signature is not valid hex") from e

    if len(data) != SIGNATURE_LENGTH:
        raise MalformedSignature(
            f"Signature must be {SIGNATURE_LENGTH} bytes, got {len(data)}"
        )

    return Signature(
        v=data[64],
        r=int.from_bytes(data[:32], "big"),
        s=int.from_bytes(data[32:64], "big"),
    )


def normalize_signature(signature: Signature, chain_id: int) -> Signature:
    """Bind a detached signature to `chain_id` using the canonical V formula.

    Wallets emit V as a raw parity (0/1) or legacy value (27/28); a
    signature may also arrive already chain-bound. Each encoding maps to
    exactly one parity, and V is then recomputed with `compute_v`.

    Raises:
        MalformedSignature: For any other V
    """
    v = signature.v
    if v in (0, 1):
        parity = v
    elif v in (V_OFFSET, V_OFFSET + 1):
        parity = v - V_OFFSET
    else:
        parity = parity_from_v(v, chain_id)
    return Signature(v=compute_v(parity, chain_id), r=signature.r, s=signature.s)
