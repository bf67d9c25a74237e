"""Explicit state machine for the two-signature protocol.

    Unsigned -> SenderSigned -> FullySigned -> Broadcast -> Confirmed
                                                         -> TimedOut
                                            -> Rejected

Every state is its own frozen type. A transaction can only reach the relay as
a `FullySigned`, and `FullySigned` cannot be built without both signature
lists, so "broadcast without fee payer signature" is not representable.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Optional, Union

from eth_utils import to_checksum_address

from kaiarelay.errors import InvalidTransactionFields
from kaiarelay.signing.signature import Signature
from kaiarelay.transaction.types import Transaction, is_address


class TxState(str, Enum):
    """Lifecycle tag carried by every state object."""
    UNSIGNED = "unsigned"
    SENDER_SIGNED = "sender_signed"
    FULLY_SIGNED = "fully_signed"
    BROADCAST = "broadcast"
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"


def _signature_tuple(name: str, signatures: Any) -> tuple[Signature, ...]:
    signatures = tuple(signatures)
    if not signatures:
        raise InvalidTransactionFields(f"'{name}' must contain at least one signature", field=name)
    for sig in signatures:
        if not isinstance(sig, Signature):
            raise InvalidTransactionFields(f"'{name}' must contain Signature values", field=name)
    return signatures


@dataclass(frozen=True)
class UnsignedTransaction:
    STATE: ClassVar[TxState] = TxState.UNSIGNED

    tx: Transaction

    def with_sender_signatures(self, signatures) -> "SenderSigned":
        return SenderSigned(tx=self.tx, sender_signatures=tuple(signatures))


@dataclass(frozen=True)
class SenderSigned:
    """Signed by the sender only. Not broadcastable."""

    STATE: ClassVar[TxState] = TxState.SENDER_SIGNED

    tx: Transaction
    sender_signatures: tuple[Signature, ...]

    def __post_init__(self):
        object.__setattr__(
            self, "sender_signatures", _signature_tuple("sender_signatures", self.sender_signatures)
        )

    def with_fee_payer(self, fee_payer: str, signatures) -> "FullySigned":
        return FullySigned(
            tx=self.tx,
            sender_signatures=self.sender_signatures,
            fee_payer=fee_payer,
            fee_payer_signatures=tuple(signatures),
        )


@dataclass(frozen=True)
class FullySigned:
    """Carries both signature sets. The only state the relay accepts."""

    STATE: ClassVar[TxState] = TxState.FULLY_SIGNED

    tx: Transaction
    sender_signatures: tuple[Signature, ...]
    fee_payer: str
    fee_payer_signatures: tuple[Signature, ...]

    def __post_init__(self):
        object.__setattr__(
            self, "sender_signatures", _signature_tuple("sender_signatures", self.sender_signatures)
        )
        object.__setattr__(
            self,
            "fee_payer_signatures",
            _signature_tuple("fee_payer_signatures", self.fee_payer_signatures),
        )
        if not is_address(self.fee_payer):
            raise InvalidTransactionFields("'fee_payer' must be a 20-byte hex address", field="fee_payer")
        object.__setattr__(self, "fee_payer", to_checksum_address(self.fee_payer))


@dataclass(frozen=True)
class BroadcastTransaction:
    """Accepted by the node; outcome not yet known."""

    STATE: ClassVar[TxState] = TxState.BROADCAST

    signed: FullySigned
    tx_hash: str


@dataclass(frozen=True)
class Confirmed:
    """Receipt observed. `succeeded` reflects the receipt status."""

    STATE: ClassVar[TxState] = TxState.CONFIRMED

    broadcast: BroadcastTransaction
    receipt: dict

    @property
    def succeeded(self) -> bool:
        status = self.receipt.get("status")
        if isinstance(status, str):
            return int(status, 16) == 1
        return status == 1


@dataclass(frozen=True)
class TimedOut:
    """No receipt within the wait. Ambiguous: may still confirm later."""

    STATE: ClassVar[TxState] = TxState.TIMED_OUT

    broadcast: BroadcastTransaction
    waited: float


@dataclass(frozen=True)
class Rejected:
    """Node refused the broadcast. `reason` is the node message verbatim."""

    STATE: ClassVar[TxState] = TxState.REJECTED

    signed: FullySigned
    reason: str
    code: Optional[int] = None


Outcome = Union[Confirmed, TimedOut, Rejected]
