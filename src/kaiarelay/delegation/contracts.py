"""Request and result models for the delegation operations.

Field names are snake_case in Python and camelCase on the wire; the sender
address is `from` on the wire.
"""

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from kaiarelay.transaction.state import Confirmed, Outcome, Rejected, TimedOut, TxState

Quantity = Union[int, str]


class WireModel(BaseModel):
    """Base model: camelCase aliases, snake_case names accepted too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class DelegationRequest(WireModel):
    """Transaction intent submitted by a client.

    Quantities may be decimal strings, 0x-prefixed hex strings or ints.
    """

    from_address: str = Field(alias="from", description="Sender address")
    to: Optional[str] = Field(default=None, description="Recipient or contract (absent for deploy)")
    data: Optional[str] = Field(default=None, description="Hex call data or deploy bytecode")
    gas: Quantity = Field(description="Gas limit")
    gas_price: Optional[Quantity] = Field(default=None, description="Gas price in peb; node price if absent")
    value: Quantity = Field(default="0", description="Value in peb")
    memo: Optional[str] = Field(default=None, description="UTF-8 memo for value_transfer_memo")
    type: Optional[str] = Field(default=None, description="Request type name or hex tag")
    nonce: Optional[Quantity] = Field(default=None, description="Nonce returned by prepare-signing")
    fee_ratio: Optional[int] = Field(default=None, description="Fee payer share in percent (1-99)")


class SenderInput(WireModel):
    """Sender's contribution: exactly one of a raw signed transaction, a
    compact signature or explicit V/R/S."""

    raw_transaction: Optional[str] = None
    signature: Optional[str] = None
    v: Optional[Quantity] = None
    r: Optional[Quantity] = None
    s: Optional[Quantity] = None

    @model_validator(mode="after")
    def _exactly_one_mode(self) -> "SenderInput":
        vrs = (self.v, self.r, self.s)
        has_vrs = any(part is not None for part in vrs)
        if has_vrs and not all(part is not None for part in vrs):
            raise ValueError("v, r and s must be given together")

        modes = sum([self.raw_transaction is not None, self.signature is not None, has_vrs])
        if modes != 1:
            raise ValueError("Provide exactly one of rawTransaction, signature or v/r/s")
        return self

    @property
    def is_raw(self) -> bool:
        return self.raw_transaction is not None


class DelegateRequest(DelegationRequest):
    """HTTP body of /delegate: the request plus the sender input.

    `userSignature` is accepted as the legacy name of `signature`.
    """

    raw_transaction: Optional[str] = None
    signature: Optional[str] = None
    user_signature: Optional[str] = None
    v: Optional[Quantity] = None
    r: Optional[Quantity] = None
    s: Optional[Quantity] = None

    def split(self) -> tuple[DelegationRequest, SenderInput]:
        """Separate the transaction intent from the sender input.

        Raises:
            pydantic.ValidationError: If the sender input is not exactly one mode
        """
        request = DelegationRequest.model_validate(
            self.model_dump(include=set(DelegationRequest.model_fields))
        )
        sender_input = SenderInput(
            raw_transaction=self.raw_transaction,
            signature=self.signature or self.user_signature,
            v=self.v,
            r=self.r,
            s=self.s,
        )
        return request, sender_input


class PrepareSigningResponse(WireModel):
    transaction: dict
    signing_hash: str
    nonce: int
    gas_price: str
    chain_id: int
    fee_payer: str


class DelegationResult(WireModel):
    """Terminal outcome of a delegation.

    `status` is `confirmed`, `timed_out` or `rejected`. A timed-out
    transaction has a hash but an unknown outcome.
    """

    success: bool
    status: str
    fee_payer: str
    tx_hash: Optional[str] = None
    gas_used: Optional[int] = None
    effective_gas_price: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: Outcome, fee_payer: str) -> "DelegationResult":
        if isinstance(outcome, Confirmed):
            receipt = outcome.receipt
            price = receipt.get("effectiveGasPrice") or receipt.get("gasPrice")
            return cls(
                success=outcome.succeeded,
                status=TxState.CONFIRMED.value,
                fee_payer=fee_payer,
                tx_hash=outcome.broadcast.tx_hash,
                gas_used=_quantity(receipt.get("gasUsed")),
                effective_gas_price=(
                    _quantity(price) if price is not None else outcome.broadcast.signed.tx.gas_price
                ),
                error=None if outcome.succeeded else "execution reverted",
            )

        if isinstance(outcome, TimedOut):
            return cls(
                success=False,
                status=TxState.TIMED_OUT.value,
                fee_payer=fee_payer,
                tx_hash=outcome.broadcast.tx_hash,
                error=(
                    f"Receipt not found after {outcome.waited:.1f}s; "
                    "transaction may still confirm"
                ),
            )

        if isinstance(outcome, Rejected):
            return cls(
                success=False,
                status=TxState.REJECTED.value,
                fee_payer=fee_payer,
                error=outcome.reason,
            )

        raise TypeError(f"Not a terminal outcome: {type(outcome).__name__}")


def _quantity(value) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


class CostEstimate(WireModel):
    gas_limit: int
    gas_price: str
    total_cost_peb: str
    total_cost_kaia: str
    fee_payer: str


class EligibilityRequest(WireModel):
    address: str


class Eligibility(WireModel):
    address: str
    eligible: bool
    balance_kaia: Optional[str] = None
    reason: Optional[str] = None
