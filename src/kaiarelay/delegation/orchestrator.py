"""Fee delegation orchestrator.

Drives the two-signature protocol:

    1. prepare_for_signing: validate, reserve a nonce, build the transaction
       and hand the sender signing hash back to the client
    2. the sender signs that hash in their wallet
    3. delegate: verify the sender signature, co-sign the fee payer hash,
       broadcast and wait for the receipt

The only state kept between (1) and (3) is the nonce reservation.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from eth_utils import to_checksum_address

from kaiarelay.config import PEB_PER_KAIA, Settings, get_settings
from kaiarelay.delegation.config import DelegationConfig
from kaiarelay.delegation.contracts import (
    CostEstimate,
    DelegationRequest,
    DelegationResult,
    Eligibility,
    PrepareSigningResponse,
    SenderInput,
)
from kaiarelay.delegation.guard import ValidationGuard, parse_quantity
from kaiarelay.delegation.nonces import NonceTracker
from kaiarelay.encoding.rlp_codec import decode_signed, fee_payer_signing_hash, signing_hash
from kaiarelay.errors import (
    MalformedSignature,
    MalformedTransaction,
    SignatureMismatch,
    TransactionRejected,
    ValidationError,
)
from kaiarelay.rpc.client import KaiaRpcClient, RpcMethods
from kaiarelay.rpc.relay import Relay
from kaiarelay.signing.base import SigningRequest
from kaiarelay.signing.signature import (
    Signature,
    normalize_signature,
    parse_compact,
    recover_signer,
)
from kaiarelay.transaction.state import FullySigned, Rejected, SenderSigned, UnsignedTransaction
from kaiarelay.transaction.types import (
    REQUEST_TYPE_NAMES,
    Transaction,
    TxType,
    create_transaction,
    is_address,
)

logger = logging.getLogger(__name__)

# Transaction attribute -> request field it comes from
REQUEST_FIELD_NAMES = {
    "gas_limit": "gas",
    "gas_price": "gasPrice",
    "sender": "from",
    "input": "data",
    "fee_ratio": "feeRatio",
}


@dataclass(frozen=True)
class PreparedTransaction:
    """Unsigned transaction plus the hash the sender must sign."""

    transaction: Transaction
    signing_hash: bytes
    chain_id: int
    fee_payer: str

    @property
    def nonce(self) -> int:
        return self.transaction.nonce

    def to_response(self) -> PrepareSigningResponse:
        return PrepareSigningResponse(
            transaction=self.transaction.to_rpc_dict(),
            signing_hash="0x" + self.signing_hash.hex(),
            nonce=self.transaction.nonce,
            gas_price=str(self.transaction.gas_price),
            chain_id=self.chain_id,
            fee_payer=self.fee_payer,
        )


def format_kaia(peb: int) -> str:
    """Format a peb amount in KAIA without trailing zeros."""
    amount = Decimal(peb) / Decimal(PEB_PER_KAIA)
    return format(amount.normalize(), "f")


class FeeDelegationOrchestrator:
    """Builds, co-signs and relays fee-delegated transactions."""

    def __init__(
        self,
        config: DelegationConfig,
        client: KaiaRpcClient,
        relay: Optional[Relay] = None,
        guard: Optional[ValidationGuard] = None,
        nonces: Optional[NonceTracker] = None,
    ):
        self.config = config
        self.client = client
        self.relay = relay or Relay(
            client,
            receipt_timeout=config.receipt_timeout,
            poll_interval=config.receipt_poll_interval,
        )
        self.guard = guard or ValidationGuard(config.max_gas_limit, config.max_value, client)
        self.nonces = nonces or NonceTracker(client, ttl=config.nonce_reservation_ttl)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "FeeDelegationOrchestrator":
        """Wire the node client and fee payer from settings.

        Raises:
            ConfigurationError: If the fee payer key cannot be loaded
        """
        settings = settings or get_settings()
        config = DelegationConfig.from_settings(settings)
        client = KaiaRpcClient(
            settings.kaia_rpc_url,
            methods=RpcMethods.for_namespace(
                settings.kaia_rpc_namespace, settings.kaia_rpc_method_overrides
            ),
            timeout=settings.rpc_timeout,
        )
        return cls(config, client)

    @property
    def fee_payer_address(self) -> str:
        return self.config.fee_payer_address

    @property
    def chain_id(self) -> int:
        return self.config.chain_id

    # ------------------------------------------------------------------
    # Signing round-trip
    # ------------------------------------------------------------------

    async def prepare_for_signing(self, request: DelegationRequest) -> PreparedTransaction:
        """Validate the request and build the transaction the sender must sign.

        Raises:
            ValidationError: A sanity check failed (nothing was reserved)
            InvalidTransactionFields: The fields do not fit the resolved type
            RpcError: Gas price, nonce or balance could not be read
        """
        tx_type = await self.guard.validate(request)

        if request.gas_price is not None:
            gas_price = parse_quantity("gasPrice", request.gas_price)
        else:
            gas_price = await self.client.get_gas_price()

        pinned_nonce = None
        if request.nonce is not None:
            pinned_nonce = parse_quantity("nonce", request.nonce)
            nonce = pinned_nonce
        else:
            reservation = await self.nonces.reserve(request.from_address, gas_price)
            nonce = reservation.nonce

        try:
            tx = self._build_transaction(tx_type, request, nonce, gas_price)
        except Exception:
            if pinned_nonce is None:
                self.nonces.release(request.from_address, nonce)
            raise

        prepared = PreparedTransaction(
            transaction=tx,
            signing_hash=signing_hash(tx, self.chain_id),
            chain_id=self.chain_id,
            fee_payer=self.fee_payer_address,
        )
        logger.info(
            f"Prepared {tx_type.name} for {tx.sender} nonce={nonce} gasPrice={gas_price}"
        )
        return prepared

    async def delegate(self, request: DelegationRequest, sender_input: SenderInput) -> DelegationResult:
        """Co-sign and relay a sender-signed transaction.

        Input problems raise; once the transaction reaches the node, every
        outcome (confirmed, reverted, rejected, timed out) is returned as a
        DelegationResult.

        Raises:
            ValidationError: A sanity check failed
            InvalidTransactionFields: The sender transaction is malformed
            SignatureError: The sender signature is malformed or not from `from`
            RelayError: The node could not be reached for the broadcast
        """
        tx_type = await self.guard.validate(request)

        if sender_input.is_raw:
            sender_signed = self._sender_signed_from_raw(request, tx_type, sender_input.raw_transaction)
        else:
            sender_signed = self._sender_signed_from_signature(request, sender_input)

        tx = sender_signed.tx
        fully_signed = await self._co_sign(sender_signed)

        try:
            broadcast = await self.relay.submit(fully_signed)
        except TransactionRejected as e:
            self.nonces.release(tx.sender, tx.nonce)
            logger.warning(f"Delegation for {tx.sender} nonce={tx.nonce} rejected: {e}")
            outcome = Rejected(signed=fully_signed, reason=str(e), code=e.code)
            return DelegationResult.from_outcome(outcome, self.fee_payer_address)

        self.nonces.complete(tx.sender, tx.nonce)
        outcome = await self.relay.settle(broadcast)
        logger.info(f"Delegation {broadcast.tx_hash} settled as {outcome.STATE.value}")
        return DelegationResult.from_outcome(outcome, self.fee_payer_address)

    def _sender_signed_from_raw(
        self, request: DelegationRequest, tx_type: TxType, raw: str
    ) -> SenderSigned:
        """Decode a raw sender-signed transaction.

        The sender's signature is trusted as-is: the node verifies it on
        broadcast. The decoded body must be the transaction the request
        describes; nonce and gas price are taken from the raw transaction
        unless the request pins them.
        """
        decoded = decode_signed(raw)
        if isinstance(decoded, FullySigned):
            raise MalformedTransaction("Raw transaction already carries a fee payer signature")

        tx = decoded.tx
        if tx.sender != to_checksum_address(request.from_address):
            raise ValidationError(
                "from", f"raw transaction sender {tx.sender} does not match {request.from_address}"
            )
        if tx.TX_TYPE != tx_type:
            raise ValidationError(
                "type", f"raw transaction is {tx.TX_TYPE.tag}, request describes {tx_type.tag}"
            )

        nonce = parse_quantity("nonce", request.nonce) if request.nonce is not None else tx.nonce
        if request.gas_price is not None:
            gas_price = parse_quantity("gasPrice", request.gas_price)
        else:
            gas_price = tx.gas_price
        self.guard.check_limits(tx.gas_limit, tx.value)
        expected = self._build_transaction(tx_type, request, nonce, gas_price)

        for name in tx.LAYOUT:
            if getattr(tx, name) != getattr(expected, name):
                field = REQUEST_FIELD_NAMES.get(name, name)
                raise ValidationError(field, f"raw transaction {field} does not match the request")
        return decoded

    def _sender_signed_from_signature(
        self, request: DelegationRequest, sender_input: SenderInput
    ) -> SenderSigned:
        """Rebuild the prepared transaction and verify the detached signature.

        Without an echoed nonce every open reservation of the sender is a
        candidate, and the one whose signing hash recovers to `from` is used.
        """
        candidates = self._rebuild_candidates(request)

        if sender_input.signature is not None:
            raw_signature = parse_compact(sender_input.signature)
        else:
            try:
                raw_signature = Signature(
                    v=parse_quantity("v", sender_input.v),
                    r=parse_quantity("r", sender_input.r),
                    s=parse_quantity("s", sender_input.s),
                )
            except ValidationError as e:
                raise MalformedSignature(str(e)) from e

        signature = normalize_signature(raw_signature, self.chain_id)
        expected = candidates[0].sender
        recovered = None
        for tx in candidates:
            recovered = recover_signer(signing_hash(tx, self.chain_id), signature, self.chain_id)
            if recovered == tx.sender:
                return UnsignedTransaction(tx).with_sender_signatures([signature])

        logger.warning(f"Sender signature mismatch: recovered {recovered}, expected {expected}")
        raise SignatureMismatch(
            f"Signature recovers to {recovered}, expected {expected}",
            expected=expected,
            recovered=recovered,
        )

    def _rebuild_candidates(self, request: DelegationRequest) -> list[Transaction]:
        """Reconstruct the transaction(s) prepare_for_signing may have returned.

        An echoed nonce selects exactly one transaction. Otherwise there is
        one candidate per open reservation, lowest nonce first. Gas price
        comes from the request when given, otherwise from the reservation.
        """
        tx_type = self.guard.check_type(request)
        gas_price = (
            parse_quantity("gasPrice", request.gas_price) if request.gas_price is not None else None
        )

        if request.nonce is not None:
            nonce = parse_quantity("nonce", request.nonce)
            if gas_price is None:
                reservation = self.nonces.lookup(request.from_address, nonce)
                if reservation is None:
                    raise ValidationError(
                        "gasPrice", f"nonce {nonce} was not prepared here; gasPrice must be given"
                    )
                gas_price = reservation.gas_price
            return [self._build_transaction(tx_type, request, nonce, gas_price)]

        reservations = self.nonces.reservations(request.from_address)
        if not reservations:
            raise ValidationError(
                "nonce", f"no prepared transaction for {request.from_address}; call prepare first"
            )
        return [
            self._build_transaction(
                tx_type, request, r.nonce, gas_price if gas_price is not None else r.gas_price
            )
            for r in reservations
        ]

    async def _co_sign(self, sender_signed: SenderSigned) -> FullySigned:
        tx = sender_signed.tx
        fee_payer = self.fee_payer_address
        signature = await self.config.fee_payer.sign(
            SigningRequest(
                message_hash=fee_payer_signing_hash(tx, fee_payer, self.chain_id),
                chain_id=self.chain_id,
                purpose="fee_payer",
                metadata={"sender": tx.sender, "nonce": tx.nonce, "type": tx.TX_TYPE.tag},
            )
        )
        return sender_signed.with_fee_payer(fee_payer, [signature])

    def _build_transaction(
        self, tx_type: TxType, request: DelegationRequest, nonce: int, gas_price: int
    ) -> Transaction:
        fields = {
            "nonce": nonce,
            "gasPrice": gas_price,
            "gas": parse_quantity("gas", request.gas),
            "from": request.from_address,
            "value": parse_quantity("value", request.value),
        }

        if tx_type != TxType.FEE_DELEGATED_SMART_CONTRACT_DEPLOY:
            fields["to"] = request.to

        if tx_type == TxType.FEE_DELEGATED_VALUE_TRANSFER_MEMO:
            fields["input"] = request.memo.encode("utf-8") if request.memo else request.data
        elif tx_type in (
            TxType.FEE_DELEGATED_SMART_CONTRACT_EXECUTION,
            TxType.FEE_DELEGATED_SMART_CONTRACT_DEPLOY,
        ):
            fields["input"] = request.data
        elif tx_type == TxType.FEE_DELEGATED_VALUE_TRANSFER_WITH_RATIO:
            fields["feeRatio"] = request.fee_ratio

        return create_transaction(tx_type, fields)

    # ------------------------------------------------------------------
    # Supplementary read operations
    # ------------------------------------------------------------------

    async def estimate_cost(self, request: DelegationRequest) -> CostEstimate:
        """Estimate the fee the fee payer would pay for this request.

        Raises:
            ValidationError: Invalid addresses
            RpcError: The node could not estimate
        """
        self.guard.check_addresses(request)

        call = {"from": request.from_address}
        if request.to is not None:
            call["to"] = request.to
        if request.data:
            call["data"] = request.data
        value = parse_quantity("value", request.value)
        if value:
            call["value"] = hex(value)

        gas_limit = await self.client.estimate_gas(call)
        if request.gas_price is not None:
            gas_price = parse_quantity("gasPrice", request.gas_price)
        else:
            gas_price = await self.client.get_gas_price()

        total = gas_limit * gas_price
        return CostEstimate(
            gas_limit=gas_limit,
            gas_price=str(gas_price),
            total_cost_peb=str(total),
            total_cost_kaia=format_kaia(total),
            fee_payer=self.fee_payer_address,
        )

    async def check_eligibility(self, address: str) -> Eligibility:
        """Whether an address may use fee delegation."""
        if not is_address(address):
            return Eligibility(address=address, eligible=False, reason="invalid address")

        balance = await self.client.get_balance(address)
        minimum = self.config.min_eligibility_balance
        if balance < minimum:
            return Eligibility(
                address=address,
                eligible=False,
                balance_kaia=format_kaia(balance),
                reason=f"balance below minimum of {format_kaia(minimum)} KAIA",
            )
        return Eligibility(address=address, eligible=True, balance_kaia=format_kaia(balance))

    def supported_types(self) -> list[dict]:
        return [
            {"name": name, "type": tx_type.tag, "typeName": tx_type.name}
            for name, tx_type in REQUEST_TYPE_NAMES.items()
        ]

    def health(self) -> dict:
        return {
            "chainId": self.chain_id,
            "feePayer": self.fee_payer_address,
            "rpcUrl": self.client.rpc_url,
        }
