"""End-to-end tests for the fee delegation orchestrator."""

import asyncio
import re

import pytest

from kaiarelay.config import Settings
from kaiarelay.crypto import SecretEncryptor, generate_master_key
from kaiarelay.delegation.config import DelegationConfig
from kaiarelay.delegation.contracts import DelegationRequest, SenderInput
from kaiarelay.delegation.nonces import Reservation
from kaiarelay.delegation.orchestrator import FeeDelegationOrchestrator, format_kaia
from kaiarelay.encoding.rlp_codec import decode_signed, encode_signed, fee_payer_signing_hash
from kaiarelay.errors import (
    ConfigurationError,
    MalformedSignature,
    MalformedTransaction,
    RelayError,
    SignatureMismatch,
    ValidationError,
)
from kaiarelay.signing.signature import recover_signer, sign_hash
from kaiarelay.transaction.state import FullySigned, SenderSigned
from kaiarelay.transaction.types import TxType

from tests.conftest import (
    CHAIN_ID,
    FEE_PAYER,
    FEE_PAYER_KEY,
    GAS_PRICE,
    OTHER,
    OTHER_KEY,
    RECIPIENT,
    SENDER,
    SENDER_KEY,
)

TX_HASH = re.compile(r"^0x[0-9a-f]{64}$")


def request(**overrides) -> DelegationRequest:
    data = {"from": SENDER, "to": RECIPIENT, "gas": "21000", "value": "0"}
    data.update(overrides)
    return DelegationRequest.model_validate(data)


async def sign_prepared(orchestrator, req: DelegationRequest, key: str = SENDER_KEY):
    """Prepare, sign with the sender key and build the delegate inputs."""
    prepared = await orchestrator.prepare_for_signing(req)
    signature = sign_hash(prepared.signing_hash, key, CHAIN_ID)
    echoed = req.model_copy(update={"nonce": prepared.nonce})
    return prepared, echoed, SenderInput(signature="0x" + signature.to_compact(CHAIN_ID).hex())


class TestPrepareForSigning:
    """Tests for prepare_for_signing."""

    @pytest.mark.asyncio
    async def test_prepare(self, orchestrator, mock_node):
        prepared = await orchestrator.prepare_for_signing(request())

        assert prepared.transaction.TX_TYPE == TxType.FEE_DELEGATED_VALUE_TRANSFER
        assert prepared.transaction.gas_price == GAS_PRICE
        assert prepared.nonce == 0
        assert len(prepared.signing_hash) == 32
        assert mock_node.methods_called("gasPrice")

        response = prepared.to_response().to_wire()
        assert response["signingHash"] == "0x" + prepared.signing_hash.hex()
        assert response["feePayer"] == FEE_PAYER
        assert response["chainId"] == CHAIN_ID

    @pytest.mark.asyncio
    async def test_request_gas_price_skips_oracle(self, orchestrator, mock_node):
        prepared = await orchestrator.prepare_for_signing(request(gasPrice="0x3b9aca00"))

        assert prepared.transaction.gas_price == 10**9
        assert not mock_node.methods_called("gasPrice")

    @pytest.mark.asyncio
    async def test_pinned_nonce_skips_reservation(self, orchestrator, mock_node):
        prepared = await orchestrator.prepare_for_signing(request(nonce="12"))

        assert prepared.nonce == 12
        assert not mock_node.methods_called("getTransactionCount")

    @pytest.mark.asyncio
    async def test_memo_is_utf8(self, orchestrator):
        prepared = await orchestrator.prepare_for_signing(request(memo="gm ☀"))

        assert prepared.transaction.TX_TYPE == TxType.FEE_DELEGATED_VALUE_TRANSFER_MEMO
        assert prepared.transaction.input == "gm ☀".encode("utf-8")

    @pytest.mark.asyncio
    async def test_deploy(self, orchestrator):
        req = DelegationRequest.model_validate(
            {"from": SENDER, "gas": "300000", "data": "0x6080", "type": "contract_deploy"}
        )
        prepared = await orchestrator.prepare_for_signing(req)

        assert prepared.transaction.TX_TYPE == TxType.FEE_DELEGATED_SMART_CONTRACT_DEPLOY
        assert prepared.transaction.to is None

    @pytest.mark.asyncio
    async def test_validation_failure_reserves_nothing(self, orchestrator, mock_node):
        with pytest.raises(ValidationError):
            await orchestrator.prepare_for_signing(request(gas="600000"))

        assert mock_node.calls == []
        assert orchestrator.nonces.lookup(SENDER) is None


class TestDelegate:
    """Tests for delegate."""

    @pytest.mark.asyncio
    async def test_end_to_end(self, orchestrator, mock_node):
        """A correctly signed value transfer is co-signed, broadcast and confirmed."""
        req = request()
        _, echoed, sender_input = await sign_prepared(orchestrator, req)

        result = await orchestrator.delegate(echoed, sender_input)

        assert result.success is True
        assert result.status == "confirmed"
        assert TX_HASH.match(result.tx_hash)
        assert result.fee_payer == FEE_PAYER
        assert result.gas_used == 21000
        assert result.effective_gas_price == GAS_PRICE
        assert result.error is None

        broadcast = decode_signed(mock_node.sent[0])
        assert isinstance(broadcast, FullySigned)
        assert broadcast.fee_payer == FEE_PAYER
        fee_payer_hash = fee_payer_signing_hash(broadcast.tx, FEE_PAYER, CHAIN_ID)
        assert recover_signer(fee_payer_hash, broadcast.fee_payer_signatures[0], CHAIN_ID) == FEE_PAYER
        assert broadcast.sender_signatures[0].v in (2029, 2030)

    @pytest.mark.asyncio
    async def test_reservation_is_found_without_echo(self, orchestrator):
        req = request()
        prepared, _, sender_input = await sign_prepared(orchestrator, req)

        result = await orchestrator.delegate(req, sender_input)

        assert result.success is True
        assert orchestrator.nonces.lookup(SENDER, prepared.nonce) is None

    @pytest.mark.asyncio
    async def test_later_reservation_delegated_first_without_echo(self, orchestrator, mock_node):
        """The signature selects which prepared transaction it covers."""
        req = request()
        first = await orchestrator.prepare_for_signing(req)
        second = await orchestrator.prepare_for_signing(req)
        assert (first.nonce, second.nonce) == (0, 1)

        for prepared in (second, first):
            signature = sign_hash(prepared.signing_hash, SENDER_KEY, CHAIN_ID)
            result = await orchestrator.delegate(
                req, SenderInput(signature="0x" + signature.to_compact(CHAIN_ID).hex())
            )
            assert result.success is True

        assert [decode_signed(raw).tx.nonce for raw in mock_node.sent] == [1, 0]
        assert orchestrator.nonces.open_reservations(SENDER) == []

    @pytest.mark.asyncio
    async def test_mismatch_against_every_reservation(self, orchestrator, mock_node):
        req = request()
        await orchestrator.prepare_for_signing(req)
        prepared = await orchestrator.prepare_for_signing(req)
        signature = sign_hash(prepared.signing_hash, OTHER_KEY, CHAIN_ID)

        with pytest.raises(SignatureMismatch):
            await orchestrator.delegate(
                req, SenderInput(signature="0x" + signature.to_compact(CHAIN_ID).hex())
            )

        assert not mock_node.methods_called("sendRawTransaction")
        assert orchestrator.nonces.open_reservations(SENDER) == [0, 1]

    @pytest.mark.asyncio
    async def test_explicit_vrs(self, orchestrator):
        req = request()
        prepared = await orchestrator.prepare_for_signing(req)
        signature = sign_hash(prepared.signing_hash, SENDER_KEY, CHAIN_ID)
        parity = signature.parity(CHAIN_ID)

        result = await orchestrator.delegate(
            req, SenderInput(v=parity, r=hex(signature.r), s=hex(signature.s))
        )

        assert result.success is True

    @pytest.mark.asyncio
    async def test_signature_mismatch(self, orchestrator, mock_node):
        """A signature from a different key is rejected before broadcast."""
        _, echoed, sender_input = await sign_prepared(orchestrator, request(), key=OTHER_KEY)

        with pytest.raises(SignatureMismatch):
            await orchestrator.delegate(echoed, sender_input)

        assert not mock_node.methods_called("sendRawTransaction")

    @pytest.mark.asyncio
    async def test_tampered_request(self, orchestrator, mock_node):
        """Changing the request after signing changes the hash and fails recovery."""
        _, echoed, sender_input = await sign_prepared(orchestrator, request())

        with pytest.raises(SignatureMismatch):
            await orchestrator.delegate(echoed.model_copy(update={"gas": "21001"}), sender_input)

        assert not mock_node.methods_called("sendRawTransaction")

    @pytest.mark.asyncio
    async def test_malformed_signature(self, orchestrator):
        await orchestrator.prepare_for_signing(request())

        with pytest.raises(MalformedSignature):
            await orchestrator.delegate(request(), SenderInput(signature="0x" + "00" * 64))

    @pytest.mark.asyncio
    async def test_unprepared_request(self, orchestrator):
        with pytest.raises(ValidationError) as exc:
            await orchestrator.delegate(request(), SenderInput(signature="0x" + "00" * 65))
        assert exc.value.constraint == "nonce"

    @pytest.mark.asyncio
    async def test_raw_transaction(self, orchestrator, mock_node):
        """Mode (a): a raw sender-signed transaction is decoded and co-signed."""
        prepared = await orchestrator.prepare_for_signing(request())
        signature = sign_hash(prepared.signing_hash, SENDER_KEY, CHAIN_ID)
        raw = encode_signed(SenderSigned(prepared.transaction, (signature,)))

        result = await orchestrator.delegate(request(), SenderInput(raw_transaction="0x" + raw.hex()))

        assert result.success is True
        assert decode_signed(mock_node.sent[0]).sender_signatures == (signature,)

    @pytest.mark.asyncio
    async def test_raw_transaction_sender_mismatch(self, orchestrator):
        prepared = await orchestrator.prepare_for_signing(request())
        signature = sign_hash(prepared.signing_hash, SENDER_KEY, CHAIN_ID)
        raw = encode_signed(SenderSigned(prepared.transaction, (signature,)))

        with pytest.raises(ValidationError) as exc:
            await orchestrator.delegate(
                request(**{"from": RECIPIENT}), SenderInput(raw_transaction=raw.hex())
            )
        assert exc.value.constraint == "from"

    @pytest.mark.asyncio
    async def test_raw_transaction_over_ceiling(self, orchestrator):
        prepared = await orchestrator.prepare_for_signing(request(gas="500000"))
        tx = prepared.transaction
        big = type(tx)(nonce=tx.nonce, gas_price=tx.gas_price, gas_limit=900_000, sender=tx.sender, to=tx.to, value=0)
        signature = sign_hash(prepared.signing_hash, SENDER_KEY, CHAIN_ID)
        raw = encode_signed(SenderSigned(big, (signature,)))

        with pytest.raises(ValidationError) as exc:
            await orchestrator.delegate(request(), SenderInput(raw_transaction=raw.hex()))
        assert exc.value.constraint == "gas"

    @pytest.mark.asyncio
    async def test_raw_fully_signed_is_refused(self, orchestrator):
        prepared = await orchestrator.prepare_for_signing(request())
        signature = sign_hash(prepared.signing_hash, SENDER_KEY, CHAIN_ID)
        raw = encode_signed(FullySigned(prepared.transaction, (signature,), FEE_PAYER, (signature,)))

        with pytest.raises(MalformedTransaction):
            await orchestrator.delegate(request(), SenderInput(raw_transaction=raw.hex()))

    @pytest.mark.asyncio
    async def test_raw_transaction_type_must_match_request(self, orchestrator, mock_node):
        """A contract call cannot be passed off as a plain value transfer."""
        prepared = await orchestrator.prepare_for_signing(request(data="0xa9059cbb" + "00" * 64))
        assert prepared.transaction.TX_TYPE == TxType.FEE_DELEGATED_SMART_CONTRACT_EXECUTION
        signature = sign_hash(prepared.signing_hash, SENDER_KEY, CHAIN_ID)
        raw = encode_signed(SenderSigned(prepared.transaction, (signature,)))

        with pytest.raises(ValidationError) as exc:
            await orchestrator.delegate(request(), SenderInput(raw_transaction=raw.hex()))
        assert exc.value.constraint == "type"
        assert not mock_node.methods_called("sendRawTransaction")

    @pytest.mark.asyncio
    async def test_raw_transaction_recipient_must_match_request(self, orchestrator):
        prepared = await orchestrator.prepare_for_signing(request())
        signature = sign_hash(prepared.signing_hash, SENDER_KEY, CHAIN_ID)
        raw = encode_signed(SenderSigned(prepared.transaction, (signature,)))

        with pytest.raises(ValidationError) as exc:
            await orchestrator.delegate(request(to=OTHER), SenderInput(raw_transaction=raw.hex()))
        assert exc.value.constraint == "to"

    @pytest.mark.asyncio
    async def test_raw_transaction_value_must_match_request(self, orchestrator, mock_node):
        """A zero-value request cannot carry a raw transfer that skipped the balance check."""
        mock_node.balances[SENDER.lower()] = 10**18
        prepared = await orchestrator.prepare_for_signing(request(value="5"))
        signature = sign_hash(prepared.signing_hash, SENDER_KEY, CHAIN_ID)
        raw = encode_signed(SenderSigned(prepared.transaction, (signature,)))

        with pytest.raises(ValidationError) as exc:
            await orchestrator.delegate(request(), SenderInput(raw_transaction=raw.hex()))
        assert exc.value.constraint == "value"

    @pytest.mark.asyncio
    async def test_rejection_is_a_result(self, orchestrator, mock_node):
        mock_node.reject_with = "insufficient funds for gas * price + value"
        _, echoed, sender_input = await sign_prepared(orchestrator, request())

        result = await orchestrator.delegate(echoed, sender_input)

        assert result.success is False
        assert result.status == "rejected"
        assert result.error == "insufficient funds for gas * price + value"
        assert result.tx_hash is None
        # the nonce is free again
        assert (await orchestrator.prepare_for_signing(request())).nonce == 0

    @pytest.mark.asyncio
    async def test_reverted_receipt(self, orchestrator, mock_node):
        mock_node.receipt_status = "0x0"
        _, echoed, sender_input = await sign_prepared(orchestrator, request())

        result = await orchestrator.delegate(echoed, sender_input)

        assert result.success is False
        assert result.status == "confirmed"
        assert result.error == "execution reverted"
        assert TX_HASH.match(result.tx_hash)

    @pytest.mark.asyncio
    async def test_receipt_timeout_is_ambiguous(self, orchestrator, mock_node):
        mock_node.auto_receipt = False
        _, echoed, sender_input = await sign_prepared(orchestrator, request())

        result = await orchestrator.delegate(echoed, sender_input)

        assert result.success is False
        assert result.status == "timed_out"
        assert TX_HASH.match(result.tx_hash)
        assert "may still confirm" in result.error

    @pytest.mark.asyncio
    async def test_transport_failure_propagates(self, orchestrator, monkeypatch):
        _, echoed, sender_input = await sign_prepared(orchestrator, request())

        async def unreachable(raw_tx):
            raise RelayError("Broadcast failed: connection refused")

        monkeypatch.setattr(orchestrator.relay, "broadcast", unreachable)

        with pytest.raises(RelayError):
            await orchestrator.delegate(echoed, sender_input)


class UnserializedNonces:
    """Nonce source that reads the pending count without coordination."""

    def __init__(self, client):
        self.client = client

    async def reserve(self, sender, gas_price):
        nonce = await self.client.get_transaction_count(sender, "pending")
        await asyncio.sleep(0)
        return Reservation(sender=sender, nonce=nonce, gas_price=gas_price, created_at=0.0)

    def lookup(self, sender, nonce=None):
        return None

    def complete(self, sender, nonce):
        pass

    def release(self, sender, nonce):
        pass


class TestNonceRace:
    """Two delegations for the same sender prepared concurrently."""

    async def _race(self, orchestrator):
        async def flow():
            req = request(gasPrice=str(GAS_PRICE))
            _, echoed, sender_input = await sign_prepared(orchestrator, req)
            return await orchestrator.delegate(echoed, sender_input)

        return await asyncio.gather(flow(), flow())

    @pytest.mark.asyncio
    async def test_without_serialization_at_most_one_succeeds(self, delegation_config, rpc_client):
        orchestrator = FeeDelegationOrchestrator(
            delegation_config, rpc_client, nonces=UnserializedNonces(rpc_client)
        )

        results = await self._race(orchestrator)

        assert sum(r.success for r in results) <= 1
        assert any(r.error == "nonce too low" for r in results)

    @pytest.mark.asyncio
    async def test_tracker_assigns_sequential_nonces(self, orchestrator, mock_node):
        results = await self._race(orchestrator)

        assert all(r.success for r in results)
        assert mock_node.used_nonces[SENDER.lower()] == {0, 1}


class TestSupplementaryOperations:
    """Tests for estimate, eligibility and metadata operations."""

    @pytest.mark.asyncio
    async def test_estimate_cost(self, orchestrator, mock_node):
        mock_node.gas_estimate = 50_000
        estimate = await orchestrator.estimate_cost(request(data="0x01"))

        assert estimate.gas_limit == 50_000
        assert estimate.total_cost_peb == str(50_000 * GAS_PRICE)
        assert estimate.total_cost_kaia == "0.00125"
        assert estimate.fee_payer == FEE_PAYER

    @pytest.mark.asyncio
    async def test_eligibility(self, orchestrator, mock_node):
        mock_node.balances[SENDER.lower()] = 10**15
        eligible = await orchestrator.check_eligibility(SENDER)
        assert eligible.eligible is True
        assert eligible.balance_kaia == "0.001"

        poor = await orchestrator.check_eligibility(RECIPIENT)
        assert poor.eligible is False

        invalid = await orchestrator.check_eligibility("0x1234")
        assert invalid.eligible is False
        assert invalid.reason == "invalid address"

    def test_supported_types(self, orchestrator):
        names = {t["name"]: t["type"] for t in orchestrator.supported_types()}
        assert names["contract_execution"] == "0x31"
        assert names["value_transfer_with_ratio"] == "0x0a"

    def test_format_kaia(self):
        assert format_kaia(0) == "0"
        assert format_kaia(10**18) == "1"
        assert format_kaia(10**17) == "0.1"


class TestDelegationConfig:
    """Tests for building the runtime configuration."""

    def test_from_settings(self):
        settings = Settings(kaia_fee_payer_private_key=FEE_PAYER_KEY, kaia_chain_id=8217)
        config = DelegationConfig.from_settings(settings)

        assert config.chain_id == 8217
        assert config.fee_payer_address == FEE_PAYER
        assert config.max_gas_limit == 500_000

    def test_encrypted_key(self):
        master_key = generate_master_key()
        encrypted = SecretEncryptor(master_key).encrypt(FEE_PAYER_KEY)
        settings = Settings(kaia_fee_payer_private_key=encrypted, master_key=master_key)

        assert DelegationConfig.from_settings(settings).fee_payer_address == FEE_PAYER

    def test_encrypted_key_without_master_key(self):
        encrypted = SecretEncryptor(generate_master_key()).encrypt(FEE_PAYER_KEY)
        with pytest.raises(ConfigurationError):
            DelegationConfig.from_settings(Settings(kaia_fee_payer_private_key=encrypted))

    def test_missing_key(self):
        with pytest.raises(ConfigurationError):
            DelegationConfig.from_settings(Settings(kaia_fee_payer_private_key=""))

    def test_config_is_immutable(self, delegation_config):
        with pytest.raises(AttributeError):
            delegation_config.chain_id = 1
