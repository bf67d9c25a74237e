"""Pytest configuration and fixtures."""

import json
import os
from typing import Optional

import httpx
import pytest
from eth_utils import keccak

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "true"
os.environ["KAIA_FEE_PAYER_PRIVATE_KEY"] = ""

from kaiarelay.config import get_settings
from kaiarelay.delegation.config import DelegationConfig
from kaiarelay.delegation.orchestrator import FeeDelegationOrchestrator
from kaiarelay.encoding.rlp_codec import decode_signed
from kaiarelay.rpc.client import KaiaRpcClient
from kaiarelay.signing.local import LocalSigner
from kaiarelay.signing.signature import address_of
from kaiarelay.utils.locks import clear_sender_locks

CHAIN_ID = 1001

SENDER_KEY = "0x" + "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
FEE_PAYER_KEY = "0x" + "8da4ef21b864d2cc526dbdb2a120bd2874c36c9d0a1fb7f8c63d7f7a8b41de8f"
OTHER_KEY = "0x" + "0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef"

SENDER = address_of(SENDER_KEY)
FEE_PAYER = address_of(FEE_PAYER_KEY)
OTHER = address_of(OTHER_KEY)
RECIPIENT = "0x7b65B75d204aBed71587c9E519a89277766EE1d0"

GAS_PRICE = 25 * 10**9


class NodeError(Exception):
    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


class MockKaiaNode:
    """In-process Kaia node speaking JSON-RPC over httpx.MockTransport.

    Dispatches on the method name after the namespace prefix, so kaia_,
    klay_ and eth_ calls all reach the same handler. Rejects a second
    transaction with an already used nonce, like a real node.
    """

    def __init__(self):
        self.calls: list[tuple[str, list]] = []
        self.balances: dict[str, int] = {}
        self.gas_price = GAS_PRICE
        self.gas_estimate = 21000
        self.used_nonces: dict[str, set[int]] = {}
        self.receipts: dict[str, dict] = {}
        self.sent: list[str] = []
        self.auto_receipt = True
        self.receipt_status = "0x1"
        self.receipt_errors = 0
        self.reject_with: Optional[str] = None

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def methods_called(self, suffix: Optional[str] = None) -> list[str]:
        names = [method for method, _ in self.calls]
        if suffix is None:
            return names
        return [name for name in names if name.endswith(f"_{suffix}")]

    def handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method = body["method"]
        params = body.get("params", [])
        self.calls.append((method, params))

        handler = getattr(self, f"_{method.split('_', 1)[-1]}", None)
        if handler is None:
            return self._error(body["id"], -32601, f"the method {method} does not exist")

        try:
            result = handler(params)
        except NodeError as e:
            return self._error(body["id"], e.code, e.message)

        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    @staticmethod
    def _error(request_id, code: int, message: str) -> httpx.Response:
        return httpx.Response(
            200,
            json={"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}},
        )

    def _gasPrice(self, params):
        return hex(self.gas_price)

    def _estimateGas(self, params):
        return hex(self.gas_estimate)

    def _getBalance(self, params):
        return hex(self.balances.get(params[0].lower(), 0))

    def _getTransactionCount(self, params):
        used = self.used_nonces.get(params[0].lower(), set())
        return hex(max(used) + 1 if used else 0)

    def _sendRawTransaction(self, params):
        raw = params[0]
        if self.reject_with:
            raise NodeError(-32000, self.reject_with)

        signed = decode_signed(raw)
        sender = signed.tx.sender.lower()
        used = self.used_nonces.setdefault(sender, set())
        if signed.tx.nonce in used:
            raise NodeError(-32000, "nonce too low")
        used.add(signed.tx.nonce)

        tx_hash = "0x" + keccak(hexstr=raw).hex()
        self.sent.append(raw)
        if self.auto_receipt:
            self.receipts[tx_hash] = {
                "transactionHash": tx_hash,
                "status": self.receipt_status,
                "gasUsed": hex(21000),
                "effectiveGasPrice": hex(signed.tx.gas_price),
                "blockNumber": hex(100 + len(self.sent)),
            }
        return tx_hash

    def _getTransactionReceipt(self, params):
        if self.receipt_errors > 0:
            self.receipt_errors -= 1
            raise NodeError(-32000, "header not found")
        return self.receipts.get(params[0])


@pytest.fixture(autouse=True)
def reset_state():
    """Clear cached settings and sender locks between tests."""
    get_settings.cache_clear()
    clear_sender_locks()
    yield
    get_settings.cache_clear()


@pytest.fixture
def mock_node() -> MockKaiaNode:
    return MockKaiaNode()


@pytest.fixture
def rpc_client(mock_node: MockKaiaNode) -> KaiaRpcClient:
    return KaiaRpcClient("http://kaia.test", transport=mock_node.transport)


@pytest.fixture
def fee_payer_signer() -> LocalSigner:
    return LocalSigner(FEE_PAYER_KEY)


@pytest.fixture
def delegation_config(fee_payer_signer: LocalSigner) -> DelegationConfig:
    return DelegationConfig(
        chain_id=CHAIN_ID,
        fee_payer=fee_payer_signer,
        receipt_timeout=0.5,
        receipt_poll_interval=0.05,
    )


@pytest.fixture
def orchestrator(delegation_config: DelegationConfig, rpc_client: KaiaRpcClient) -> FeeDelegationOrchestrator:
    return FeeDelegationOrchestrator(delegation_config, rpc_client)
