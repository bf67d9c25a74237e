"""Async JSON-RPC client for Kaia nodes.

Method names differ between node versions (`kaia_*`, the legacy `klay_*` and
the `eth_*` compatibility layer), so every call goes through an `RpcMethods`
name map instead of a hard-coded string.
"""

import itertools
import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Optional

import httpx

from kaiarelay.errors import RpcError, RpcTransportError

logger = logging.getLogger(__name__)

NAMESPACES = ("kaia", "klay", "eth")


@dataclass(frozen=True)
class RpcMethods:
    """JSON-RPC method names used by the pipeline."""

    estimate_gas: str
    gas_price: str
    get_transaction_count: str
    send_raw_transaction: str
    get_transaction_receipt: str
    get_balance: str

    @classmethod
    def for_namespace(
        cls,
        namespace: str = "kaia",
        overrides: Optional[Mapping[str, str]] = None,
    ) -> "RpcMethods":
        """Build the method map for a namespace, then apply per-method overrides.

        Raises:
            ValueError: Unknown namespace or override key
        """
        if namespace not in NAMESPACES:
            raise ValueError(f"Unknown RPC namespace '{namespace}', expected one of {NAMESPACES}")

        methods = cls(
            estimate_gas=f"{namespace}_estimateGas",
            gas_price=f"{namespace}_gasPrice",
            get_transaction_count=f"{namespace}_getTransactionCount",
            send_raw_transaction=f"{namespace}_sendRawTransaction",
            get_transaction_receipt=f"{namespace}_getTransactionReceipt",
            get_balance=f"{namespace}_getBalance",
        )

        if overrides:
            known = {f.name for f in fields(cls)}
            unknown = set(overrides) - known
            if unknown:
                raise ValueError(f"Unknown RPC method override(s): {sorted(unknown)}")
            methods = replace(methods, **overrides)

        return methods


def _hex_to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if not isinstance(value, str) or not value.startswith("0x"):
        raise RpcError(f"Expected hex quantity, got {value!r}")
    return int(value, 16)


class KaiaRpcClient:
    """Thin async JSON-RPC client.

    A fresh `httpx.AsyncClient` is opened per call. `transport` lets tests
    plug in an in-process node (`httpx.MockTransport`).
    """

    def __init__(
        self,
        rpc_url: str,
        methods: Optional[RpcMethods] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.rpc_url = rpc_url
        self.methods = methods or RpcMethods.for_namespace()
        self.timeout = timeout
        self._transport = transport
        self._ids = itertools.count(1)

    async def call(self, method: str, params: Optional[list] = None) -> Any:
        """Perform one JSON-RPC call and return its `result`.

        Raises:
            RpcError: The node answered with an error object
            RpcTransportError: Network failure, non-200 status or invalid JSON
        """
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params or [],
            "id": next(self._ids),
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.rpc_url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"RPC {method} failed: {e}")
            raise RpcTransportError(f"{method}: {e}") from e

        if response.status_code != 200:
            logger.error(f"RPC {method} returned HTTP {response.status_code}")
            raise RpcTransportError(f"{method}: HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise RpcTransportError(f"{method}: invalid JSON response") from e

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            logger.warning(f"RPC {method} error {code}: {message}")
            raise RpcError(message, code=code, data=error.get("data") if isinstance(error, dict) else None)

        if not isinstance(data, dict) or "result" not in data:
            raise RpcTransportError(f"{method}: response has no result")

        return data["result"]

    async def get_gas_price(self) -> int:
        """Current gas price in peb."""
        return _hex_to_int(await self.call(self.methods.gas_price))

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return _hex_to_int(await self.call(self.methods.get_transaction_count, [address, block]))

    async def get_balance(self, address: str, block: str = "latest") -> int:
        """Balance in peb."""
        return _hex_to_int(await self.call(self.methods.get_balance, [address, block]))

    async def estimate_gas(self, call: dict) -> int:
        return _hex_to_int(await self.call(self.methods.estimate_gas, [call]))

    async def send_raw_transaction(self, raw_tx: str) -> str:
        return await self.call(self.methods.send_raw_transaction, [raw_tx])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        """Receipt dict, or None while the transaction is pending."""
        return await self.call(self.methods.get_transaction_receipt, [tx_hash])
