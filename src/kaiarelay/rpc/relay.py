"""Broadcast and receipt polling.

Broadcast is a single send-raw-transaction call and is never retried: a
retried broadcast of a transaction the node already accepted fails with a
nonce error and hides the original outcome.
"""

import asyncio
import logging
import re
import time
from typing import Optional, Union

from kaiarelay.encoding.rlp_codec import encode_signed
from kaiarelay.errors import (
    ReceiptTimeout,
    RelayError,
    RpcError,
    RpcTransportError,
    TransactionRejected,
)
from kaiarelay.rpc.client import KaiaRpcClient
from kaiarelay.transaction.state import BroadcastTransaction, Confirmed, FullySigned, TimedOut

logger = logging.getLogger(__name__)

TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")


class Relay:
    """Submits fully signed transactions and waits for their receipts."""

    def __init__(
        self,
        client: KaiaRpcClient,
        receipt_timeout: float = 300.0,
        poll_interval: float = 2.0,
    ):
        self.client = client
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval

    async def broadcast(self, raw_tx: Union[bytes, str]) -> str:
        """Send a raw signed transaction.

        Returns:
            Transaction hash reported by the node

        Raises:
            TransactionRejected: Node refused it; message is the node's, verbatim
            RelayError: Node unreachable or answered with an unusable hash
        """
        if isinstance(raw_tx, bytes):
            raw_tx = "0x" + raw_tx.hex()

        try:
            tx_hash = await self.client.send_raw_transaction(raw_tx)
        except RpcTransportError as e:
            raise RelayError(f"Broadcast failed: {e}") from e
        except RpcError as e:
            logger.warning(f"Node rejected transaction: {e}")
            raise TransactionRejected(str(e), code=e.code) from e

        if not isinstance(tx_hash, str) or not TX_HASH_PATTERN.match(tx_hash):
            raise RelayError(f"Node returned an invalid transaction hash: {tx_hash!r}")

        logger.info(f"Broadcast accepted: {tx_hash}")
        return tx_hash

    async def submit(self, signed: FullySigned) -> BroadcastTransaction:
        """Encode and broadcast. Only a FullySigned transaction is accepted."""
        if not isinstance(signed, FullySigned):
            raise TypeError(f"Only FullySigned transactions can be broadcast, got {type(signed).__name__}")

        tx_hash = await self.broadcast(encode_signed(signed))
        return BroadcastTransaction(signed=signed, tx_hash=tx_hash)

    async def await_receipt(
        self,
        tx_hash: str,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> dict:
        """Poll for a receipt until it appears or the deadline passes.

        Read errors while polling are treated as transient.

        Raises:
            ReceiptTimeout: No receipt within `timeout` seconds
        """
        timeout = self.receipt_timeout if timeout is None else timeout
        interval = self.poll_interval if interval is None else interval
        deadline = time.monotonic() + timeout

        try:
            while True:
                try:
                    receipt = await self.client.get_transaction_receipt(tx_hash)
                    if receipt:
                        logger.info(f"Receipt for {tx_hash}: status={receipt.get('status')}")
                        return receipt
                except RpcError as e:
                    logger.warning(f"Receipt lookup for {tx_hash} failed, retrying: {e}")

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning(f"No receipt for {tx_hash} after {timeout:g}s")
                    raise ReceiptTimeout(tx_hash, timeout)
                await asyncio.sleep(min(interval, remaining))
        except asyncio.CancelledError:
            logger.info(f"Receipt wait for {tx_hash} cancelled")
            raise

    async def settle(self, broadcast: BroadcastTransaction) -> Union[Confirmed, TimedOut]:
        """Wait for the outcome of a broadcast transaction."""
        started = time.monotonic()
        try:
            receipt = await self.await_receipt(broadcast.tx_hash)
        except ReceiptTimeout:
            return TimedOut(broadcast=broadcast, waited=time.monotonic() - started)
        return Confirmed(broadcast=broadcast, receipt=receipt)
