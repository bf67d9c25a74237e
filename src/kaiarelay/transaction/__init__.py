"""Fee-delegated transaction types and their signing lifecycle."""

from kaiarelay.transaction.state import (
    BroadcastTransaction,
    Confirmed,
    FullySigned,
    Rejected,
    SenderSigned,
    TimedOut,
    TxState,
    UnsignedTransaction,
)
from kaiarelay.transaction.types import TxType, create_transaction

__all__ = [
    "BroadcastTransaction",
    "Confirmed",
    "FullySigned",
    "Rejected",
    "SenderSigned",
    "TimedOut",
    "TxState",
    "TxType",
    "UnsignedTransaction",
    "create_transaction",
]
