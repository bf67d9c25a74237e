"""Exception hierarchy for the fee delegation pipeline.

Input errors (validation, field sets, signatures) are raised before any
network call. Relay errors carry the node message verbatim. A receipt
timeout is an ambiguous outcome, not a failure: the transaction may still
be included later.
"""

from typing import Any, Optional


class KaiaRelayError(Exception):
    """Base class for all pipeline errors."""
    pass


class ConfigurationError(KaiaRelayError):
    """Raised at startup when the fee payer wallet cannot be loaded."""
    pass


class ValidationError(KaiaRelayError):
    """Request failed a sanity check. No side effects have happened."""

    def __init__(self, constraint: str, message: str):
        self.constraint = constraint
        super().__init__(f"{constraint}: {message}")


class InvalidTransactionFields(KaiaRelayError):
    """Field set or field value does not match the transaction type."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class MalformedTransaction(InvalidTransactionFields):
    """Raw transaction bytes could not be decoded."""
    pass


class SignatureError(KaiaRelayError):
    """Base class for cryptographic signature errors."""
    pass


class MalformedSignature(SignatureError):
    """Signature bytes or V value have an unusable shape."""
    pass


class InvalidSignature(SignatureError):
    """Signature recovers to a different address than claimed."""

    def __init__(self, message: str, expected: Optional[str] = None, recovered: Optional[str] = None):
        self.expected = expected
        self.recovered = recovered
        super().__init__(message)


class SignatureMismatch(InvalidSignature):
    """Sender signature does not belong to the request's `from` address."""
    pass


class SigningError(SignatureError):
    """Signer backend failed to produce a signature."""
    pass


class RpcError(KaiaRelayError):
    """JSON-RPC call returned an error object."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        self.code = code
        self.data = data
        super().__init__(message)


class RpcTransportError(RpcError):
    """Node could not be reached or returned a non-JSON-RPC response."""
    pass


class RelayError(KaiaRelayError):
    """Broadcast failed. Never retried inside the pipeline."""
    pass


class TransactionRejected(RelayError):
    """Node rejected the transaction (nonce too low, insufficient funds, ...)."""

    def __init__(self, message: str, code: Optional[int] = None):
        self.code = code
        super().__init__(message)


class ReceiptTimeout(KaiaRelayError):
    """No receipt within the configured wait.

    The transaction may still confirm later; callers must treat this as
    unknown, not as failed.
    """

    def __init__(self, tx_hash: str, timeout: float):
        self.tx_hash = tx_hash
        self.timeout = timeout
        super().__init__(
            f"Receipt for {tx_hash} not found within {timeout:g}s; transaction may still confirm"
        )


class LockTimeoutError(KaiaRelayError):
    """Raised when a sender lock cannot be acquired within the timeout period."""
    pass
