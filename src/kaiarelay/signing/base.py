"""Base interfaces for fee payer signing.

Signing flow:
1. Orchestrator computes the fee payer signing hash
2. Submits it to the signer with the chain id
3. Signer returns a chain-bound (V, R, S) (never the raw private key)
4. Signature is attached to the transaction as fee payer signature
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from kaiarelay.signing.signature import Signature


class SignerType(str, Enum):
    """Type of signing backend."""
    LOCAL = "local"           # Private key in memory (hot wallet)
    EXTERNAL = "external"     # Anything else injected by the caller (tests, remote signers)


@dataclass(frozen=True)
class SigningRequest:
    """Request to sign a transaction hash.

    Attributes:
        message_hash: 32-byte keccak digest to sign
        chain_id: Chain id the signature is bound to through V
        purpose: Short label for audit logging (e.g. "fee_payer")
        metadata: Optional metadata for audit logging
    """
    message_hash: bytes
    chain_id: int
    purpose: str = "fee_payer"
    metadata: Optional[dict] = None


class SignerBackend(ABC):
    """Abstract base class for signing backends.

    Implementations should NEVER expose raw private keys.
    All signing operations return signatures only.
    """

    def __init__(self, signer_type: SignerType):
        self.signer_type = signer_type

    @property
    @abstractmethod
    def address(self) -> str:
        """Checksum address of the signing account."""
        pass

    @abstractmethod
    async def sign(self, request: SigningRequest) -> Signature:
        """Sign a message hash.

        Args:
            request: Signing request with message hash and chain id

        Returns:
            Chain-bound signature

        Raises:
            SigningError: If the backend cannot sign
        """
        pass

    async def health_check(self) -> bool:
        """Check if the signing backend is available.

        Returns:
            True if backend is ready to sign
        """
        return True

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(type={self.signer_type.value}, address={self.address})"
