"""Local signing backend.

Holds the fee payer private key in memory. The key is loaded once at
startup and never mutated.

WARNING: The key lives in process memory. Keep the fee payer account
funded with no more than it is expected to sponsor.
"""

import logging
from typing import Union

from eth_account import Account
from eth_keys import keys
from eth_keys.exceptions import ValidationError as KeyValidationError

from kaiarelay.errors import ConfigurationError, SigningError
from kaiarelay.signing.base import SignerBackend, SignerType, SigningRequest
from kaiarelay.signing.signature import Signature, sign_hash

logger = logging.getLogger(__name__)


class LocalSigner(SignerBackend):
    """Signing backend using an in-memory private key."""

    def __init__(self, private_key: Union[bytes, str]):
        super().__init__(SignerType.LOCAL)
        self._key = self._load_key(private_key)
        self._address = Account.from_key(self._key.to_bytes()).address
        logger.info(f"Loaded fee payer key for {self._address}")

    @staticmethod
    def _load_key(private_key: Union[bytes, str]) -> keys.PrivateKey:
        """Parse the key.

        Raises:
            ConfigurationError: If the key is empty or not a valid secp256k1 key
        """
        if not private_key:
            raise ConfigurationError("Fee payer private key is not configured")

        try:
            if isinstance(private_key, str):
                text = private_key.strip()
                text = text[2:] if text.lower().startswith("0x") else text
                private_key = bytes.fromhex(text)
            return keys.PrivateKey(private_key)
        except (ValueError, KeyValidationError) as e:
            raise ConfigurationError("Fee payer private key is invalid") from e

    @property
    def address(self) -> str:
        return self._address

    async def sign(self, request: SigningRequest) -> Signature:
        """Sign a message hash using the local private key."""
        try:
            signature = sign_hash(request.message_hash, self._key.to_bytes(), request.chain_id)
        except Exception as e:
            logger.error(f"Local signing failed ({request.purpose}): {e}")
            raise SigningError(f"Local signing failed: {e}") from e

        logger.debug(f"Signed {request.purpose} hash 0x{request.message_hash.hex()} as {self._address}")
        return signature
