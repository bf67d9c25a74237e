"""Immutable runtime configuration for the delegation pipeline."""

import logging
from dataclasses import dataclass
from typing import Optional

from kaiarelay.config import Settings, get_settings
from kaiarelay.crypto import decrypt_secret
from kaiarelay.errors import ConfigurationError
from kaiarelay.signing.base import SignerBackend
from kaiarelay.signing.local import LocalSigner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DelegationConfig:
    """Everything the orchestrator needs, built once at startup.

    Attributes:
        chain_id: Chain every signature is bound to
        fee_payer: Signer holding the fee payer key
        max_gas_limit: Largest gas limit the fee payer sponsors
        max_value: Largest transferred value in peb
        min_eligibility_balance: Balance in peb an account needs to be eligible
        receipt_timeout: Seconds to wait for a receipt
        receipt_poll_interval: Seconds between receipt polls
        nonce_reservation_ttl: Seconds a prepared nonce stays reserved
    """

    chain_id: int
    fee_payer: SignerBackend
    max_gas_limit: int = 500_000
    max_value: int = 10**17
    min_eligibility_balance: int = 10**15
    receipt_timeout: float = 300.0
    receipt_poll_interval: float = 2.0
    nonce_reservation_ttl: float = 300.0

    def __post_init__(self):
        if self.chain_id <= 0:
            raise ConfigurationError(f"Invalid chain id {self.chain_id}")
        if self.max_gas_limit <= 0:
            raise ConfigurationError("max_gas_limit must be positive")
        if self.max_value < 0:
            raise ConfigurationError("max_value must not be negative")

    @property
    def fee_payer_address(self) -> str:
        return self.fee_payer.address

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "DelegationConfig":
        """Load the fee payer key and ceilings from settings.

        Raises:
            ConfigurationError: If the fee payer key is missing, cannot be
                decrypted or is not a valid private key
        """
        settings = settings or get_settings()

        if not settings.kaia_fee_payer_private_key:
            raise ConfigurationError("KAIA_FEE_PAYER_PRIVATE_KEY is not set")

        private_key = decrypt_secret(settings.kaia_fee_payer_private_key, settings.master_key)
        signer = LocalSigner(private_key)

        logger.info(f"Fee payer {signer.address} on chain {settings.kaia_chain_id}")
        return cls(
            chain_id=settings.kaia_chain_id,
            fee_payer=signer,
            max_gas_limit=settings.max_gas_limit,
            max_value=settings.max_value_peb,
            min_eligibility_balance=settings.min_eligibility_balance_peb,
            receipt_timeout=settings.receipt_timeout,
            receipt_poll_interval=settings.receipt_poll_interval,
            nonce_reservation_ttl=settings.nonce_reservation_ttl,
        )
