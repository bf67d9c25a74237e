"""Fee delegation: validation, nonce reservation and the two-signature protocol."""

from kaiarelay.delegation.config import DelegationConfig
from kaiarelay.delegation.orchestrator import FeeDelegationOrchestrator, PreparedTransaction

__all__ = ["DelegationConfig", "FeeDelegationOrchestrator", "PreparedTransaction"]
