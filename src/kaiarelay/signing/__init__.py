"""Signature primitives and fee payer signing backends.

- LocalSigner: fee payer private key in memory
- Any other SignerBackend can be injected through DelegationConfig
"""

from kaiarelay.signing.base import SignerBackend, SignerType, SigningRequest
from kaiarelay.signing.local import LocalSigner
from kaiarelay.signing.signature import Signature, compute_v, recover_signer, sign_hash

__all__ = [
    "LocalSigner",
    "Signature",
    "SignerBackend",
    "SignerType",
    "SigningRequest",
    "compute_v",
    "recover_signer",
    "sign_hash",
]
