"""Gas delegation endpoints.

Thin adapter over FeeDelegationOrchestrator: request models in, result
models out. Input errors map to 400, node failures to 502.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from kaiarelay.delegation.contracts import (
    CostEstimate,
    DelegateRequest,
    DelegationRequest,
    DelegationResult,
    Eligibility,
    EligibilityRequest,
    PrepareSigningResponse,
)
from kaiarelay.delegation.orchestrator import FeeDelegationOrchestrator
from kaiarelay.errors import (
    InvalidTransactionFields,
    KaiaRelayError,
    LockTimeoutError,
    RelayError,
    RpcError,
    SignatureError,
    SigningError,
    ValidationError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/gas-delegation", tags=["Gas Delegation"])


def get_orchestrator(request: Request) -> FeeDelegationOrchestrator:
    """Orchestrator built at startup; 503 when no fee payer is configured."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Fee delegation is not configured")
    return orchestrator


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, SigningError):
        logger.error(f"Fee payer signing failed: {e}")
        return HTTPException(status_code=500, detail="Fee payer signing failed")
    if isinstance(e, (ValidationError, InvalidTransactionFields, SignatureError, ValueError)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, LockTimeoutError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (RpcError, RelayError)):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


@router.post("/prepare-signing", response_model=PrepareSigningResponse, response_model_by_alias=True)
async def prepare_signing(
    body: DelegationRequest,
    orchestrator: FeeDelegationOrchestrator = Depends(get_orchestrator),
) -> PrepareSigningResponse:
    """Build the transaction and return the hash the sender must sign."""
    try:
        prepared = await orchestrator.prepare_for_signing(body)
    except (KaiaRelayError, ValueError) as e:
        raise _http_error(e) from e
    return prepared.to_response()


@router.post("/delegate", response_model=DelegationResult, response_model_by_alias=True)
async def delegate(
    body: DelegateRequest,
    orchestrator: FeeDelegationOrchestrator = Depends(get_orchestrator),
) -> DelegationResult:
    """Co-sign and broadcast a sender-signed transaction."""
    try:
        request, sender_input = body.split()
        return await orchestrator.delegate(request, sender_input)
    except (KaiaRelayError, ValueError) as e:
        raise _http_error(e) from e


@router.post("/estimate", response_model=CostEstimate, response_model_by_alias=True)
async def estimate(
    body: DelegationRequest,
    orchestrator: FeeDelegationOrchestrator = Depends(get_orchestrator),
) -> CostEstimate:
    """Estimate the fee the fee payer would cover."""
    try:
        return await orchestrator.estimate_cost(body)
    except (KaiaRelayError, ValueError) as e:
        raise _http_error(e) from e


@router.post("/check-eligibility", response_model=Eligibility, response_model_by_alias=True)
async def check_eligibility(
    body: EligibilityRequest,
    orchestrator: FeeDelegationOrchestrator = Depends(get_orchestrator),
) -> Eligibility:
    try:
        return await orchestrator.check_eligibility(body.address)
    except (KaiaRelayError, ValueError) as e:
        raise _http_error(e) from e


@router.get("/fee-payer")
async def fee_payer(orchestrator: FeeDelegationOrchestrator = Depends(get_orchestrator)) -> dict:
    return {"feePayer": orchestrator.fee_payer_address, "chainId": orchestrator.chain_id}


@router.get("/supported-types")
async def supported_types(orchestrator: FeeDelegationOrchestrator = Depends(get_orchestrator)) -> dict:
    return {"types": orchestrator.supported_types()}
