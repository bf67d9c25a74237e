"""Health check endpoints."""

from fastapi import APIRouter, Request

from kaiarelay import __version__
from kaiarelay.config import get_settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "kaiarelay"}


@router.get("/health/detailed")
async def detailed_health(request: Request):
    """Detailed health check with configuration and fee payer info."""
    settings = get_settings()
    orchestrator = getattr(request.app.state, "orchestrator", None)

    delegation = {"configured": False}
    if orchestrator is not None:
        delegation = {
            "configured": True,
            "signerReady": await orchestrator.config.fee_payer.health_check(),
            **orchestrator.health(),
        }

    return {
        "status": "healthy" if orchestrator is not None else "degraded",
        "service": "kaiarelay",
        "version": __version__,
        "delegation": delegation,
        "config": settings.get_safe_dict(),
    }
