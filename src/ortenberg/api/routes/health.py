"""Health check endpoints (unauthenticated)."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ortenberg import __version__
from ortenberg.api.deps import get_components, get_manager
from ortenberg.components import Components
from ortenberg.services.withdrawal_manager import WithdrawalManager

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic liveness check."""
    return {"status": "healthy", "service": "ortenberg"}


@router.get("/health/detailed")
async def detailed_health(components: Components = Depends(get_components)):
    """Liveness with redacted configuration."""
    return {
        "status": "healthy",
        "service": "ortenberg",
        "version": __version__,
        "network": components.network.name,
        "config": components.settings.get_safe_dict(),
    }


@router.get("/api/v2/withdrawal/health")
async def dependency_health(manager: WithdrawalManager = Depends(get_manager)):
    """Database and queue reachability; 503 if either is down."""
    report, healthy = await manager.check_health()
    return JSONResponse(status_code=200 if healthy else 503, content=report)
