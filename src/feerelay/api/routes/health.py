"""Health check endpoints."""

from fastapi import APIRouter, Depends

from feerelay import __version__
from feerelay.api.deps import get_services
from feerelay.config import get_settings
from feerelay.errors import UpstreamUnavailable
from feerelay.services import Services

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "feerelay"}


@router.get("/health/detailed")
async def detailed_health():
    """Detailed health check with configuration info."""
    settings = get_settings()
    return {
        "status": "healthy",
        "service": "feerelay",
        "version": __version__,
        "config": settings.get_safe_dict(),
    }


@router.get("/health/fee-payer")
async def fee_payer_health(services: Services = Depends(get_services)):
    """Fee payer balance and low-balance flag."""
    if services.relay is None:
        raise UpstreamUnavailable("Fee payer is not configured")
    health = await services.relay.health()
    return {
        "status": "degraded" if health.low_balance else "healthy",
        "feePayer": health.to_dict(),
    }
