"""Health check endpoints."""

from fastapi import APIRouter, Depends

from chainrail.api.deps import get_service
from chainrail.config import get_settings
from chainrail.services import TransactionService

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "chainrail"}


@router.get("/health/detailed")
async def detailed_health():
    """Detailed health check with configuration info."""
    settings = get_settings()
    return {
        "status": "healthy",
        "service": "chainrail",
        "version": "0.1.0",
        "config": settings.get_safe_dict(),
    }


@router.get("/health/chains")
async def chain_health(service: TransactionService = Depends(get_service)) -> dict:
    """Current RPC endpoint health of every chain."""
    return {"chains": service.get_health()}
