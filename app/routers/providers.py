"""Provider health endpoints."""

from typing import Dict

from fastapi import APIRouter, HTTPException, status
from loguru import logger

from ..models.provider import ProviderHealth
from .workflows import get_workflow_engine

router = APIRouter(prefix="/api/v1/providers", tags=["providers"])


@router.get(
    "/health",
    response_model=Dict[str, ProviderHealth],
    summary="Circuit breaker state per provider",
)
async def get_provider_health() -> Dict[str, ProviderHealth]:
    """
    Health of every provider that has reported a call outcome.

    Providers that never failed, or whose recovery window elapsed, are
    either absent or reported healthy.
    """
    try:
        engine = get_workflow_engine()
        return engine.get_provider_health_status()

    except Exception as e:
        logger.error(f"Failed to get provider health: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to retrieve provider health: {str(e)}",
        )
