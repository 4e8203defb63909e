from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from tenantguard.apps.api.deps import get_services
from tenantguard.apps.api.response import DEFAULT_ERROR_RESPONSES, SuccessEnvelope, success_response
from tenantguard.persistence.db import pool_stats
from tenantguard.services.container import Services


router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    store_backend: str
    pool: dict[str, int | None] | None = None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, services: Services = Depends(get_services)) -> dict:
    # Liveness only; never touches the store so an outage does not flap the probe.
    payload = HealthResponse(
        status="ok",
        store_backend="sql" if services.engine is not None else "memory",
        pool=pool_stats(services.engine) if services.engine is not None else None,
    )
    return success_response(request=request, data=payload)
