"""Operator endpoints for running background maintenance on demand."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from citizen_api.config import settings
from citizen_api.dependencies import get_processor
from citizen_api.services.webhook_service import WebhookProcessor

router = APIRouter(prefix="/admin", tags=["admin"])


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


@router.post("/sessions/evict")
async def evict_sessions(
    idle_minutes: Optional[float] = None,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    processor: WebhookProcessor = Depends(get_processor),
):
    _require_admin_token(x_admin_token)
    effective_minutes = idle_minutes if idle_minutes is not None else settings.session_idle_minutes
    effective_minutes = max(float(effective_minutes), 0.0)
    removed = await processor.evict_stale_sessions(effective_minutes)
    return {"evicted": removed, "idle_minutes": effective_minutes}


@router.post("/followups/run")
async def run_followups(
    limit: int = 50,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    processor: WebhookProcessor = Depends(get_processor),
):
    _require_admin_token(x_admin_token)
    delivered = await processor.run_due_followups(limit=max(limit, 1))
    return {"delivered": delivered}
