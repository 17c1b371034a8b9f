from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from boardhook.config import settings
from boardhook.deps import Services, get_services, require_admin
from boardhook.metrics import runtime_metrics
from boardhook.schemas import StatusOut

router = APIRouter(tags=["system"])


@router.get("/health")
async def health() -> dict:
  return {"ok": True}


@router.get("/version")
async def version() -> dict:
  return {"version": settings.app_version, "buildSha": settings.build_sha}


@router.get("/status", response_model=StatusOut, dependencies=[Depends(require_admin)])
async def get_status(services: Services = Depends(get_services)) -> StatusOut:
  return StatusOut(
    generatedAt=datetime.now(timezone.utc),
    version=settings.app_version,
    buildSha=settings.build_sha,
    runtime=runtime_metrics.snapshot(),
    mappingCache=services.cache.stats(),
    dedupEntries=len(services.dedup.local),
    notificationProvider=services.settings.notification_provider,
  )
