from __future__ import annotations

from fastapi import APIRouter, Depends

from boardhook.deps import Services, get_services, require_admin
from boardhook.mappings.service import CommandResult
from boardhook.mappings.types import ChannelMappingRecord
from boardhook.schemas import (
  CommandOut,
  DefaultMappingOut,
  DefaultMappingSetIn,
  MappingListOut,
  MappingLookupOut,
  MappingOut,
  MappingSetIn,
  MappingSummaryOut,
  RegistrationOut,
  ResolutionOut,
  WebhookHealthOut,
)

router = APIRouter(tags=["mappings"], dependencies=[Depends(require_admin)])


def _command_out(result: CommandResult) -> CommandOut:
  out = CommandOut(status=result.status, message=result.message)
  if isinstance(result.record, ChannelMappingRecord):
    out.mapping = MappingOut.from_record(result.record)
  elif result.record is not None:
    out.defaultMapping = DefaultMappingOut.from_record(result.record)
  if result.target is not None:
    out.boardName = result.target.board_name
    out.listName = result.target.list_name
  if result.reconcile is not None:
    out.reconcile = result.reconcile.as_dict()
  return out


@router.get("/communities/{community_id}/channels/{channel_id}/mapping", response_model=MappingLookupOut)
async def get_mapping(community_id: str, channel_id: str, services: Services = Depends(get_services)) -> MappingLookupOut:
  explicit, resolution = await services.mappings.get_mapping(community_id, channel_id)
  return MappingLookupOut(
    explicit=MappingOut.from_record(explicit) if explicit else None,
    resolved=ResolutionOut(boardId=resolution.board_id, listId=resolution.list_id, source=resolution.source),
  )


@router.put("/communities/{community_id}/channels/{channel_id}/mapping", response_model=CommandOut)
async def set_mapping(
  community_id: str,
  channel_id: str,
  payload: MappingSetIn,
  services: Services = Depends(get_services),
) -> CommandOut:
  result = await services.mappings.set_mapping(community_id, channel_id, payload.boardId, payload.listId)
  return _command_out(result)


@router.delete("/communities/{community_id}/channels/{channel_id}/mapping", response_model=CommandOut)
async def remove_mapping(community_id: str, channel_id: str, services: Services = Depends(get_services)) -> CommandOut:
  result = await services.mappings.remove_mapping(community_id, channel_id)
  return _command_out(result)


@router.put("/communities/{community_id}/default-mapping", response_model=CommandOut)
async def set_default_mapping(
  community_id: str,
  payload: DefaultMappingSetIn,
  services: Services = Depends(get_services),
) -> CommandOut:
  result = await services.mappings.set_default_mapping(
    community_id, payload.boardId, payload.listId, payload.notificationChannelId
  )
  return _command_out(result)


@router.delete("/communities/{community_id}/default-mapping", response_model=CommandOut)
async def remove_default_mapping(community_id: str, services: Services = Depends(get_services)) -> CommandOut:
  result = await services.mappings.remove_default_mapping(community_id)
  return _command_out(result)


@router.get("/communities/{community_id}/mappings", response_model=MappingListOut)
async def list_mappings(community_id: str, services: Services = Depends(get_services)) -> MappingListOut:
  mappings, default = await services.mappings.list_mappings(community_id)
  summary = await services.mappings.summary(community_id)
  return MappingListOut(
    communityId=community_id,
    mappings=[MappingOut.from_record(m) for m in mappings],
    defaultMapping=DefaultMappingOut.from_record(default) if default else None,
    summary=MappingSummaryOut(
      hasDefault=summary["hasDefault"],
      mappingCount=summary["mappingCount"],
      recentMappings=[MappingOut.from_record(m) for m in summary["recentMappings"]],
      isConfigured=summary["isConfigured"],
    ),
  )


@router.get("/webhooks/registrations", response_model=list[RegistrationOut])
async def list_registrations(services: Services = Depends(get_services)) -> list[RegistrationOut]:
  return [RegistrationOut.from_record(r) for r in await services.registry.list_registrations()]


@router.post("/webhooks/reconcile")
async def reconcile_webhooks(services: Services = Depends(get_services)) -> dict:
  report = await services.registry.reconcile()
  return {"status": "degraded" if report.failed or report.skipped else "ok", "reconcile": report.as_dict()}


@router.get("/webhooks/health", response_model=WebhookHealthOut)
async def webhook_health(services: Services = Depends(get_services)) -> WebhookHealthOut:
  return WebhookHealthOut(**(await services.registry.health_check()))


@router.delete("/communities/{community_id}/cache")
async def invalidate_community_cache(community_id: str, services: Services = Depends(get_services)) -> dict:
  return {"ok": True, "removed": services.cache.invalidate_community(community_id)}
