from __future__ import annotations

from typing import Awaitable, Optional, TypeVar

from fastapi import APIRouter, HTTPException, Path, Query, Request, status

from src.api.domain.groups import DEFAULT_EQUIPMENT_GROUPS
from src.api.errors import RuleStoreUnavailableError, UpstreamUnavailableError
from src.api.schemas.common import ErrorResponse
from src.api.schemas.mel import (
    AlertListResponse,
    AvailabilityOut,
    EquipmentGroupListResponse,
    EquipmentGroupOut,
    RuleDeleteResponse,
    RuleListResponse,
    RuleMutationResponse,
    RuleOut,
    RulesUpsertRequest,
    RuleUpdate,
    SectorGroupsResponse,
    SectorMappingIn,
    SectorMappingListResponse,
    SectorMappingOut,
    SweepReportOut,
)
from src.api.services import mel_rules_service, mel_service
from src.api.services.mel_rules_service import InvalidRuleError
from src.api.state import get_state

router = APIRouter(prefix="/api/mel", tags=["MEL"])

T = TypeVar("T")

_UNAVAILABLE = {503: {"model": ErrorResponse}}


async def _guard(awaitable: Awaitable[T]) -> T:
    """Map engine errors to HTTP errors."""
    try:
        return await awaitable
    except InvalidRuleError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (RuleStoreUnavailableError, UpstreamUnavailableError) as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@router.get(
    "/groups",
    response_model=EquipmentGroupListResponse,
    summary="List built-in equipment groups",
    operation_id="list_equipment_groups",
)
async def list_groups() -> EquipmentGroupListResponse:
    """Return the built-in equipment group catalog."""
    items = [EquipmentGroupOut(key=g.key, name=g.name, patterns=list(g.patterns)) for g in DEFAULT_EQUIPMENT_GROUPS]
    return EquipmentGroupListResponse(items=items, total=len(items))


@router.get(
    "/sectors/{sector_id}/groups",
    response_model=SectorGroupsResponse,
    responses=_UNAVAILABLE,
    summary="Equipment groups in a sector",
    description="Groups found in (or configured for) a sector with counts, minimums and member units.",
    operation_id="list_sector_groups",
)
async def list_sector_groups(request: Request, sector_id: int = Path(..., ge=0)) -> SectorGroupsResponse:
    """List groups for a sector."""
    return await _guard(mel_service.list_groups_for_sector(get_state(request.app), sector_id))


@router.get(
    "/sectors/{sector_id}/items",
    response_model=SectorGroupsResponse,
    responses=_UNAVAILABLE,
    summary="MEL items of a sector",
    description="Only the groups of the sector that have a configured minimum.",
    operation_id="list_sector_mel_items",
)
async def list_sector_items(request: Request, sector_id: int = Path(..., ge=0)) -> SectorGroupsResponse:
    """List configured MEL items for a sector."""
    return await _guard(mel_service.list_mel_items_for_sector(get_state(request.app), sector_id))


@router.get(
    "/sectors/{sector_id}/groups/{group_key}/availability",
    response_model=AvailabilityOut,
    responses={404: {"model": ErrorResponse}, **_UNAVAILABLE},
    summary="Availability of a group in a sector",
    operation_id="get_group_availability",
)
async def get_availability(
    request: Request,
    sector_id: int = Path(..., ge=0),
    group_key: str = Path(..., min_length=1),
) -> AvailabilityOut:
    """Return total/unavailable/available for a configured sector+group."""
    result = await _guard(mel_service.compute_availability(get_state(request.app), sector_id, group_key))
    if result is None:
        raise HTTPException(status_code=404, detail="no rule or no matching equipment for this sector/group")
    return result


@router.post(
    "/sectors/{sector_id}/rules",
    response_model=RuleMutationResponse,
    responses={400: {"model": ErrorResponse}, **_UNAVAILABLE},
    summary="Upsert sector rules",
    description="Create or update the sector's rules keyed by groupKey, then run a reconciliation sweep.",
    operation_id="upsert_sector_rules",
)
async def upsert_sector_rules(
    request: Request, payload: RulesUpsertRequest, sector_id: int = Path(..., ge=0)
) -> RuleMutationResponse:
    """Batch upsert rules for a sector."""
    return await _guard(mel_rules_service.upsert_sector_rules(get_state(request.app), sector_id, payload))


@router.delete(
    "/sectors/{sector_id}/rules",
    response_model=RuleDeleteResponse,
    responses=_UNAVAILABLE,
    summary="Delete all rules of a sector",
    operation_id="delete_sector_rules",
)
async def delete_sector_rules(request: Request, sector_id: int = Path(..., ge=0)) -> RuleDeleteResponse:
    """Delete every rule of a sector."""
    return await _guard(mel_rules_service.delete_sector_rules(get_state(request.app), sector_id))


@router.delete(
    "/sectors/{sector_id}/rules/{group_key}",
    response_model=RuleDeleteResponse,
    responses={404: {"model": ErrorResponse}, **_UNAVAILABLE},
    summary="Delete a sector rule by group key",
    operation_id="delete_sector_rule_by_key",
)
async def delete_rule_by_key(
    request: Request,
    sector_id: int = Path(..., ge=0),
    group_key: str = Path(..., min_length=1),
) -> RuleDeleteResponse:
    """Delete the rule for (sectorId, groupKey)."""
    res = await _guard(mel_rules_service.delete_rule_by_key(get_state(request.app), sector_id, group_key))
    if res is None:
        raise HTTPException(status_code=404, detail="rule not found")
    return res


@router.get(
    "/rules",
    response_model=RuleListResponse,
    responses=_UNAVAILABLE,
    summary="List rules",
    operation_id="list_mel_rules",
)
async def list_rules(
    request: Request,
    sector_id: Optional[int] = Query(default=None, alias="sectorId", ge=0),
    active_only: bool = Query(default=False, alias="activeOnly"),
) -> RuleListResponse:
    """List MEL rules."""
    return await _guard(mel_rules_service.list_rules(get_state(request.app), sector_id, active_only))


@router.get(
    "/rules/{rule_id}",
    response_model=RuleOut,
    responses={404: {"model": ErrorResponse}, **_UNAVAILABLE},
    summary="Get rule",
    operation_id="get_mel_rule",
)
async def get_rule(request: Request, rule_id: str = Path(..., description="Rule id (Mongo ObjectId string).")) -> RuleOut:
    """Get a rule by id."""
    rule = await _guard(mel_rules_service.get_rule(get_state(request.app), rule_id))
    if rule is None:
        raise HTTPException(status_code=404, detail="rule not found")
    return rule


@router.patch(
    "/rules/{rule_id}",
    response_model=RuleMutationResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, **_UNAVAILABLE},
    summary="Update rule",
    description="Partial update (minimum, active flag, group definition, justification), then a sweep.",
    operation_id="patch_mel_rule",
)
async def patch_rule(
    request: Request,
    payload: RuleUpdate,
    rule_id: str = Path(..., description="Rule id (Mongo ObjectId string)."),
) -> RuleMutationResponse:
    """Patch a rule."""
    res = await _guard(mel_rules_service.patch_rule(get_state(request.app), rule_id, payload))
    if res is None:
        raise HTTPException(status_code=404, detail="rule not found")
    return res


@router.delete(
    "/rules/{rule_id}",
    response_model=RuleDeleteResponse,
    responses={404: {"model": ErrorResponse}, **_UNAVAILABLE},
    summary="Delete rule",
    operation_id="delete_mel_rule",
)
async def delete_rule(
    request: Request, rule_id: str = Path(..., description="Rule id (Mongo ObjectId string).")
) -> RuleDeleteResponse:
    """Delete a rule by id."""
    res = await _guard(mel_rules_service.delete_rule(get_state(request.app), rule_id))
    if res is None:
        raise HTTPException(status_code=404, detail="rule not found")
    return res


@router.get(
    "/alerts",
    response_model=AlertListResponse,
    responses=_UNAVAILABLE,
    summary="List MEL alerts",
    description="Alerts sorted by createdAt desc. onlyActive=false includes resolved history.",
    operation_id="list_mel_alerts",
)
async def list_alerts(
    request: Request,
    only_active: bool = Query(default=True, alias="onlyActive"),
) -> AlertListResponse:
    """List alerts."""
    return await _guard(mel_service.list_alerts(get_state(request.app), active_only=only_active))


@router.post(
    "/recalculate",
    response_model=SweepReportOut,
    responses=_UNAVAILABLE,
    summary="Run a reconciliation sweep",
    operation_id="recalculate_mel",
)
async def recalculate(request: Request) -> SweepReportOut:
    """Recompute availability for every active rule and reconcile alerts."""
    return await _guard(mel_service.reconcile_all(get_state(request.app)))


@router.get(
    "/sector-mappings",
    response_model=SectorMappingListResponse,
    responses=_UNAVAILABLE,
    summary="List sector mappings",
    operation_id="list_sector_mappings",
)
async def list_sector_mappings(request: Request) -> SectorMappingListResponse:
    """List sector mappings."""
    return await _guard(mel_rules_service.list_sector_mappings(get_state(request.app)))


@router.put(
    "/sector-mappings/{sector_id}",
    response_model=SectorMappingOut,
    responses={400: {"model": ErrorResponse}, **_UNAVAILABLE},
    summary="Create or replace a sector mapping",
    operation_id="put_sector_mapping",
)
async def put_sector_mapping(
    request: Request, payload: SectorMappingIn, sector_id: int = Path(..., ge=0)
) -> SectorMappingOut:
    """Upsert a sector mapping."""
    return await _guard(mel_rules_service.put_sector_mapping(get_state(request.app), sector_id, payload))


@router.delete(
    "/sector-mappings/{sector_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}, **_UNAVAILABLE},
    summary="Delete a sector mapping",
    operation_id="delete_sector_mapping",
)
async def delete_sector_mapping(request: Request, sector_id: int = Path(..., ge=0)) -> None:
    """Delete a sector mapping."""
    ok = await _guard(mel_rules_service.delete_sector_mapping(get_state(request.app), sector_id))
    if not ok:
        raise HTTPException(status_code=404, detail="mapping not found")
    return None
