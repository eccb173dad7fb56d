from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from src.api.domain.groups import find_group
from src.api.domain.records import (
    SectorMapping,
    SectorMelRule,
    coerce_equipment_id,
    parse_group_definition,
    serialize_custom_group,
)
from src.api.errors import MalformedGroupDefinitionError, RuleStoreUnavailableError
from src.api.schemas.common import utc_now
from src.api.schemas.mel import (
    RuleDeleteResponse,
    RuleIn,
    RuleListResponse,
    RuleMutationResponse,
    RuleOut,
    RulesUpsertRequest,
    RuleUpdate,
    SectorMappingIn,
    SectorMappingListResponse,
    SectorMappingOut,
    SweepReportOut,
)
from src.api.services import mel_service
from src.api.state import AppState

logger = logging.getLogger(__name__)


class InvalidRuleError(ValueError):
    """Rule payload rejected before reaching the store."""


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking pymongo calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


def rule_out(rule: SectorMelRule) -> RuleOut:
    return RuleOut(
        id=rule.id,
        sectorId=rule.sector_id,
        sectorName=rule.sector_name,
        equipmentGroupKey=rule.equipment_group_key,
        equipmentGroupName=rule.equipment_group_name,
        minimumQuantity=rule.minimum_quantity,
        active=rule.active,
        isCustom=rule.is_custom,
        groupPattern=rule.group_pattern,
        justification=rule.justification,
        createdAt=rule.created_at,
        updatedAt=rule.updated_at,
    )


def _group_payload(group_pattern: Optional[str], equipment_ids: Optional[Sequence[Any]]) -> Optional[str]:
    """Serialized groupPattern for a request, or None to keep what is stored."""
    if equipment_ids is not None:
        ids = [coerce_equipment_id(i) for i in equipment_ids]
        if not ids or any(i is None for i in ids):
            raise InvalidRuleError("equipmentIds must be a non-empty list of ids")
        return serialize_custom_group(ids)
    if group_pattern is not None:
        try:
            parse_group_definition(group_pattern)
        except MalformedGroupDefinitionError as exc:
            raise InvalidRuleError(f"invalid groupPattern: {exc.reason}") from exc
        return group_pattern.strip()
    return None


def _group_name(item: RuleIn) -> str:
    if item.group_name and item.group_name.strip():
        return item.group_name.strip()
    group = find_group(item.group_key)
    return group.name if group else item.group_key


async def _sweep_after_mutation(state: AppState) -> Optional[SweepReportOut]:
    try:
        return await mel_service.reconcile_all(state)
    except RuleStoreUnavailableError:
        logger.exception("Sweep after rule change could not read the rule store")
        return None


# PUBLIC_INTERFACE
async def list_rules(
    state: AppState, sector_id: Optional[int] = None, active_only: bool = False
) -> RuleListResponse:
    """List rules, optionally for one sector and/or only active ones."""
    rules = await _run_in_thread(state.rules.list_rules, active_only, sector_id)
    items = [rule_out(r) for r in rules]
    return RuleListResponse(items=items, total=len(items))


# PUBLIC_INTERFACE
async def get_rule(state: AppState, rule_id: str) -> Optional[RuleOut]:
    """Fetch a rule by id; returns None if not found or id invalid."""
    rule = await _run_in_thread(state.rules.get_rule, rule_id)
    return rule_out(rule) if rule else None


# PUBLIC_INTERFACE
async def upsert_sector_rules(state: AppState, sector_id: int, payload: RulesUpsertRequest) -> RuleMutationResponse:
    """
    Create or update a sector's rules keyed by (sectorId, equipmentGroupKey), then sweep.

    Raises InvalidRuleError (before any write) when an entry is invalid.
    """
    keys = [item.group_key for item in payload.rules]
    if any(not k for k in keys):
        raise InvalidRuleError("groupKey must not be empty")
    if len(set(keys)) != len(keys):
        raise InvalidRuleError("duplicate groupKey in request")

    prepared: List[Dict[str, Any]] = []
    for item in payload.rules:
        group_pattern = _group_payload(item.group_pattern, item.equipment_ids)
        if not group_pattern and find_group(item.group_key) is None:
            existing = await _run_in_thread(state.rules.get_rule_by_key, sector_id, item.group_key)
            if existing is None or not existing.group_pattern:
                raise InvalidRuleError(
                    f"unknown group {item.group_key!r}: provide groupPattern or equipmentIds"
                )
        prepared.append(
            {
                "group_key": item.group_key,
                "group_name": _group_name(item),
                "minimum_quantity": item.minimum_quantity,
                "group_pattern": group_pattern,
                "justification": item.justification,
            }
        )

    if payload.sector_name and payload.sector_name.strip():
        sector_name = payload.sector_name.strip()
    else:
        _, sector_name = await mel_service.sector_names(state, sector_id)

    now = utc_now()
    written: List[SectorMelRule] = []
    for p in prepared:
        rule = await _run_in_thread(
            state.rules.upsert_rule,
            sector_id,
            sector_name,
            p["group_key"],
            p["group_name"],
            p["minimum_quantity"],
            p["group_pattern"],
            p["justification"],
            now,
        )
        written.append(rule)
    logger.info("Upserted %s MEL rules for sectorId=%s", len(written), sector_id)

    sweep = await _sweep_after_mutation(state)
    items = [rule_out(r) for r in written]
    return RuleMutationResponse(items=items, total=len(items), sweep=sweep)


# PUBLIC_INTERFACE
async def patch_rule(state: AppState, rule_id: str, payload: RuleUpdate) -> Optional[RuleMutationResponse]:
    """Partially update a rule by id, then sweep. Returns None if the rule does not exist."""
    changes: Dict[str, Any] = {}
    if payload.group_name is not None:
        if not payload.group_name.strip():
            raise InvalidRuleError("groupName must not be empty")
        changes["equipmentGroupName"] = payload.group_name.strip()
    if payload.minimum_quantity is not None:
        changes["minimumQuantity"] = int(payload.minimum_quantity)
    if payload.active is not None:
        changes["active"] = bool(payload.active)
    if payload.justification is not None:
        changes["justification"] = payload.justification
    group_pattern = _group_payload(payload.group_pattern, payload.equipment_ids)
    if group_pattern is not None:
        changes["groupPattern"] = group_pattern

    if not changes:
        rule = await _run_in_thread(state.rules.get_rule, rule_id)
        if rule is None:
            return None
        return RuleMutationResponse(items=[rule_out(rule)], total=1, sweep=None)

    rule = await _run_in_thread(state.rules.update_rule, rule_id, changes, utc_now())
    if rule is None:
        return None
    logger.info("Updated MEL rule %s fields=%s", rule_id, sorted(changes))
    sweep = await _sweep_after_mutation(state)
    return RuleMutationResponse(items=[rule_out(rule)], total=1, sweep=sweep)


# PUBLIC_INTERFACE
async def delete_rule(state: AppState, rule_id: str) -> Optional[RuleDeleteResponse]:
    """Delete a rule by id, then sweep (its active alert becomes an orphan and is resolved)."""
    ok = await _run_in_thread(state.rules.delete_rule, rule_id)
    if not ok:
        return None
    return RuleDeleteResponse(deleted=1, sweep=await _sweep_after_mutation(state))


# PUBLIC_INTERFACE
async def delete_rule_by_key(state: AppState, sector_id: int, group_key: str) -> Optional[RuleDeleteResponse]:
    """Delete the rule for (sectorId, groupKey), then sweep."""
    ok = await _run_in_thread(state.rules.delete_rule_by_key, sector_id, group_key)
    if not ok:
        return None
    return RuleDeleteResponse(deleted=1, sweep=await _sweep_after_mutation(state))


# PUBLIC_INTERFACE
async def delete_sector_rules(state: AppState, sector_id: int) -> RuleDeleteResponse:
    """Delete every rule of a sector, then sweep."""
    deleted = await _run_in_thread(state.rules.delete_sector_rules, sector_id)
    logger.info("Deleted %s MEL rules for sectorId=%s", deleted, sector_id)
    return RuleDeleteResponse(deleted=deleted, sweep=await _sweep_after_mutation(state))


# ---- sector mappings ---------------------------------------------------------


def _mapping_out(m: SectorMapping) -> SectorMappingOut:
    return SectorMappingOut(
        sectorId=m.sector_id,
        systemSectorName=m.system_sector_name,
        effortSectorName=m.effort_sector_name,
        effortSectorId=m.effort_sector_id,
        active=m.active,
    )


# PUBLIC_INTERFACE
async def list_sector_mappings(state: AppState) -> SectorMappingListResponse:
    """All sector mappings, active or not."""
    mappings = await _run_in_thread(state.mappings.list_mappings, False)
    items = [_mapping_out(m) for m in mappings]
    return SectorMappingListResponse(items=items, total=len(items))


# PUBLIC_INTERFACE
async def put_sector_mapping(state: AppState, sector_id: int, payload: SectorMappingIn) -> SectorMappingOut:
    """Create or replace a sector mapping and drop the cached mappings."""
    if not (payload.effort_sector_name or payload.system_sector_name):
        raise InvalidRuleError("effortSectorName or systemSectorName is required")
    mapping = SectorMapping(
        sector_id=sector_id,
        system_sector_name=payload.system_sector_name,
        effort_sector_name=payload.effort_sector_name,
        effort_sector_id=payload.effort_sector_id,
        active=payload.active,
    )
    saved = await _run_in_thread(state.mappings.upsert_mapping, mapping, utc_now())
    mel_service.invalidate_sector_cache(state)
    return _mapping_out(saved)


# PUBLIC_INTERFACE
async def delete_sector_mapping(state: AppState, sector_id: int) -> bool:
    """Delete a sector mapping and drop the cached mappings."""
    ok = await _run_in_thread(state.mappings.delete_mapping, sector_id)
    if ok:
        mel_service.invalidate_sector_cache(state)
    return ok
