from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from src.api.domain.availability import (
    Availability,
    UnitAvailability,
    compute_rule_availability,
    count_availability,
    resolve_members,
    violates_minimum,
)
from src.api.domain.blocking import BlockingIndex
from src.api.domain.groups import (
    DEFAULT_EQUIPMENT_GROUPS,
    EquipmentGroup,
    catalog_with_override,
    groups_with_counts,
)
from src.api.domain.reconcile import ActionKind, AlertAction, decide_alert_action, find_orphaned_alerts
from src.api.domain.records import (
    EquipmentRecord,
    MelAlert,
    PatternGroup,
    SectorMapping,
    SectorMelRule,
    Snapshot,
)
from src.api.domain.sectors import SectorNameMatcher, resolve_sector_names
from src.api.errors import UpstreamUnavailableError
from src.api.schemas.common import utc_now
from src.api.schemas.mel import (
    AlertListResponse,
    AlertOut,
    AvailabilityOut,
    EquipmentUnitOut,
    SectorGroupOut,
    SectorGroupsResponse,
    SweepReportOut,
)
from src.api.services.snapshot_service import fetch_snapshot
from src.api.state import AppState

logger = logging.getLogger(__name__)

SECTOR_MAPPINGS_CACHE_KEY = "sector_mappings"


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking pymongo calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


# ---- sector names --------------------------------------------------------


def _load_mappings(state: AppState) -> Dict[int, SectorMapping]:
    return state.sector_cache.get_or_load(
        SECTOR_MAPPINGS_CACHE_KEY,
        lambda: {m.sector_id: m for m in state.mappings.list_mappings(active_only=True)},
    )


# PUBLIC_INTERFACE
def invalidate_sector_cache(state: AppState) -> None:
    """Drop cached sector mappings; call after any mapping change."""
    state.sector_cache.invalidate(SECTOR_MAPPINGS_CACHE_KEY)


async def sector_names(state: AppState, sector_id: int, rule_sector_name: Optional[str] = None) -> Tuple[str, str]:
    mappings = await _run_in_thread(_load_mappings, state)
    return resolve_sector_names(sector_id, mappings.get(sector_id), rule_sector_name)


# ---- converters ----------------------------------------------------------


def _unit_out(unit: UnitAvailability) -> EquipmentUnitOut:
    r = unit.record
    return EquipmentUnitOut(
        id=r.id,
        tag=r.tag,
        name=r.name,
        model=r.model,
        manufacturer=r.manufacturer,
        sector=r.sector,
        status=r.status,
        available=unit.available,
        unavailableReason=unit.reason,
    )


def alert_out(alert: MelAlert) -> AlertOut:
    return AlertOut(
        id=alert.id,
        sectorId=alert.sector_id,
        sectorName=alert.sector_name,
        equipmentGroupKey=alert.equipment_group_key,
        equipmentGroupName=alert.equipment_group_name,
        sectorMelId=alert.rule_id,
        currentAvailable=alert.current_available,
        minimumQuantity=alert.minimum_quantity,
        totalInSector=alert.total_in_sector,
        unavailableCount=alert.unavailable_count,
        status=alert.status,
        createdAt=alert.created_at,
        updatedAt=alert.updated_at,
        resolvedAt=alert.resolved_at,
    )


# ---- computeAvailability -------------------------------------------------


# PUBLIC_INTERFACE
async def compute_availability(
    state: AppState, sector_id: int, group_key: str, timeout: Optional[float] = None
) -> Optional[AvailabilityOut]:
    """
    Availability of one configured (sector, group) pair.

    Returns None when no rule exists for the pair or when the group resolves to
    zero equipment. Raises UpstreamUnavailableError when equipment cannot be
    fetched and RuleStoreUnavailableError when rules cannot be read.
    """
    sector_rules = await _run_in_thread(state.rules.list_rules, False, sector_id)
    rule = next((r for r in sector_rules if r.equipment_group_key == group_key), None)
    if rule is None:
        return None

    match_name, display_name = await sector_names(state, sector_id, rule.sector_name)
    snapshot = await fetch_snapshot(state.effort, timeout=timeout)
    index = BlockingIndex(snapshot.service_orders)
    availability = compute_rule_availability(
        rule, snapshot.equipment, index, match_name, catalog=_sector_catalog(sector_rules)
    )
    if availability is None:
        logger.info("No equipment matched sectorId=%s group=%s (sector=%r)", sector_id, group_key, match_name)
        return None

    return AvailabilityOut(
        sectorId=sector_id,
        sectorName=display_name,
        groupKey=rule.equipment_group_key,
        groupName=rule.equipment_group_name,
        total=availability.total,
        unavailable=availability.unavailable,
        available=availability.available,
        minimum=rule.minimum_quantity,
        inAlert=violates_minimum(rule, availability),
        linkingDegraded=snapshot.linking_degraded,
    )


# ---- listGroupsForSector / listMelItemsForSector -------------------------


def _sector_catalog(rules: Sequence[SectorMelRule]) -> List[EquipmentGroup]:
    catalog: List[EquipmentGroup] = list(DEFAULT_EQUIPMENT_GROUPS)
    for rule in rules:
        if isinstance(rule.group_definition, PatternGroup):
            catalog = catalog_with_override(
                rule.equipment_group_key, rule.equipment_group_name, rule.group_definition, catalog
            )
    return catalog


def _group_entry(
    key: str,
    name: str,
    records: Sequence[EquipmentRecord],
    index: BlockingIndex,
    rule: Optional[SectorMelRule],
) -> SectorGroupOut:
    availability = count_availability(records, index)
    return SectorGroupOut(
        groupKey=key,
        groupName=rule.equipment_group_name if rule else name,
        isCustom=bool(rule and rule.is_custom),
        equipmentCount=availability.total,
        unavailable=availability.unavailable,
        available=availability.available,
        minimum=rule.minimum_quantity if rule else None,
        inAlert=bool(rule and violates_minimum(rule, availability)),
        ruleId=rule.id if rule else None,
        active=rule.active if rule else None,
        justification=rule.justification if rule else None,
        equipment=[_unit_out(u) for u in availability.units],
    )


def build_sector_groups(
    snapshot: Snapshot,
    rules: Sequence[SectorMelRule],
    match_name: str,
) -> List[SectorGroupOut]:
    """
    Groups present in a sector plus every group configured for it.

    Catalog groups come from first-match classification of the sector's
    equipment (with rule pattern overrides applied). A custom rule replaces the
    catalog bucket for its key. Configured groups with no equipment are listed
    with zero counts.
    """
    index = BlockingIndex(snapshot.service_orders)
    rules_by_key = {r.equipment_group_key: r for r in rules}
    custom_keys = {r.equipment_group_key for r in rules if r.is_custom}
    catalog = _sector_catalog(rules)

    in_sector = SectorNameMatcher(match_name).filter(snapshot.equipment)
    entries: Dict[str, SectorGroupOut] = {}
    for group, records in groups_with_counts(in_sector, catalog):
        if group.key in custom_keys:
            continue
        entries[group.key] = _group_entry(group.key, group.name, records, index, rules_by_key.get(group.key))

    for rule in rules:
        if rule.equipment_group_key in entries:
            continue
        members = resolve_members(
            snapshot.equipment,
            rule.equipment_group_key,
            match_name,
            rule.group_definition,
            rule.equipment_group_name,
            catalog,
        )
        entries[rule.equipment_group_key] = _group_entry(
            rule.equipment_group_key, rule.equipment_group_name, members, index, rule
        )

    items = list(entries.values())
    items.sort(key=lambda e: (-e.equipment_count, e.group_name))
    return items


async def _sector_view(state: AppState, sector_id: int, timeout: Optional[float]) -> SectorGroupsResponse:
    rules = await _run_in_thread(state.rules.list_rules, False, sector_id)
    rule_sector_name = next((r.sector_name for r in rules if r.sector_name), None)
    match_name, display_name = await sector_names(state, sector_id, rule_sector_name)
    snapshot = await fetch_snapshot(state.effort, timeout=timeout)
    items = build_sector_groups(snapshot, rules, match_name)
    return SectorGroupsResponse(
        sectorId=sector_id,
        sectorName=display_name,
        items=items,
        total=len(items),
        inAlert=sum(1 for i in items if i.in_alert),
        linkingDegraded=snapshot.linking_degraded,
        warnings=list(snapshot.warnings),
    )


# PUBLIC_INTERFACE
async def list_groups_for_sector(
    state: AppState, sector_id: int, timeout: Optional[float] = None
) -> SectorGroupsResponse:
    """Every group found in (or configured for) a sector, with counts and minimums."""
    return await _sector_view(state, sector_id, timeout)


# PUBLIC_INTERFACE
async def list_mel_items_for_sector(
    state: AppState, sector_id: int, timeout: Optional[float] = None
) -> SectorGroupsResponse:
    """Only the groups of a sector that have a configured minimum."""
    view = await _sector_view(state, sector_id, timeout)
    items = [i for i in view.items if i.rule_id]
    return view.model_copy(
        update={"items": items, "total": len(items), "in_alert": sum(1 for i in items if i.in_alert)}
    )


# ---- reconcileAll ----------------------------------------------------------


@dataclass
class SweepTally:
    started_at: datetime
    rules_evaluated: int = 0
    created: int = 0
    updated: int = 0
    resolved: int = 0
    orphans_resolved: int = 0
    failed_rules: List[str] = field(default_factory=list)
    linking_degraded: bool = False
    aborted: bool = False
    warnings: List[str] = field(default_factory=list)

    def count(self, kind: ActionKind) -> None:
        if kind is ActionKind.create:
            self.created += 1
        elif kind is ActionKind.update:
            self.updated += 1
        elif kind is ActionKind.resolve:
            self.resolved += 1

    def to_out(self) -> SweepReportOut:
        return SweepReportOut(
            rulesEvaluated=self.rules_evaluated,
            alertsCreated=self.created,
            alertsUpdated=self.updated,
            alertsResolved=self.resolved,
            orphansResolved=self.orphans_resolved,
            failedRules=self.failed_rules,
            linkingDegraded=self.linking_degraded,
            aborted=self.aborted,
            warnings=self.warnings,
            startedAt=self.started_at,
            finishedAt=utc_now(),
        )


async def _apply_action(
    state: AppState, action: AlertAction, rule: SectorMelRule, sector_name: str, now: datetime
) -> None:
    if action.kind is ActionKind.create:
        assert action.counts is not None
        await _run_in_thread(state.alerts.create_alert, rule, sector_name, action.counts, now)
    elif action.kind is ActionKind.update:
        assert action.alert_id is not None and action.counts is not None
        await _run_in_thread(state.alerts.update_alert_counts, action.alert_id, action.counts, now)
    elif action.kind is ActionKind.resolve:
        assert action.alert_id is not None
        await _run_in_thread(state.alerts.resolve_alert, action.alert_id, now)


async def _resolve_orphans(state: AppState, alerts: List[MelAlert], rules: List[SectorMelRule], now: datetime) -> int:
    orphans = find_orphaned_alerts(alerts, {r.key for r in rules})
    resolved = 0
    for alert in orphans:
        async with state.alert_locks.get(alert.key):
            if await _run_in_thread(state.alerts.resolve_alert, alert.id, now):
                resolved += 1
                logger.info(
                    "Resolved orphaned alert %s (sectorId=%s group=%s)",
                    alert.id,
                    alert.sector_id,
                    alert.equipment_group_key,
                )
    return resolved


async def _evaluate_rule(
    state: AppState,
    rule: SectorMelRule,
    snapshot: Snapshot,
    index: BlockingIndex,
    mappings: Dict[int, SectorMapping],
    catalog: Sequence[EquipmentGroup],
    semaphore: asyncio.Semaphore,
    now: datetime,
) -> ActionKind:
    match_name, display_name = resolve_sector_names(rule.sector_id, mappings.get(rule.sector_id), rule.sector_name)
    async with semaphore:
        availability: Optional[Availability] = await _run_in_thread(
            compute_rule_availability, rule, snapshot.equipment, index, match_name, catalog
        )
    if availability is None:
        logger.warning(
            "No equipment matched sectorId=%s group=%s (sector=%r); counting as zero available",
            rule.sector_id,
            rule.equipment_group_key,
            match_name,
        )

    # The active alert is re-read under the key lock so concurrent sweeps never
    # both create an alert for the same key.
    async with state.alert_locks.get(rule.key):
        existing = await _run_in_thread(state.alerts.find_active_alert, rule.sector_id, rule.equipment_group_key)
        action = decide_alert_action(rule, availability, existing)
        await _apply_action(state, action, rule, display_name, now)
    return action.kind


# PUBLIC_INTERFACE
async def reconcile_all(state: AppState, timeout: Optional[float] = None) -> SweepReportOut:
    """
    Bring the persisted alert set in line with current availability.

    1. Load rules and active alerts (RuleStoreUnavailableError propagates; nothing written yet).
    2. Resolve orphaned alerts (rule deleted or deactivated, or duplicate active alerts).
    3. Fetch one equipment/service-order snapshot; if equipment is unavailable the
       sweep stops here and existing alerts are left untouched.
    4. Evaluate rules in parallel (bounded by MEL_MAX_WORKERS); writes are
       serialized per (sectorId, equipmentGroupKey). A failing rule is logged and
       skipped.
    """
    now = utc_now()
    tally = SweepTally(started_at=now)

    all_rules = await _run_in_thread(state.rules.list_rules, False)
    rules = [r for r in all_rules if r.active]
    active_alerts = await _run_in_thread(state.alerts.list_alerts, True)
    mappings = await _run_in_thread(_load_mappings, state)

    tally.orphans_resolved = await _resolve_orphans(state, active_alerts, rules, now)

    try:
        snapshot = await fetch_snapshot(state.effort, timeout=timeout)
    except UpstreamUnavailableError as exc:
        logger.error("MEL sweep aborted, equipment snapshot unavailable: %s", exc)
        tally.aborted = True
        tally.warnings.append(str(exc))
        return tally.to_out()

    tally.linking_degraded = snapshot.linking_degraded
    tally.warnings.extend(snapshot.warnings)
    index = BlockingIndex(snapshot.service_orders)
    semaphore = asyncio.Semaphore(max(1, int(state.config.mel_max_workers)))

    # Every rule of a sector classifies against the same catalog the sector view uses.
    rules_by_sector: Dict[int, List[SectorMelRule]] = {}
    for r in all_rules:
        rules_by_sector.setdefault(r.sector_id, []).append(r)
    catalogs = {sid: _sector_catalog(sector_rules) for sid, sector_rules in rules_by_sector.items()}

    async def _guarded(rule: SectorMelRule) -> Optional[ActionKind]:
        try:
            return await _evaluate_rule(
                state, rule, snapshot, index, mappings, catalogs[rule.sector_id], semaphore, now
            )
        except Exception:
            logger.exception(
                "MEL evaluation failed for rule %s (sectorId=%s group=%s)",
                rule.id,
                rule.sector_id,
                rule.equipment_group_key,
            )
            return None

    results = await asyncio.gather(*(_guarded(rule) for rule in rules))
    for rule, kind in zip(rules, results):
        if kind is None:
            tally.failed_rules.append(rule.id or f"{rule.sector_id}:{rule.equipment_group_key}")
            continue
        tally.rules_evaluated += 1
        tally.count(kind)

    logger.info(
        "MEL sweep done: rules=%s created=%s updated=%s resolved=%s orphans=%s failed=%s degraded=%s",
        tally.rules_evaluated,
        tally.created,
        tally.updated,
        tally.resolved,
        tally.orphans_resolved,
        len(tally.failed_rules),
        tally.linking_degraded,
    )
    return tally.to_out()


# ---- listAlerts ------------------------------------------------------------


# PUBLIC_INTERFACE
async def list_alerts(state: AppState, active_only: bool = True) -> AlertListResponse:
    """Alerts newest first, with active/resolved totals."""
    alerts = await _run_in_thread(state.alerts.list_alerts, active_only)
    items = [alert_out(a) for a in alerts]
    active = sum(1 for a in alerts if a.is_active)
    return AlertListResponse(items=items, total=len(items), active=active, resolved=len(items) - active)


# ---- periodic sweep ------------------------------------------------------


# PUBLIC_INTERFACE
async def mel_recalc_loop(state: AppState, shutdown_event: asyncio.Event) -> None:
    """
    Background loop running reconcile_all every MEL_RECALC_INTERVAL_SEC seconds.

    Started only when the interval is > 0. Tick failures are logged and the loop
    keeps going.
    """
    interval = int(state.config.mel_recalc_interval_sec)
    if interval <= 0:
        return
    logger.info("MEL recalculation loop started (interval=%ss)", interval)

    while not shutdown_event.is_set():
        tick_started = datetime.now(timezone.utc)
        try:
            await reconcile_all(state)
        except Exception:
            logger.exception("MEL recalculation tick failed")

        elapsed = (datetime.now(timezone.utc) - tick_started).total_seconds()
        sleep_for = max(0.1, interval - elapsed)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=sleep_for)
        except asyncio.TimeoutError:
            pass

    logger.info("MEL recalculation loop stopped")
