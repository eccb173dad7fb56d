"""Per-sector, per-group availability counts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from src.api.domain.blocking import BlockingIndex
from src.api.domain.groups import (
    DEFAULT_EQUIPMENT_GROUPS,
    EquipmentGroup,
    catalog_with_override,
    group_equipment,
    is_custom_member,
)
from src.api.domain.records import (
    CustomGroup,
    EquipmentRecord,
    GroupDefinition,
    PatternGroup,
    SectorMelRule,
)
from src.api.domain.sectors import SectorNameMatcher


@dataclass(frozen=True)
class UnitAvailability:
    record: EquipmentRecord
    reason: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.reason is None


@dataclass(frozen=True)
class Availability:
    total: int
    unavailable: int
    available: int
    units: Tuple[UnitAvailability, ...] = ()


def resolve_members(
    equipment: Sequence[EquipmentRecord],
    group_key: str,
    sector_name: str,
    definition: Optional[GroupDefinition] = None,
    group_name: Optional[str] = None,
    catalog: Sequence[EquipmentGroup] = DEFAULT_EQUIPMENT_GROUPS,
) -> List[EquipmentRecord]:
    """Records belonging to ``group_key`` for a sector.

    Custom groups are looked up by id across the whole snapshot (they may span
    sectors) and never consult the catalog. Otherwise records are narrowed to
    the sector first and then classified first-match against the catalog, with
    a rule's own patterns replacing the catalog entry for its key.
    """
    if isinstance(definition, CustomGroup):
        return [r for r in equipment if is_custom_member(r, definition)]

    if isinstance(definition, PatternGroup):
        catalog = catalog_with_override(group_key, group_name or group_key, definition, catalog)

    in_sector = SectorNameMatcher(sector_name).filter(equipment)
    bucket = group_equipment(in_sector, catalog).get(group_key)
    return list(bucket[1]) if bucket else []


def count_availability(records: Iterable[EquipmentRecord], index: BlockingIndex) -> Availability:
    units = tuple(UnitAvailability(record=r, reason=index.unavailable_reason(r)) for r in records)
    total = len(units)
    unavailable = sum(1 for u in units if not u.available)
    return Availability(total=total, unavailable=unavailable, available=total - unavailable, units=units)


def compute_availability(
    equipment: Sequence[EquipmentRecord],
    index: BlockingIndex,
    group_key: str,
    sector_name: str,
    definition: Optional[GroupDefinition] = None,
    group_name: Optional[str] = None,
    catalog: Sequence[EquipmentGroup] = DEFAULT_EQUIPMENT_GROUPS,
) -> Optional[Availability]:
    """Availability for one sector+group, or None when no equipment matched."""
    members = resolve_members(equipment, group_key, sector_name, definition, group_name, catalog)
    if not members:
        return None
    return count_availability(members, index)


def compute_rule_availability(
    rule: SectorMelRule,
    equipment: Sequence[EquipmentRecord],
    index: BlockingIndex,
    sector_name: str,
    catalog: Sequence[EquipmentGroup] = DEFAULT_EQUIPMENT_GROUPS,
) -> Optional[Availability]:
    return compute_availability(
        equipment,
        index,
        group_key=rule.equipment_group_key,
        sector_name=sector_name,
        definition=rule.group_definition,
        group_name=rule.equipment_group_name,
        catalog=catalog,
    )


def violates_minimum(rule: SectorMelRule, availability: Optional[Availability]) -> bool:
    """Whether an active rule is below its minimum; no data counts as zero available."""
    if not rule.active:
        return False
    available = availability.available if availability is not None else 0
    return available < rule.minimum_quantity
