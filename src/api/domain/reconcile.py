"""Alert state transitions for one (sectorId, equipmentGroupKey).

States: no alert, active ("ativo"), resolved ("resolvido"). A resolved alert is
never reopened; a later violation creates a new active alert.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

from src.api.domain.availability import Availability, violates_minimum
from src.api.domain.records import MelAlert, RuleKey, SectorMelRule


class ActionKind(str, Enum):
    none = "none"
    create = "create"
    update = "update"
    resolve = "resolve"


@dataclass(frozen=True)
class AlertCounts:
    current_available: int
    total_in_sector: int
    unavailable_count: int
    minimum_quantity: int

    @classmethod
    def of(cls, rule: SectorMelRule, availability: Optional[Availability]) -> "AlertCounts":
        if availability is None:
            return cls(0, 0, 0, rule.minimum_quantity)
        return cls(
            current_available=availability.available,
            total_in_sector=availability.total,
            unavailable_count=availability.unavailable,
            minimum_quantity=rule.minimum_quantity,
        )

    def differs_from(self, alert: MelAlert) -> bool:
        return (
            self.current_available != alert.current_available
            or self.total_in_sector != alert.total_in_sector
            or self.unavailable_count != alert.unavailable_count
            or self.minimum_quantity != alert.minimum_quantity
        )


@dataclass(frozen=True)
class AlertAction:
    kind: ActionKind
    alert_id: Optional[str] = None
    counts: Optional[AlertCounts] = None


NO_ACTION = AlertAction(ActionKind.none)


def decide_alert_action(
    rule: Optional[SectorMelRule],
    availability: Optional[Availability],
    existing: Optional[MelAlert],
) -> AlertAction:
    """Map (rule, computed availability, current active alert) to one action.

    ``rule`` is None when the rule was deleted. Updates are only issued when a
    stored count actually changed, so repeated sweeps over unchanged data
    write nothing.
    """
    if existing is not None and not existing.is_active:
        existing = None

    if rule is None or not rule.active:
        if existing is not None:
            return AlertAction(ActionKind.resolve, alert_id=existing.id)
        return NO_ACTION

    counts = AlertCounts.of(rule, availability)
    if violates_minimum(rule, availability):
        if existing is None:
            return AlertAction(ActionKind.create, counts=counts)
        if counts.differs_from(existing):
            return AlertAction(ActionKind.update, alert_id=existing.id, counts=counts)
        return NO_ACTION

    if existing is not None:
        return AlertAction(ActionKind.resolve, alert_id=existing.id)
    return NO_ACTION


def _sort_key(alert: MelAlert) -> float:
    return alert.created_at.timestamp() if alert.created_at else 0.0


def find_orphaned_alerts(active_alerts: Iterable[MelAlert], active_rule_keys: Set[RuleKey]) -> List[MelAlert]:
    """Active alerts that no active rule backs.

    Includes alerts whose rule was deleted or deactivated, and surplus active
    alerts for the same key (all but the newest).
    """
    by_key: Dict[RuleKey, List[MelAlert]] = {}
    for alert in active_alerts:
        if alert.is_active:
            by_key.setdefault(alert.key, []).append(alert)

    orphans: List[MelAlert] = []
    for key, alerts in by_key.items():
        if key not in active_rule_keys:
            orphans.extend(alerts)
            continue
        if len(alerts) > 1:
            alerts = sorted(alerts, key=_sort_key, reverse=True)
            orphans.extend(alerts[1:])
    return orphans
