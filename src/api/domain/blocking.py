"""Deciding whether a unit is unavailable.

A unit is linked to a work order only through its tag or its equipment id;
those are the only values unique per physical asset. Name, model and
manufacturer are never compared: two monitors of the same model in the same
sector are different units. Orders without either identity field (the
summarized feed) therefore never block anything.
"""

from __future__ import annotations

from typing import Dict, Iterable, Optional, Tuple

from src.api.domain.records import EquipmentId, EquipmentRecord, ServiceOrder, normalize_tag

BLOCKING_OS_STATUSES: Tuple[str, ...] = ("aberta", "em_andamento")
UNAVAILABLE_EQUIPMENT_STATUSES: Tuple[str, ...] = ("sucateado", "baixado", "emprestado")

REASON_STATUS = "status"
REASON_SERVICE_ORDER = "service_order"


def is_blocking_status(status: Optional[str]) -> bool:
    s = (status or "").lower()
    return any(b in s for b in BLOCKING_OS_STATUSES)


def has_unavailable_status(record: EquipmentRecord) -> bool:
    s = record.status.lower()
    return any(u in s for u in UNAVAILABLE_EQUIPMENT_STATUSES)


def order_blocks_unit(order: ServiceOrder, record: EquipmentRecord) -> bool:
    """Whether one order is linked to this unit and keeps it out of service."""
    if not is_blocking_status(order.status):
        return False

    unit_tag = normalize_tag(record.tag)
    if order.tag and unit_tag and order.tag == unit_tag:
        return True

    if order.equipment_id is not None and record.id is not None:
        # An id that differs rules this order out for the unit.
        return order.equipment_id == record.id

    return False


def find_blocking_order(record: EquipmentRecord, orders: Iterable[ServiceOrder]) -> Optional[ServiceOrder]:
    if not record.tag and record.id is None:
        return None
    for order in orders:
        if not order.has_identity:
            continue
        if order_blocks_unit(order, record):
            return order
    return None


def has_blocking_order(record: EquipmentRecord, orders: Iterable[ServiceOrder]) -> bool:
    return find_blocking_order(record, orders) is not None


def unavailable_reason(record: EquipmentRecord, orders: Iterable[ServiceOrder]) -> Optional[str]:
    """Why a unit is unavailable, or None if it is available.

    A unit is counted once even if several conditions hold.
    """
    if has_unavailable_status(record):
        return REASON_STATUS
    if has_blocking_order(record, orders):
        return REASON_SERVICE_ORDER
    return None


class BlockingIndex:
    """Blocking orders of a snapshot indexed by tag and equipment id.

    Equivalent to checking every order with ``order_blocks_unit``; built once
    per snapshot so rule evaluations do not rescan the whole order feed.
    """

    def __init__(self, orders: Iterable[ServiceOrder]):
        self._by_tag: Dict[str, ServiceOrder] = {}
        self._by_id: Dict[EquipmentId, ServiceOrder] = {}
        for order in orders:
            if not order.has_identity or not is_blocking_status(order.status):
                continue
            if order.tag:
                self._by_tag.setdefault(order.tag, order)
            if order.equipment_id is not None:
                self._by_id.setdefault(order.equipment_id, order)

    def blocking_order(self, record: EquipmentRecord) -> Optional[ServiceOrder]:
        tag = normalize_tag(record.tag)
        if tag and tag in self._by_tag:
            return self._by_tag[tag]
        if record.id is not None and record.id in self._by_id:
            return self._by_id[record.id]
        return None

    def unavailable_reason(self, record: EquipmentRecord) -> Optional[str]:
        if has_unavailable_status(record):
            return REASON_STATUS
        if self.blocking_order(record) is not None:
            return REASON_SERVICE_ORDER
        return None
