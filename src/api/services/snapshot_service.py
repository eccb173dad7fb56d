from __future__ import annotations

import logging
from typing import List, Optional, Protocol

from src.api.clients.effort import EffortApiError
from src.api.domain.records import EquipmentRecord, ServiceOrder, Snapshot, SourceKind
from src.api.errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)


class SnapshotSource(Protocol):
    async def fetch_equipment(self, timeout: Optional[float] = None) -> List[dict]: ...

    async def fetch_os_analytic(self, timeout: Optional[float] = None) -> List[dict]: ...

    async def fetch_os_summarized(self, timeout: Optional[float] = None) -> List[dict]: ...


def _to_equipment(raw_items: List[dict]) -> List[EquipmentRecord]:
    out: List[EquipmentRecord] = []
    for raw in raw_items:
        try:
            out.append(EquipmentRecord.from_effort(raw))
        except Exception:
            logger.exception("Skipping unreadable equipment record: %r", raw)
    return out


def _to_orders(raw_items: List[dict], source: SourceKind) -> List[ServiceOrder]:
    out: List[ServiceOrder] = []
    for raw in raw_items:
        try:
            out.append(ServiceOrder.from_effort(raw, source))
        except Exception:
            logger.exception("Skipping unreadable service order: %r", raw)
    return out


# PUBLIC_INTERFACE
async def fetch_snapshot(client: SnapshotSource, timeout: Optional[float] = None) -> Snapshot:
    """
    Fetch equipment and service orders once for a sweep.

    - Equipment failure raises UpstreamUnavailableError (nothing can be computed).
    - Service orders: analytic feed, then summarized feed (no unit linking),
      then no orders at all. Each step down is logged and recorded in warnings.
    """
    try:
        equipment = _to_equipment(await client.fetch_equipment(timeout=timeout))
    except EffortApiError as exc:
        raise UpstreamUnavailableError(f"equipment snapshot unavailable: {exc}") from exc

    warnings: List[str] = []
    try:
        orders = _to_orders(await client.fetch_os_analytic(timeout=timeout), SourceKind.analytic)
        return Snapshot(tuple(equipment), tuple(orders), SourceKind.analytic)
    except EffortApiError as exc:
        logger.warning("Analytic service-order feed failed (%s); falling back to summarized feed", exc)
        warnings.append(f"analytic feed unavailable: {exc}")

    try:
        orders = _to_orders(await client.fetch_os_summarized(timeout=timeout), SourceKind.summarized)
        logger.warning("Using summarized service orders: %s orders cannot be linked to units", len(orders))
        warnings.append("summarized feed in use; service orders cannot block specific units")
    except EffortApiError as exc:
        logger.warning("Summarized service-order feed failed (%s); assuming no service orders", exc)
        warnings.append(f"summarized feed unavailable: {exc}; no service orders loaded")
        orders = []

    return Snapshot(tuple(equipment), tuple(orders), SourceKind.summarized, tuple(warnings))
