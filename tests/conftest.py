from __future__ import annotations

import itertools
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
import pytest

from src.api.clients.effort import EffortApiError
from src.api.config import BackendConfig
from src.api.domain.cache import TTLCache
from src.api.domain.reconcile import AlertCounts
from src.api.domain.records import (
    ALERT_ACTIVE,
    ALERT_RESOLVED,
    MelAlert,
    SectorMapping,
    SectorMelRule,
)
from src.api.errors import RuleStoreUnavailableError
from src.api.state import AppState


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


# ---- fakes -------------------------------------------------------------------


class FakeEffortClient:
    """Stands in for EffortClient; each feed can be switched to fail."""

    def __init__(self) -> None:
        self.equipment: List[Dict[str, Any]] = []
        self.analytic: List[Dict[str, Any]] = []
        self.summarized: List[Dict[str, Any]] = []
        self.fail_equipment = False
        self.fail_analytic = False
        self.fail_summarized = False
        self.calls: Dict[str, int] = {"equipment": 0, "analytic": 0, "summarized": 0}

    async def fetch_equipment(self, timeout: Optional[float] = None) -> List[dict]:
        self.calls["equipment"] += 1
        if self.fail_equipment:
            raise EffortApiError("/api/pbi/v1/equipamentos", "HTTP 502")
        return list(self.equipment)

    async def fetch_os_analytic(self, timeout: Optional[float] = None) -> List[dict]:
        self.calls["analytic"] += 1
        if self.fail_analytic:
            raise EffortApiError("/api/pbi/v1/listagem_analitica_das_os", "timeout")
        return list(self.analytic)

    async def fetch_os_summarized(self, timeout: Optional[float] = None) -> List[dict]:
        self.calls["summarized"] += 1
        if self.fail_summarized:
            raise EffortApiError("/api/pbi/v1/listagem_analitica_das_os_resumida", "HTTP 500")
        return list(self.summarized)

    async def aclose(self) -> None:
        return None


class InMemoryRuleStore:
    def __init__(self) -> None:
        self.docs: Dict[str, Dict[str, Any]] = {}
        self._ids = itertools.count(1)
        self.unavailable = False

    def _check(self) -> None:
        if self.unavailable:
            raise RuleStoreUnavailableError("rule store offline")

    def add(
        self,
        sector_id: int,
        group_key: str,
        minimum: int,
        sector_name: str = "",
        group_name: Optional[str] = None,
        group_pattern: Optional[str] = None,
        active: bool = True,
    ) -> SectorMelRule:
        rule_id = f"rule-{next(self._ids)}"
        self.docs[rule_id] = {
            "_id": rule_id,
            "sectorId": sector_id,
            "sectorName": sector_name,
            "equipmentGroupKey": group_key,
            "equipmentGroupName": group_name or group_key,
            "minimumQuantity": minimum,
            "groupPattern": group_pattern,
            "active": active,
            "justification": None,
        }
        return SectorMelRule.from_doc(self.docs[rule_id])

    def list_rules(self, active_only: bool = False, sector_id: Optional[int] = None) -> List[SectorMelRule]:
        self._check()
        docs = [
            d
            for d in self.docs.values()
            if (not active_only or d.get("active", True)) and (sector_id is None or d["sectorId"] == sector_id)
        ]
        docs.sort(key=lambda d: (d["sectorId"], d["equipmentGroupName"]))
        return [SectorMelRule.from_doc(d) for d in docs]

    def get_rule(self, rule_id: str) -> Optional[SectorMelRule]:
        self._check()
        doc = self.docs.get(rule_id)
        return SectorMelRule.from_doc(doc) if doc else None

    def _find_key(self, sector_id: int, group_key: str) -> Optional[Dict[str, Any]]:
        for d in self.docs.values():
            if d["sectorId"] == sector_id and d["equipmentGroupKey"] == group_key:
                return d
        return None

    def get_rule_by_key(self, sector_id: int, group_key: str) -> Optional[SectorMelRule]:
        self._check()
        doc = self._find_key(sector_id, group_key)
        return SectorMelRule.from_doc(doc) if doc else None

    def upsert_rule(
        self,
        sector_id: int,
        sector_name: str,
        group_key: str,
        group_name: str,
        minimum_quantity: int,
        group_pattern: Optional[str],
        justification: Optional[str],
        now: datetime,
    ) -> SectorMelRule:
        self._check()
        doc = self._find_key(sector_id, group_key)
        if doc is None:
            rule_id = f"rule-{next(self._ids)}"
            doc = self.docs[rule_id] = {
                "_id": rule_id,
                "sectorId": sector_id,
                "equipmentGroupKey": group_key,
                "active": True,
                "createdAt": now,
                "groupPattern": None,
            }
        doc.update(
            {
                "sectorName": sector_name,
                "equipmentGroupName": group_name,
                "minimumQuantity": minimum_quantity,
                "justification": justification,
                "updatedAt": now,
            }
        )
        if group_pattern is not None:
            doc["groupPattern"] = group_pattern
        return SectorMelRule.from_doc(doc)

    def update_rule(self, rule_id: str, changes: Dict[str, Any], now: datetime) -> Optional[SectorMelRule]:
        self._check()
        doc = self.docs.get(rule_id)
        if doc is None:
            return None
        doc.update(changes)
        doc["updatedAt"] = now
        return SectorMelRule.from_doc(doc)

    def delete_rule(self, rule_id: str) -> bool:
        self._check()
        return self.docs.pop(rule_id, None) is not None

    def delete_rule_by_key(self, sector_id: int, group_key: str) -> bool:
        self._check()
        doc = self._find_key(sector_id, group_key)
        if doc is None:
            return False
        del self.docs[doc["_id"]]
        return True

    def delete_sector_rules(self, sector_id: int) -> int:
        self._check()
        ids = [k for k, d in self.docs.items() if d["sectorId"] == sector_id]
        for k in ids:
            del self.docs[k]
        return len(ids)


class InMemoryAlertStore:
    def __init__(self) -> None:
        self.alerts: Dict[str, MelAlert] = {}
        self._ids = itertools.count(1)
        self.writes = 0

    def seed(self, sector_id: int, group_key: str, created_at: datetime, current_available: int = 0) -> MelAlert:
        alert = MelAlert(
            id=f"alert-{next(self._ids)}",
            sector_id=sector_id,
            sector_name="",
            equipment_group_key=group_key,
            equipment_group_name=group_key,
            rule_id=None,
            current_available=current_available,
            minimum_quantity=1,
            total_in_sector=0,
            unavailable_count=0,
            created_at=created_at,
            updated_at=created_at,
        )
        self.alerts[alert.id] = alert
        return alert

    def for_key(self, sector_id: int, group_key: str) -> List[MelAlert]:
        return [a for a in self.alerts.values() if a.key == (sector_id, group_key)]

    def list_alerts(self, active_only: bool = True) -> List[MelAlert]:
        items = [a for a in self.alerts.values() if not active_only or a.is_active]
        items.sort(key=lambda a: a.created_at.timestamp() if a.created_at else 0.0, reverse=True)
        return items

    def find_active_alert(self, sector_id: int, group_key: str) -> Optional[MelAlert]:
        active = [a for a in self.for_key(sector_id, group_key) if a.is_active]
        active.sort(key=lambda a: a.created_at.timestamp() if a.created_at else 0.0, reverse=True)
        return active[0] if active else None

    def create_alert(self, rule: SectorMelRule, sector_name: str, counts: AlertCounts, now: datetime) -> MelAlert:
        self.writes += 1
        alert = MelAlert(
            id=f"alert-{next(self._ids)}",
            sector_id=rule.sector_id,
            sector_name=sector_name,
            equipment_group_key=rule.equipment_group_key,
            equipment_group_name=rule.equipment_group_name,
            rule_id=rule.id,
            current_available=counts.current_available,
            minimum_quantity=counts.minimum_quantity,
            total_in_sector=counts.total_in_sector,
            unavailable_count=counts.unavailable_count,
            status=ALERT_ACTIVE,
            created_at=now,
            updated_at=now,
        )
        self.alerts[alert.id] = alert
        return alert

    def update_alert_counts(self, alert_id: str, counts: AlertCounts, now: datetime) -> bool:
        alert = self.alerts.get(alert_id)
        if alert is None or not alert.is_active:
            return False
        self.writes += 1
        alert.current_available = counts.current_available
        alert.minimum_quantity = counts.minimum_quantity
        alert.total_in_sector = counts.total_in_sector
        alert.unavailable_count = counts.unavailable_count
        alert.updated_at = now
        return True

    def resolve_alert(self, alert_id: str, now: datetime) -> bool:
        alert = self.alerts.get(alert_id)
        if alert is None or not alert.is_active:
            return False
        self.writes += 1
        alert.status = ALERT_RESOLVED
        alert.resolved_at = now
        alert.updated_at = now
        return True


class InMemorySectorMappingStore:
    def __init__(self) -> None:
        self.mappings: Dict[int, SectorMapping] = {}
        self.list_calls = 0

    def list_mappings(self, active_only: bool = True) -> List[SectorMapping]:
        self.list_calls += 1
        items = [m for m in self.mappings.values() if not active_only or m.active]
        return sorted(items, key=lambda m: m.sector_id)

    def upsert_mapping(self, mapping: SectorMapping, now: datetime) -> SectorMapping:
        self.mappings[mapping.sector_id] = mapping
        return mapping

    def delete_mapping(self, sector_id: int) -> bool:
        return self.mappings.pop(sector_id, None) is not None


# ---- fixtures ------------------------------------------------------------------


@pytest.fixture
def config() -> BackendConfig:
    return BackendConfig(
        mongo_uri="mongodb://localhost:27017",
        mongo_db_name="mel_test",
        effort_base_url="http://effort.test",
        effort_api_key="test-key",
        effort_timeout_sec=5,
        effort_os_period="AnoCorrente",
        effort_page_size=1000,
        sector_mapping_cache_ttl_sec=300,
        mel_max_workers=4,
        mel_recalc_interval_sec=0,
    )


@pytest.fixture
def effort() -> FakeEffortClient:
    return FakeEffortClient()


@pytest.fixture
def rules() -> InMemoryRuleStore:
    return InMemoryRuleStore()


@pytest.fixture
def alerts() -> InMemoryAlertStore:
    return InMemoryAlertStore()


@pytest.fixture
def mappings() -> InMemorySectorMappingStore:
    return InMemorySectorMappingStore()


@pytest.fixture
def state(config, effort, rules, alerts, mappings) -> AppState:
    """AppState wired to in-memory stores and a fake upstream client."""
    return AppState(
        config=config,
        mongo=None,
        rules=rules,
        alerts=alerts,
        mappings=mappings,
        effort=effort,
        sector_cache=TTLCache(config.sector_mapping_cache_ttl_sec),
    )


@pytest.fixture
def app(monkeypatch: pytest.MonkeyPatch, state: AppState):
    """
    FastAPI app with its state swapped for the in-memory one.

    httpx's ASGITransport does not run startup/shutdown events, so no Mongo
    connection is attempted.
    """
    monkeypatch.setenv("BACKEND_MONGO_URI", "mongodb://localhost:27017")
    monkeypatch.setenv("MEL_RECALC_INTERVAL_SEC", "0")

    from src.api.main import app as fastapi_app

    previous = fastapi_app.state.state
    fastapi_app.state.state = state
    yield fastapi_app
    fastapi_app.state.state = previous


@pytest.fixture
async def async_client(app) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client bound to the FastAPI ASGI app."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
