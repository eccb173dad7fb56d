from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Dict, Optional

from fastapi import FastAPI

from src.api.clients.effort import EffortClient
from src.api.config import BackendConfig
from src.api.db.mongo import MongoManager
from src.api.db.stores import (
    AlertStore,
    MongoAlertStore,
    MongoRuleStore,
    MongoSectorMappingStore,
    RuleStore,
    SectorMappingStore,
)
from src.api.domain.cache import TTLCache
from src.api.domain.records import RuleKey
from src.api.services.snapshot_service import SnapshotSource


class KeyedLocks:
    """One asyncio.Lock per (sectorId, equipmentGroupKey)."""

    def __init__(self) -> None:
        self._locks: Dict[RuleKey, asyncio.Lock] = {}

    def get(self, key: RuleKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock


@dataclass
class AppState:
    """Typed app.state container for shared singletons."""

    config: BackendConfig
    mongo: Optional[MongoManager]
    rules: RuleStore
    alerts: AlertStore
    mappings: SectorMappingStore
    effort: SnapshotSource
    sector_cache: TTLCache = field(default_factory=lambda: TTLCache(300))
    alert_locks: KeyedLocks = field(default_factory=KeyedLocks)
    recalc_task: Optional[object] = None  # asyncio.Task, but kept loose to avoid import cycles


# PUBLIC_INTERFACE
def init_state(app: FastAPI, config: BackendConfig) -> None:
    """Initialize app.state with Mongo-backed stores, the upstream client and config."""
    mongo = MongoManager(config.mongo_uri, db_name=config.mongo_db_name)
    app.state.state = AppState(
        config=config,
        mongo=mongo,
        rules=MongoRuleStore(mongo),
        alerts=MongoAlertStore(mongo),
        mappings=MongoSectorMappingStore(mongo),
        effort=EffortClient(
            base_url=config.effort_base_url,
            api_key=config.effort_api_key,
            timeout_sec=config.effort_timeout_sec,
            os_period=config.effort_os_period,
            page_size=config.effort_page_size,
        ),
        sector_cache=TTLCache(config.sector_mapping_cache_ttl_sec),
    )


# PUBLIC_INTERFACE
def get_state(app: FastAPI) -> AppState:
    """Fetch typed AppState from a FastAPI app."""
    return app.state.state  # type: ignore[attr-defined]
