from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import RLock
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MongoCollections:
    """Convenience wrapper for app collections."""

    sector_mel_rules: Collection
    mel_alerts: Collection
    sector_mappings: Collection


class MongoManager:
    """MongoDB connection manager holding one MongoClient for the app's storage DB."""

    def __init__(self, app_mongo_uri: str, db_name: str = "mel"):
        self._app_mongo_uri = app_mongo_uri
        self._db_name = db_name
        self._app_client: Optional[MongoClient] = None
        self._lock = RLock()

    def connect_app(self) -> None:
        """Initialize app Mongo client if needed."""
        with self._lock:
            if self._app_client is not None:
                return
            # MongoClient is thread-safe and manages internal pooling.
            self._app_client = MongoClient(self._app_mongo_uri, connect=True, tz_aware=True)

    # PUBLIC_INTERFACE
    def ping(self, timeout_ms: int = 1500) -> bool:
        """Ping the configured MongoDB to validate connectivity."""
        try:
            if self._app_client is None:
                self.connect_app()
            assert self._app_client is not None
            self._app_client.admin.command("ping", maxTimeMS=int(max(250, timeout_ms)))
            return True
        except PyMongoError:
            logger.exception("Mongo ping failed (PyMongoError)")
            return False
        except Exception:
            logger.exception("Mongo ping failed (unexpected)")
            return False

    def close(self) -> None:
        with self._lock:
            if self._app_client is not None:
                try:
                    self._app_client.close()
                except Exception:
                    logger.exception("Error closing app MongoClient")
                self._app_client = None

    def app_db(self) -> Database:
        if self._app_client is None:
            self.connect_app()
        assert self._app_client is not None
        return self._app_client[self._db_name]

    def collections(self) -> MongoCollections:
        db = self.app_db()
        return MongoCollections(
            sector_mel_rules=db["sector_mel_rules"],
            mel_alerts=db["mel_alerts"],
            sector_mappings=db["sector_mappings"],
        )

    def init_indexes(self) -> None:
        """Create required indexes (idempotent)."""
        cols = self.collections()

        # ---- Rules ----
        # At most one rule per (sectorId, equipmentGroupKey).
        cols.sector_mel_rules.create_index(
            [("sectorId", ASCENDING), ("equipmentGroupKey", ASCENDING)],
            unique=True,
            name="uniq_rules_sector_group",
        )
        cols.sector_mel_rules.create_index([("active", ASCENDING)], name="idx_rules_active")

        # ---- Alerts ----
        cols.mel_alerts.create_index([("status", ASCENDING)], name="idx_alerts_status")
        cols.mel_alerts.create_index([("createdAt", DESCENDING)], name="idx_alerts_createdAt_desc")
        cols.mel_alerts.create_index(
            [("sectorId", ASCENDING), ("equipmentGroupKey", ASCENDING), ("status", ASCENDING)],
            name="idx_alerts_sector_group_status",
        )

        # ---- Sector mappings ----
        cols.sector_mappings.create_index([("sectorId", ASCENDING)], unique=True, name="uniq_mappings_sector")
