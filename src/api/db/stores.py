"""Rule, alert and sector-mapping persistence.

The engine only talks to the store protocols below; the Mongo classes are the
production implementations. Any driver failure is re-raised as
RuleStoreUnavailableError so callers never see pymongo types.
"""

from __future__ import annotations

import functools
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from src.api.db.mongo import MongoManager
from src.api.domain.reconcile import AlertCounts
from src.api.domain.records import ALERT_ACTIVE, ALERT_RESOLVED, MelAlert, SectorMapping, SectorMelRule
from src.api.errors import RuleStoreUnavailableError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class RuleStore(Protocol):
    def list_rules(self, active_only: bool = False, sector_id: Optional[int] = None) -> List[SectorMelRule]: ...

    def get_rule(self, rule_id: str) -> Optional[SectorMelRule]: ...

    def get_rule_by_key(self, sector_id: int, group_key: str) -> Optional[SectorMelRule]: ...

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
    ) -> SectorMelRule: ...

    def update_rule(self, rule_id: str, changes: Dict[str, Any], now: datetime) -> Optional[SectorMelRule]: ...

    def delete_rule(self, rule_id: str) -> bool: ...

    def delete_rule_by_key(self, sector_id: int, group_key: str) -> bool: ...

    def delete_sector_rules(self, sector_id: int) -> int: ...


class AlertStore(Protocol):
    def list_alerts(self, active_only: bool = True) -> List[MelAlert]: ...

    def find_active_alert(self, sector_id: int, group_key: str) -> Optional[MelAlert]: ...

    def create_alert(self, rule: SectorMelRule, sector_name: str, counts: AlertCounts, now: datetime) -> MelAlert: ...

    def update_alert_counts(self, alert_id: str, counts: AlertCounts, now: datetime) -> bool: ...

    def resolve_alert(self, alert_id: str, now: datetime) -> bool: ...


class SectorMappingStore(Protocol):
    def list_mappings(self, active_only: bool = True) -> List[SectorMapping]: ...

    def upsert_mapping(self, mapping: SectorMapping, now: datetime) -> SectorMapping: ...

    def delete_mapping(self, sector_id: int) -> bool: ...


def _store_call(func: F) -> F:
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except PyMongoError as exc:
            logger.exception("Store operation %s failed", func.__name__)
            raise RuleStoreUnavailableError(f"{func.__name__} failed: {exc}") from exc

    return wrapper  # type: ignore[return-value]


def _oid(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


class MongoRuleStore:
    def __init__(self, mongo: MongoManager):
        self._mongo = mongo

    @property
    def _col(self):
        return self._mongo.collections().sector_mel_rules

    @_store_call
    def list_rules(self, active_only: bool = False, sector_id: Optional[int] = None) -> List[SectorMelRule]:
        q: Dict[str, Any] = {}
        if active_only:
            q["active"] = True
        if sector_id is not None:
            q["sectorId"] = int(sector_id)
        docs = self._col.find(q).sort([("sectorId", 1), ("equipmentGroupName", 1)])
        return [SectorMelRule.from_doc(d) for d in docs]

    @_store_call
    def get_rule(self, rule_id: str) -> Optional[SectorMelRule]:
        oid = _oid(rule_id)
        if oid is None:
            return None
        doc = self._col.find_one({"_id": oid})
        return SectorMelRule.from_doc(doc) if doc else None

    @_store_call
    def get_rule_by_key(self, sector_id: int, group_key: str) -> Optional[SectorMelRule]:
        doc = self._col.find_one({"sectorId": int(sector_id), "equipmentGroupKey": group_key})
        return SectorMelRule.from_doc(doc) if doc else None

    @_store_call
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
        update_fields: Dict[str, Any] = {
            "sectorName": sector_name,
            "equipmentGroupName": group_name,
            "minimumQuantity": int(minimum_quantity),
            "justification": justification,
            "updatedAt": now,
        }
        # A missing pattern keeps the stored one.
        if group_pattern is not None:
            update_fields["groupPattern"] = group_pattern
        set_on_insert: Dict[str, Any] = {"active": True, "createdAt": now}
        if group_pattern is None:
            set_on_insert["groupPattern"] = None

        doc = self._col.find_one_and_update(
            {"sectorId": int(sector_id), "equipmentGroupKey": group_key},
            {"$set": update_fields, "$setOnInsert": set_on_insert},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return SectorMelRule.from_doc(doc)

    @_store_call
    def update_rule(self, rule_id: str, changes: Dict[str, Any], now: datetime) -> Optional[SectorMelRule]:
        oid = _oid(rule_id)
        if oid is None:
            return None
        doc = self._col.find_one_and_update(
            {"_id": oid},
            {"$set": {**changes, "updatedAt": now}},
            return_document=ReturnDocument.AFTER,
        )
        return SectorMelRule.from_doc(doc) if doc else None

    @_store_call
    def delete_rule(self, rule_id: str) -> bool:
        oid = _oid(rule_id)
        if oid is None:
            return False
        return self._col.delete_one({"_id": oid}).deleted_count > 0

    @_store_call
    def delete_rule_by_key(self, sector_id: int, group_key: str) -> bool:
        res = self._col.delete_one({"sectorId": int(sector_id), "equipmentGroupKey": group_key})
        return res.deleted_count > 0

    @_store_call
    def delete_sector_rules(self, sector_id: int) -> int:
        return int(self._col.delete_many({"sectorId": int(sector_id)}).deleted_count)


class MongoAlertStore:
    def __init__(self, mongo: MongoManager):
        self._mongo = mongo

    @property
    def _col(self):
        return self._mongo.collections().mel_alerts

    @_store_call
    def list_alerts(self, active_only: bool = True) -> List[MelAlert]:
        q = {"status": ALERT_ACTIVE} if active_only else {}
        return [MelAlert.from_doc(d) for d in self._col.find(q).sort("createdAt", DESCENDING)]

    @_store_call
    def find_active_alert(self, sector_id: int, group_key: str) -> Optional[MelAlert]:
        doc = self._col.find_one(
            {"sectorId": int(sector_id), "equipmentGroupKey": group_key, "status": ALERT_ACTIVE},
            sort=[("createdAt", DESCENDING)],
        )
        return MelAlert.from_doc(doc) if doc else None

    @_store_call
    def create_alert(self, rule: SectorMelRule, sector_name: str, counts: AlertCounts, now: datetime) -> MelAlert:
        doc = {
            "sectorId": rule.sector_id,
            "sectorName": sector_name,
            "equipmentGroupKey": rule.equipment_group_key,
            "equipmentGroupName": rule.equipment_group_name,
            "sectorMelId": rule.id or None,
            "currentAvailable": counts.current_available,
            "minimumQuantity": counts.minimum_quantity,
            "totalInSector": counts.total_in_sector,
            "unavailableCount": counts.unavailable_count,
            "status": ALERT_ACTIVE,
            "createdAt": now,
            "updatedAt": now,
            "resolvedAt": None,
        }
        res = self._col.insert_one(doc)
        doc["_id"] = res.inserted_id
        return MelAlert.from_doc(doc)

    @_store_call
    def update_alert_counts(self, alert_id: str, counts: AlertCounts, now: datetime) -> bool:
        oid = _oid(alert_id)
        if oid is None:
            return False
        res = self._col.update_one(
            {"_id": oid, "status": ALERT_ACTIVE},
            {
                "$set": {
                    "currentAvailable": counts.current_available,
                    "minimumQuantity": counts.minimum_quantity,
                    "totalInSector": counts.total_in_sector,
                    "unavailableCount": counts.unavailable_count,
                    "updatedAt": now,
                }
            },
        )
        return res.modified_count > 0

    @_store_call
    def resolve_alert(self, alert_id: str, now: datetime) -> bool:
        oid = _oid(alert_id)
        if oid is None:
            return False
        res = self._col.update_one(
            {"_id": oid, "status": ALERT_ACTIVE},
            {"$set": {"status": ALERT_RESOLVED, "resolvedAt": now, "updatedAt": now}},
        )
        return res.modified_count > 0


class MongoSectorMappingStore:
    def __init__(self, mongo: MongoManager):
        self._mongo = mongo

    @property
    def _col(self):
        return self._mongo.collections().sector_mappings

    @_store_call
    def list_mappings(self, active_only: bool = True) -> List[SectorMapping]:
        q = {"active": True} if active_only else {}
        return [SectorMapping.from_doc(d) for d in self._col.find(q).sort("sectorId", 1)]

    @_store_call
    def upsert_mapping(self, mapping: SectorMapping, now: datetime) -> SectorMapping:
        doc = self._col.find_one_and_update(
            {"sectorId": mapping.sector_id},
            {
                "$set": {
                    "systemSectorName": mapping.system_sector_name,
                    "effortSectorName": mapping.effort_sector_name,
                    "effortSectorId": mapping.effort_sector_id,
                    "active": mapping.active,
                    "updatedAt": now,
                },
                "$setOnInsert": {"createdAt": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return SectorMapping.from_doc(doc)

    @_store_call
    def delete_mapping(self, sector_id: int) -> bool:
        return self._col.delete_one({"sectorId": int(sector_id)}).deleted_count > 0
