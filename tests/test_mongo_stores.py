from __future__ import annotations

import os

import pytest
from bson import ObjectId

from src.api.db.mongo import MongoManager
from src.api.db.stores import MongoAlertStore, MongoRuleStore, MongoSectorMappingStore
from src.api.domain.reconcile import AlertCounts
from src.api.domain.records import ALERT_RESOLVED, SectorMapping
from src.api.schemas.common import utc_now

MONGO_URI = os.getenv("MEL_IT_MONGO_URI")

pytestmark = pytest.mark.skipif(not MONGO_URI, reason="MEL_IT_MONGO_URI not set; Mongo integration tests skipped")


@pytest.fixture
def mongo():
    manager = MongoManager(MONGO_URI, db_name="mel_it_test")
    manager.connect_app()
    manager.app_db().client.drop_database("mel_it_test")
    manager.init_indexes()
    yield manager
    manager.app_db().client.drop_database("mel_it_test")
    manager.close()


def test_rule_upsert_is_keyed_and_keeps_stored_pattern(mongo):
    store = MongoRuleStore(mongo)
    now = utc_now()

    first = store.upsert_rule(10, "UTI 1", "monitor", "Monitor", 2, "monitor | ecg", None, now)
    second = store.upsert_rule(10, "UTI 1", "monitor", "Monitor", 3, None, "ajuste", now)

    assert first.id == second.id
    assert second.minimum_quantity == 3
    assert second.group_pattern == "monitor | ecg"
    assert [r.id for r in store.list_rules(sector_id=10)] == [first.id]

    assert store.get_rule("not-an-object-id") is None
    assert store.delete_rule_by_key(10, "monitor") is True
    assert store.get_rule_by_key(10, "monitor") is None


def test_alert_create_update_resolve(mongo):
    rules = MongoRuleStore(mongo)
    alerts = MongoAlertStore(mongo)
    now = utc_now()
    rule = rules.upsert_rule(10, "UTI 1", "ventilador", "Ventilador", 2, None, None, now)

    created = alerts.create_alert(rule, "UTI 1", AlertCounts(1, 3, 2, 2), now)
    assert ObjectId.is_valid(created.id)
    assert alerts.find_active_alert(10, "ventilador").id == created.id

    assert alerts.update_alert_counts(created.id, AlertCounts(0, 3, 3, 2), now) is True
    assert alerts.find_active_alert(10, "ventilador").current_available == 0

    assert alerts.resolve_alert(created.id, now) is True
    assert alerts.resolve_alert(created.id, now) is False
    assert alerts.find_active_alert(10, "ventilador") is None
    history = alerts.list_alerts(active_only=False)
    assert [a.status for a in history] == [ALERT_RESOLVED]


def test_sector_mapping_upsert_and_delete(mongo):
    store = MongoSectorMappingStore(mongo)
    now = utc_now()
    store.upsert_mapping(SectorMapping(sector_id=10, system_sector_name="UTI Adulto", effort_sector_name="UTI 1"), now)
    store.upsert_mapping(SectorMapping(sector_id=10, system_sector_name="UTI Adulto", effort_sector_name="UTI-1"), now)

    mappings = store.list_mappings()
    assert [(m.sector_id, m.effort_sector_name) for m in mappings] == [(10, "UTI-1")]
    assert store.delete_mapping(10) is True
    assert store.delete_mapping(10) is False
