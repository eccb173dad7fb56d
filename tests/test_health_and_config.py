from __future__ import annotations

import httpx
import pytest

from src.api.config import load_config, sanitize_mongo_uri


@pytest.mark.anyio
async def test_root_health_ok(async_client: httpx.AsyncClient):
    res = await async_client.get("/")
    assert res.status_code == 200
    body = res.json()
    # HealthResponse: {status, message, timestamp}
    assert body.get("status") == "ok"
    assert "timestamp" in body


def test_sanitize_mongo_uri_masks_password():
    assert sanitize_mongo_uri("mongodb://app:s3cret@db:27017/mel") == "mongodb://app:***@db:27017/mel"
    assert sanitize_mongo_uri("mongodb://db:27017") == "mongodb://db:27017"


def test_load_config_defaults(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("BACKEND_MONGO_URI", "mongodb://localhost:27017")
    for name in (
        "MEL_DB_NAME",
        "EFFORT_BASE_URL",
        "EFFORT_API_KEY",
        "EFFORT_TIMEOUT_SEC",
        "EFFORT_OS_PERIOD",
        "EFFORT_PAGE_SIZE",
        "SECTOR_MAPPING_CACHE_TTL_SEC",
        "MEL_MAX_WORKERS",
        "MEL_RECALC_INTERVAL_SEC",
    ):
        monkeypatch.delenv(name, raising=False)

    cfg = load_config()
    assert cfg.mongo_db_name == "mel"
    assert cfg.effort_timeout_sec == 45
    assert cfg.effort_os_period == "AnoCorrente"
    assert cfg.sector_mapping_cache_ttl_sec == 300
    assert cfg.mel_max_workers == 4
    assert cfg.mel_recalc_interval_sec == 0
    assert cfg.effort_api_key is None


def test_load_config_clamps_values(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("BACKEND_MONGO_URI", "mongodb+srv://cluster.example.net")
    monkeypatch.setenv("EFFORT_TIMEOUT_SEC", "9999")
    monkeypatch.setenv("MEL_MAX_WORKERS", "0")
    monkeypatch.setenv("MEL_RECALC_INTERVAL_SEC", "5")
    monkeypatch.setenv("SECTOR_MAPPING_CACHE_TTL_SEC", "not-a-number")

    cfg = load_config()
    assert cfg.effort_timeout_sec == 300
    assert cfg.mel_max_workers == 1
    assert cfg.mel_recalc_interval_sec == 60
    assert cfg.sector_mapping_cache_ttl_sec == 300


@pytest.mark.parametrize("uri", [None, "postgres://db"])
def test_load_config_rejects_missing_or_invalid_uri(monkeypatch: pytest.MonkeyPatch, uri):
    if uri is None:
        monkeypatch.delenv("BACKEND_MONGO_URI", raising=False)
    else:
        monkeypatch.setenv("BACKEND_MONGO_URI", uri)
    with pytest.raises(RuntimeError):
        load_config()
