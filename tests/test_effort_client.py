from __future__ import annotations

import httpx
import pytest

from src.api.clients.effort import (
    EQUIPMENT_PATH,
    OS_ANALYTIC_PATH,
    EffortApiError,
    EffortClient,
    extract_items,
)


def test_extract_items_accepts_known_envelopes():
    assert extract_items([{"Id": 1}, "noise"]) == [{"Id": 1}]
    assert extract_items({"Itens": [{"Id": 2}]}) == [{"Id": 2}]
    assert extract_items({"data": [{"Id": 3}]}) == [{"Id": 3}]
    assert extract_items({"unexpected": True}) == []
    assert extract_items(None) == []


@pytest.mark.anyio
async def test_equipment_request_sends_api_key_and_filters():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        seen["key"] = request.headers.get("X-API-KEY")
        return httpx.Response(200, json=[{"Id": 1, "Equipamento": "Monitor"}])

    client = EffortClient("http://effort.test/", api_key="k-123", transport=httpx.MockTransport(handler))
    try:
        items = await client.fetch_equipment()
    finally:
        await client.aclose()

    assert items == [{"Id": 1, "Equipamento": "Monitor"}]
    assert seen["path"] == EQUIPMENT_PATH
    assert seen["key"] == "k-123"
    assert seen["params"]["apenasAtivos"] == "true"


@pytest.mark.anyio
async def test_service_orders_are_paged_until_last_page():
    pages = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == OS_ANALYTIC_PATH
        page = int(request.url.params["pagina"])
        pages.append(page)
        assert request.url.params["periodo"] == "AnoCorrente"
        return httpx.Response(200, json={"Itens": [{"CodigoSerialOS": page}], "UltimaPagina": page == 2})

    client = EffortClient("http://effort.test", transport=httpx.MockTransport(handler))
    try:
        items = await client.fetch_os_analytic()
    finally:
        await client.aclose()

    assert pages == [0, 1, 2]
    assert [i["CodigoSerialOS"] for i in items] == [0, 1, 2]


@pytest.mark.anyio
async def test_http_errors_become_effort_api_errors():
    client = EffortClient("http://effort.test", transport=httpx.MockTransport(lambda r: httpx.Response(503)))
    try:
        with pytest.raises(EffortApiError) as exc_info:
            await client.fetch_os_analytic()
    finally:
        await client.aclose()
    assert exc_info.value.path == OS_ANALYTIC_PATH
