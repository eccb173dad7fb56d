"""Effort API client (equipment registry and work-order listings).

Responsibilities:
- HTTP requests with the X-API-KEY header
- Tolerant unwrapping of list / {"Itens": [...]} / {"data": [...]} payloads
- Page iteration until the provider reports the last page
- Logging all API calls

Does NOT know about MEL rules; callers normalize the raw dicts.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

EQUIPMENT_PATH = "/api/pbi/v1/equipamentos"
OS_ANALYTIC_PATH = "/api/pbi/v1/listagem_analitica_das_os"
OS_SUMMARIZED_PATH = "/api/pbi/v1/listagem_analitica_das_os_resumida"

MAX_PAGES = 50


class EffortApiError(Exception):
    """Upstream request failed (transport error, timeout or HTTP status)."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"{path}: {message}")


def extract_items(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, list):
        return [p for p in payload if isinstance(p, dict)]
    if isinstance(payload, dict):
        for key in ("Itens", "data", "items"):
            items = payload.get(key)
            if isinstance(items, list):
                return [p for p in items if isinstance(p, dict)]
    return []


def _is_last_page(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return True
    last = payload.get("UltimaPagina")
    if last is None:
        return True
    return bool(last)


class EffortClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_sec: float = 45.0,
        os_period: str = "AnoCorrente",
        page_size: int = 50000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"X-API-KEY": api_key} if api_key else {}
        self.os_period = os_period
        self.page_size = page_size
        self._timeout = float(timeout_sec)
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=self._timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: Dict[str, Any], timeout: Optional[float]) -> Any:
        try:
            resp = await self._client.get(path, params=params, timeout=timeout or self._timeout)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            raise EffortApiError(path, f"HTTP {exc.response.status_code}") from exc
        except httpx.TimeoutException as exc:
            raise EffortApiError(path, "timeout") from exc
        except httpx.HTTPError as exc:
            raise EffortApiError(path, f"transport error: {exc}") from exc
        except ValueError as exc:
            raise EffortApiError(path, "invalid JSON body") from exc

    async def _get_all_pages(self, path: str, params: Dict[str, Any], timeout: Optional[float]) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        for page in range(MAX_PAGES):
            payload = await self._get(path, {**params, "pagina": page, "qtdPorPagina": self.page_size}, timeout)
            chunk = extract_items(payload)
            items.extend(chunk)
            if not chunk or _is_last_page(payload):
                break
        else:
            logger.warning("%s: stopped after %s pages", path, MAX_PAGES)
        logger.info("Effort GET %s -> %s items", path, len(items))
        return items

    async def fetch_equipment(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        params = {"apenasAtivos": "true", "incluirComponentes": "false", "incluirCustoSubstituicao": "false"}
        payload = await self._get(EQUIPMENT_PATH, params, timeout)
        items = extract_items(payload)
        logger.info("Effort GET %s -> %s items", EQUIPMENT_PATH, len(items))
        return items

    async def fetch_os_analytic(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """Complete analytic listing; carries Tag and EquipamentoId."""
        params = {"tipoManutencao": "Todos", "periodo": self.os_period}
        return await self._get_all_pages(OS_ANALYTIC_PATH, params, timeout)

    async def fetch_os_summarized(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """Summarized listing; has no unit identity fields."""
        params = {"tipoManutencao": "Todos", "periodo": self.os_period}
        return await self._get_all_pages(OS_SUMMARIZED_PATH, params, timeout)
