"""Snapshot records and persisted MEL entities.

Upstream payloads use inconsistent field names (``Status`` vs ``SituacaoDaOS``,
``Tag`` vs ``tag``); they are normalized here, once, on ingestion. Nothing past
this module reads raw upstream dicts.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple, Union

from src.api.errors import MalformedGroupDefinitionError

_NUMERIC_ID = re.compile(r"-?[0-9]+")

logger = logging.getLogger(__name__)


EquipmentId = Union[int, str]

ALERT_ACTIVE = "ativo"
ALERT_RESOLVED = "resolvido"


def _text(v: Any) -> str:
    if v is None:
        return ""
    return str(v).strip()


def coerce_equipment_id(v: Any) -> Optional[EquipmentId]:
    """Coerce an equipment identifier to int when it is numeric (or a numeric string)."""
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        return int(v) if v.is_integer() else None
    s = str(v).strip()
    if not s:
        return None
    if _NUMERIC_ID.fullmatch(s):
        return int(s)
    return s


def normalize_tag(v: Any) -> str:
    return _text(v).upper()


class SourceKind(str, Enum):
    """Which service-order feed a snapshot came from."""

    analytic = "analytic"
    summarized = "summarized"


@dataclass(frozen=True)
class EquipmentRecord:
    """One physical equipment unit as reported by the upstream provider."""

    id: Optional[EquipmentId]
    tag: str = ""
    name: str = ""
    model: str = ""
    manufacturer: str = ""
    sector: str = ""
    status: str = ""

    @classmethod
    def from_effort(cls, raw: Dict[str, Any]) -> "EquipmentRecord":
        return cls(
            id=coerce_equipment_id(raw.get("Id")),
            tag=_text(raw.get("Tag") or raw.get("tag")),
            name=_text(raw.get("Equipamento")),
            model=_text(raw.get("Modelo")),
            manufacturer=_text(raw.get("Fabricante")),
            sector=_text(raw.get("Setor")),
            status=_text(raw.get("Status") or raw.get("Situacao")),
        )

    @property
    def descriptor(self) -> str:
        """Name, model and manufacturer joined for pattern matching."""
        return f"{self.name} {self.model} {self.manufacturer}".lower()


@dataclass(frozen=True)
class ServiceOrder:
    """A work order snapshot.

    Orders from the summarized feed never carry tag or equipment id, even if
    the raw payload happened to include them.
    """

    id: Optional[EquipmentId]
    status: str
    source: SourceKind
    tag: str = ""
    equipment_id: Optional[EquipmentId] = None
    equipment_name: str = ""

    @classmethod
    def from_effort(cls, raw: Dict[str, Any], source: SourceKind) -> "ServiceOrder":
        tag = ""
        equipment_id = None
        if source is SourceKind.analytic:
            tag = normalize_tag(raw.get("Tag") or raw.get("tag"))
            equipment_id = coerce_equipment_id(raw.get("EquipamentoId"))
        return cls(
            id=coerce_equipment_id(raw.get("CodigoSerialOS")) or _text(raw.get("OS")) or None,
            status=_text(raw.get("Status") or raw.get("SituacaoDaOS")).lower(),
            source=source,
            tag=tag,
            equipment_id=equipment_id,
            equipment_name=_text(raw.get("Equipamento")),
        )

    @property
    def has_identity(self) -> bool:
        return bool(self.tag) or self.equipment_id is not None


# ---- group definitions -------------------------------------------------


@dataclass(frozen=True)
class PatternGroup:
    """Group recognized from free text by case-insensitive substrings."""

    patterns: Tuple[str, ...]


@dataclass(frozen=True)
class CustomGroup:
    """Group defined by an administrator-curated set of equipment ids."""

    equipment_ids: FrozenSet[EquipmentId]


GroupDefinition = Union[PatternGroup, CustomGroup]


def _split_patterns(text: str) -> Tuple[str, ...]:
    parts = text.replace("|", ",").replace(";", ",").split(",")
    return tuple(p.strip().lower() for p in parts if p.strip())


def parse_group_definition(payload: Any) -> Optional[GroupDefinition]:
    """Parse a stored ``groupPattern`` payload.

    Accepted forms:
      - ``None`` / empty string: no override, the built-in catalog applies.
      - ``{"type": "custom", "equipmentIds": [...]}`` (dict or JSON string).
      - ``{"type": "pattern", "patterns": [...]}`` (dict or JSON string).
      - a plain pattern string, comma/pipe/semicolon separated.

    Raises MalformedGroupDefinitionError for anything else.
    """
    if payload is None:
        return None
    if isinstance(payload, str):
        text = payload.strip()
        if not text:
            return None
        if text[0] in "{[":
            try:
                payload = json.loads(text)
            except ValueError as exc:
                raise MalformedGroupDefinitionError(payload, f"invalid json: {exc}") from exc
        else:
            patterns = _split_patterns(text)
            if not patterns:
                return None
            return PatternGroup(patterns=patterns)

    if not isinstance(payload, dict):
        raise MalformedGroupDefinitionError(payload, "expected an object")

    kind = payload.get("type")
    if kind == "custom":
        ids = payload.get("equipmentIds")
        if not isinstance(ids, list) or not ids:
            raise MalformedGroupDefinitionError(payload, "equipmentIds must be a non-empty list")
        coerced = [coerce_equipment_id(i) for i in ids]
        if any(i is None for i in coerced):
            raise MalformedGroupDefinitionError(payload, "equipmentIds contains empty values")
        return CustomGroup(equipment_ids=frozenset(coerced))
    if kind == "pattern":
        pats = payload.get("patterns")
        if not isinstance(pats, list) or not all(isinstance(p, str) for p in pats):
            raise MalformedGroupDefinitionError(payload, "patterns must be a list of strings")
        cleaned = tuple(p.strip().lower() for p in pats if p.strip())
        if not cleaned:
            raise MalformedGroupDefinitionError(payload, "patterns is empty")
        return PatternGroup(patterns=cleaned)

    raise MalformedGroupDefinitionError(payload, f"unknown type {kind!r}")


def serialize_custom_group(equipment_ids: Iterable[Any]) -> str:
    return json.dumps({"type": "custom", "equipmentIds": list(equipment_ids)})


# ---- persisted entities ------------------------------------------------


RuleKey = Tuple[int, str]


@dataclass(frozen=True)
class SectorMelRule:
    """Configured minimum for one (sector, equipment group)."""

    id: str
    sector_id: int
    sector_name: str
    equipment_group_key: str
    equipment_group_name: str
    minimum_quantity: int
    active: bool = True
    group_definition: Optional[GroupDefinition] = None
    group_pattern: Optional[str] = None
    justification: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> RuleKey:
        return (self.sector_id, self.equipment_group_key)

    @property
    def is_custom(self) -> bool:
        return isinstance(self.group_definition, CustomGroup)

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "SectorMelRule":
        """Build a rule from a stored document, validating its group definition.

        A malformed definition is logged and dropped; the rule then falls back to
        pattern-based grouping through the built-in catalog.
        """
        raw_pattern = doc.get("groupPattern")
        try:
            definition = parse_group_definition(raw_pattern)
        except MalformedGroupDefinitionError as exc:
            logger.warning(
                "Rule %s (sectorId=%s group=%s) has a malformed group definition, using catalog patterns: %s",
                doc.get("_id"),
                doc.get("sectorId"),
                doc.get("equipmentGroupKey"),
                exc.reason,
            )
            definition = None

        return cls(
            id=str(doc.get("_id") or ""),
            sector_id=int(doc["sectorId"]),
            sector_name=doc.get("sectorName") or "",
            equipment_group_key=doc["equipmentGroupKey"],
            equipment_group_name=doc.get("equipmentGroupName") or doc["equipmentGroupKey"],
            minimum_quantity=max(0, int(doc.get("minimumQuantity", 0))),
            active=bool(doc.get("active", True)),
            group_definition=definition,
            group_pattern=raw_pattern if isinstance(raw_pattern, str) else None,
            justification=doc.get("justification"),
            created_at=doc.get("createdAt"),
            updated_at=doc.get("updatedAt"),
        )


@dataclass
class MelAlert:
    """Persisted alert derived from a violated rule."""

    id: str
    sector_id: int
    sector_name: str
    equipment_group_key: str
    equipment_group_name: str
    rule_id: Optional[str]
    current_available: int
    minimum_quantity: int
    total_in_sector: int
    unavailable_count: int
    status: str = ALERT_ACTIVE
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    @property
    def key(self) -> RuleKey:
        return (self.sector_id, self.equipment_group_key)

    @property
    def is_active(self) -> bool:
        return self.status == ALERT_ACTIVE

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "MelAlert":
        return cls(
            id=str(doc.get("_id") or ""),
            sector_id=int(doc["sectorId"]),
            sector_name=doc.get("sectorName") or "",
            equipment_group_key=doc["equipmentGroupKey"],
            equipment_group_name=doc.get("equipmentGroupName") or doc["equipmentGroupKey"],
            rule_id=doc.get("sectorMelId"),
            current_available=int(doc.get("currentAvailable", 0)),
            minimum_quantity=int(doc.get("minimumQuantity", 0)),
            total_in_sector=int(doc.get("totalInSector", 0)),
            unavailable_count=int(doc.get("unavailableCount", 0)),
            status=doc.get("status", ALERT_ACTIVE),
            created_at=doc.get("createdAt"),
            updated_at=doc.get("updatedAt"),
            resolved_at=doc.get("resolvedAt"),
        )


@dataclass(frozen=True)
class SectorMapping:
    """Administrative sector id mapped to the upstream sector name."""

    sector_id: int
    system_sector_name: Optional[str] = None
    effort_sector_name: Optional[str] = None
    effort_sector_id: Optional[int] = None
    active: bool = True

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "SectorMapping":
        effort_id = doc.get("effortSectorId")
        return cls(
            sector_id=int(doc["sectorId"]),
            system_sector_name=doc.get("systemSectorName"),
            effort_sector_name=doc.get("effortSectorName"),
            effort_sector_id=int(effort_id) if effort_id is not None else None,
            active=bool(doc.get("active", True)),
        )


@dataclass(frozen=True)
class Snapshot:
    """Equipment + service orders fetched once per sweep and shared read-only."""

    equipment: Tuple[EquipmentRecord, ...]
    service_orders: Tuple[ServiceOrder, ...]
    source: SourceKind
    warnings: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def linking_degraded(self) -> bool:
        """True when orders cannot be linked to units (no tag/id available)."""
        return self.source is SourceKind.summarized
