"""Sector name matching between administrative sectors and upstream free text.

Matching policy (a record matches if any rule succeeds):

1. Targets shorter than 3 characters (after normalization) only match exactly.
2. Exact equality of normalized names.
3. Containment either way; when the record's sector is the contained string it
   must be at least 3 characters long.
4. Targets with two or more words match when at least two of their words
   (3+ characters each) occur in the record's sector name.

Containment can match several sectors whose names prefix each other
("UTI" also matches "UTI 2"); all matches are returned, without tie-breaking.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Iterable, List, Optional, Tuple

from src.api.domain.records import EquipmentRecord, SectorMapping

logger = logging.getLogger(__name__)

MIN_ANCHOR_LEN = 3
MIN_WORD_LEN = 3
MIN_WORD_HITS = 2

_WS = re.compile(r"\s+")


def normalize_sector_name(name: Optional[str]) -> str:
    """Case-fold, strip diacritics and collapse whitespace."""
    if not name:
        return ""
    decomposed = unicodedata.normalize("NFD", name.casefold())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _WS.sub(" ", stripped).strip()


class SectorNameMatcher:
    """Matches records' free-text sector names against one target sector."""

    def __init__(self, target: str):
        self.target = target
        self.normalized = normalize_sector_name(target)
        self._words = [w for w in self.normalized.split(" ") if w]
        self._exact_only = len(self.normalized) < MIN_ANCHOR_LEN

    def matches(self, sector: Optional[str]) -> bool:
        candidate = normalize_sector_name(sector)
        target = self.normalized

        if self._exact_only:
            return candidate == target
        if candidate == target:
            return True
        if target in candidate:
            return True
        if len(candidate) >= MIN_ANCHOR_LEN and candidate in target:
            return True
        if len(self._words) >= 2:
            hits = sum(1 for w in self._words if len(w) >= MIN_WORD_LEN and w in candidate)
            if hits >= MIN_WORD_HITS:
                return True
        return False

    def filter(self, records: Iterable[EquipmentRecord]) -> List[EquipmentRecord]:
        matched = [r for r in records if self.matches(r.sector)]
        if not matched:
            logger.debug("No equipment matched sector %r (normalized %r)", self.target, self.normalized)
        return matched


def filter_equipment_by_sector(records: Iterable[EquipmentRecord], sector_name: str) -> List[EquipmentRecord]:
    return SectorNameMatcher(sector_name).filter(records)


def resolve_sector_names(
    sector_id: int,
    mapping: Optional[SectorMapping],
    rule_sector_name: Optional[str] = None,
) -> Tuple[str, str]:
    """Return (name used to match upstream records, display name).

    The upstream sector name from the mapping is preferred for matching since it
    is the exact text the provider reports; the rule's stored name wins for
    display.
    """
    fallback = f"Setor {sector_id}"
    m_effort = mapping.effort_sector_name if mapping and mapping.active else None
    m_system = mapping.system_sector_name if mapping and mapping.active else None
    match_name = m_effort or rule_sector_name or m_system or fallback
    display_name = rule_sector_name or m_system or m_effort or fallback
    return match_name, display_name
