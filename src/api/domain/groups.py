"""Equipment group catalog and first-match classification."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from src.api.domain.records import CustomGroup, EquipmentRecord, PatternGroup


@dataclass(frozen=True)
class EquipmentGroup:
    """A semantic equipment category recognized by name patterns."""

    key: str
    name: str
    patterns: Tuple[str, ...]

    def matches(self, record: EquipmentRecord) -> bool:
        text = record.descriptor
        return any(p.lower() in text for p in self.patterns)


DEFAULT_EQUIPMENT_GROUPS: Tuple[EquipmentGroup, ...] = (
    EquipmentGroup(
        "monitor",
        "Monitor Multiparâmetro",
        ("monitor", "multiparâmetro", "multiparameter", "sinais vitais", "ecg", "spo2"),
    ),
    EquipmentGroup("ventilador", "Ventilador Pulmonar", ("ventilador", "ventilator", "respirator", "respirador")),
    EquipmentGroup("desfibrilador", "Desfibrilador", ("desfibrilador", "defibrillator")),
    EquipmentGroup("bomba-infusao", "Bomba de Infusão", ("bomba", "infusão", "infusion pump", "bomba de infusão")),
    EquipmentGroup("anestesia", "Aparelho de Anestesia", ("anestesia", "anesthesia", "aparelho de anestesia")),
    EquipmentGroup("mesa-cirurgica", "Mesa Cirúrgica", ("mesa cirúrgica", "surgical table", "mesa operatória")),
    EquipmentGroup(
        "foco-cirurgico",
        "Foco Cirúrgico",
        ("foco", "surgical light", "lâmpada cirúrgica", "iluminação cirúrgica"),
    ),
    EquipmentGroup(
        "bisturi-eletronico",
        "Bisturi Eletrônico",
        ("bisturi", "electrosurgical", "electrocautery", "bisturi elétrico"),
    ),
    EquipmentGroup(
        "aspirador-cirurgico",
        "Aspirador Cirúrgico",
        ("aspirador cirúrgico", "surgical aspirator", "aspirador de sucção"),
    ),
    EquipmentGroup("oximetro", "Oxímetro de Pulso", ("oxímetro", "pulse oximeter", "oximetro de pulso")),
    EquipmentGroup("raio-x", "Raio-X", ("raio-x", "x-ray", "radiografia", "fluoroscopia")),
    EquipmentGroup("ultrassom", "Ultrassom", ("ultrassom", "ultrasound", "ecografia")),
    EquipmentGroup("eletrocardiografo", "Eletrocardiógrafo", ("eletrocardi", "ecg", "eletrocardiógrafo")),
)


def find_group(key: str, catalog: Sequence[EquipmentGroup] = DEFAULT_EQUIPMENT_GROUPS) -> Optional[EquipmentGroup]:
    for group in catalog:
        if group.key == key:
            return group
    return None


def classify_equipment(
    record: EquipmentRecord,
    catalog: Sequence[EquipmentGroup] = DEFAULT_EQUIPMENT_GROUPS,
) -> Optional[EquipmentGroup]:
    """Return the first catalog group with a pattern found in the record's descriptor.

    First match wins: overlapping catalogs resolve by catalog order, not by the
    most specific pattern.
    """
    for group in catalog:
        if group.matches(record):
            return group
    return None


def is_custom_member(record: EquipmentRecord, group: CustomGroup) -> bool:
    return record.id is not None and record.id in group.equipment_ids


def catalog_with_override(
    key: str,
    name: str,
    definition: PatternGroup,
    catalog: Sequence[EquipmentGroup] = DEFAULT_EQUIPMENT_GROUPS,
) -> List[EquipmentGroup]:
    """Catalog where the group ``key`` uses a rule's own patterns.

    The overridden group keeps its catalog position; an unknown key is appended.
    """
    replacement = EquipmentGroup(key=key, name=name, patterns=definition.patterns)
    out: List[EquipmentGroup] = []
    replaced = False
    for group in catalog:
        if group.key == key:
            out.append(replacement)
            replaced = True
        else:
            out.append(group)
    if not replaced:
        out.append(replacement)
    return out


def group_equipment(
    records: Iterable[EquipmentRecord],
    catalog: Sequence[EquipmentGroup] = DEFAULT_EQUIPMENT_GROUPS,
) -> Dict[str, Tuple[EquipmentGroup, List[EquipmentRecord]]]:
    """Bucket records by classified group key; unclassified records are dropped."""
    buckets: Dict[str, Tuple[EquipmentGroup, List[EquipmentRecord]]] = {}
    for record in records:
        group = classify_equipment(record, catalog)
        if group is None:
            continue
        if group.key not in buckets:
            buckets[group.key] = (group, [])
        buckets[group.key][1].append(record)
    return buckets


def groups_with_counts(
    records: Iterable[EquipmentRecord],
    catalog: Sequence[EquipmentGroup] = DEFAULT_EQUIPMENT_GROUPS,
) -> List[Tuple[EquipmentGroup, List[EquipmentRecord]]]:
    """Grouped records, largest group first, then by display name."""
    buckets = list(group_equipment(records, catalog).values())
    buckets.sort(key=lambda item: (-len(item[1]), item[0].name))
    return buckets
