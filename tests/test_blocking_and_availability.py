from __future__ import annotations

from src.api.domain.availability import compute_availability, compute_rule_availability, violates_minimum
from src.api.domain.blocking import (
    REASON_SERVICE_ORDER,
    REASON_STATUS,
    BlockingIndex,
    has_blocking_order,
    unavailable_reason,
)
from src.api.domain.records import (
    CustomGroup,
    EquipmentRecord,
    PatternGroup,
    SectorMelRule,
    ServiceOrder,
    SourceKind,
)
from tests.payloads import equipment, service_order


def _unit(id=1, tag="HSJ-001", name="Monitor Multiparametrico", model="MX450", sector="UTI 1", status="Ativo"):
    return EquipmentRecord(id=id, tag=tag, name=name, model=model, manufacturer="Philips", sector=sector, status=status)


def _os(status="Aberta", tag=None, equipment_id=None, name="", model="", source=SourceKind.analytic):
    return ServiceOrder.from_effort(service_order(status, tag, equipment_id, name, model), source)


def _rule(group_key="monitor", minimum=1, sector_name="UTI 1", definition=None, active=True):
    return SectorMelRule(
        id="r1",
        sector_id=10,
        sector_name=sector_name,
        equipment_group_key=group_key,
        equipment_group_name=group_key,
        minimum_quantity=minimum,
        active=active,
        group_definition=definition,
    )


# ---- blocking ------------------------------------------------------------------


def test_tag_match_blocks_regardless_of_name_and_model():
    order = _os(tag=" hsj-001 ", name="Bomba de infusao", model="Outro")
    assert has_blocking_order(_unit(), [order])


def test_id_match_blocks_with_numeric_string_coercion():
    assert has_blocking_order(_unit(id=42, tag=""), [_os(equipment_id="42")])


def test_id_mismatch_rules_the_order_out():
    assert not has_blocking_order(_unit(id=42, tag=""), [_os(equipment_id=43)])


def test_order_without_identity_never_blocks_even_with_same_name_and_model():
    order = _os(name="Monitor Multiparametrico", model="MX450")
    assert not order.has_identity
    assert not has_blocking_order(_unit(), [order])


def test_summarized_orders_drop_identity_fields():
    order = _os(tag="HSJ-001", equipment_id=1, source=SourceKind.summarized)
    assert order.tag == ""
    assert order.equipment_id is None
    assert not has_blocking_order(_unit(), [order])


def test_only_open_or_in_progress_orders_block():
    unit = _unit()
    assert has_blocking_order(unit, [_os(status="EM_ANDAMENTO", tag="HSJ-001")])
    assert not has_blocking_order(unit, [_os(status="Concluida", tag="HSJ-001")])
    assert not has_blocking_order(unit, [_os(status="Cancelada", tag="HSJ-001")])


def test_status_counts_once_even_with_blocking_order():
    unit = _unit(status="Sucateado")
    assert unavailable_reason(unit, [_os(tag="HSJ-001")]) == REASON_STATUS


def test_blocking_index_agrees_with_linear_scan():
    units = [_unit(id=1, tag="A"), _unit(id=2, tag=""), _unit(id=3, tag="C"), _unit(id=None, tag="")]
    orders = [_os(tag="a"), _os(equipment_id=2), _os(equipment_id=99, tag="Z"), _os(name="Monitor")]
    index = BlockingIndex(orders)
    for unit in units:
        assert (index.blocking_order(unit) is not None) == has_blocking_order(unit, orders)
    assert index.unavailable_reason(units[0]) == REASON_SERVICE_ORDER
    assert index.unavailable_reason(units[2]) is None


# ---- availability -------------------------------------------------------------


def _snapshot(*raws):
    return [EquipmentRecord.from_effort(r) for r in raws]


def test_scenario_a_no_orders_everything_available():
    records = _snapshot(equipment(1, "Monitor Multiparametrico", "UTI 1", tag="HSJ-001", status="ativo"))
    result = compute_rule_availability(_rule(), records, BlockingIndex([]), "UTI 1")
    assert (result.total, result.unavailable, result.available) == (1, 0, 1)
    assert not violates_minimum(_rule(), result)


def test_scenario_b_open_order_by_tag_blocks():
    records = _snapshot(equipment(1, "Monitor Multiparametrico", "UTI 1", tag="HSJ-001", status="ativo"))
    index = BlockingIndex([_os(status="aberta", tag="HSJ-001")])
    result = compute_rule_availability(_rule(), records, index, "UTI 1")
    assert (result.total, result.unavailable, result.available) == (1, 1, 0)
    assert violates_minimum(_rule(), result)


def test_scenario_d_name_only_order_does_not_block():
    records = _snapshot(
        equipment(1, "Monitor Multiparametrico", "UTI 1", tag="HSJ-001", model="MX450", status="ativo")
    )
    index = BlockingIndex([_os(name="Monitor Multiparametrico", model="MX450")])
    result = compute_rule_availability(_rule(), records, index, "UTI 1")
    assert result.available == 1


def test_counts_are_consistent_and_non_negative():
    records = _snapshot(
        equipment(1, "Monitor", "UTI 1", tag="A"),
        equipment(2, "Monitor", "UTI 1", tag="B", status="Baixado"),
        equipment(3, "Monitor", "UTI 1", tag="C", status="Emprestado"),
        equipment(4, "Monitor", "UTI 1", tag="D"),
        equipment(5, "Monitor", "UTI 2 Pediatrica", tag="E"),
        equipment(6, "Ventilador", "UTI 1", tag="F"),
    )
    index = BlockingIndex([_os(tag="B"), _os(tag="D"), _os(status="Concluida", tag="A")])
    result = compute_availability(records, index, "monitor", "UTI 1")
    assert result.total == 4
    assert result.unavailable == 3
    assert result.available == result.total - result.unavailable == 1


def test_no_matching_equipment_is_no_data():
    records = _snapshot(equipment(1, "Ventilador", "UTI 1"))
    assert compute_availability(records, BlockingIndex([]), "monitor", "UTI 1") is None
    # Treated as zero available when the minimum is positive.
    assert violates_minimum(_rule(minimum=1), None)
    assert not violates_minimum(_rule(minimum=0), None)


def test_custom_group_spans_sectors_and_ignores_patterns():
    records = _snapshot(
        equipment(1, "Cadeira de rodas", "Almoxarifado"),
        equipment(2, "Monitor", "UTI 1"),
        equipment(3, "Monitor", "UTI 1"),
    )
    rule = _rule(definition=CustomGroup(equipment_ids=frozenset({1, 3})))
    result = compute_rule_availability(rule, records, BlockingIndex([]), "UTI 1")
    assert sorted(u.record.id for u in result.units) == [1, 3]


def test_custom_group_membership_unaffected_by_catalog_changes():
    records = _snapshot(equipment(1, "Cadeira", "UTI 1"), equipment(2, "Monitor", "UTI 1"))
    rule = _rule(definition=CustomGroup(equipment_ids=frozenset({1})))
    other_catalog = ()
    a = compute_rule_availability(rule, records, BlockingIndex([]), "UTI 1")
    b = compute_rule_availability(rule, records, BlockingIndex([]), "UTI 1", catalog=other_catalog)
    assert a == b
    assert a.total == 1


def test_pattern_definition_overrides_catalog_for_its_key():
    records = _snapshot(equipment(1, "Monitor Dixtal", "UTI 1"), equipment(2, "Philips MX450", "UTI 1"))
    rule = _rule(definition=PatternGroup(patterns=("philips mx",)))
    result = compute_rule_availability(rule, records, BlockingIndex([]), "UTI 1")
    assert [u.record.id for u in result.units] == [2]


def test_inactive_rule_never_violates():
    assert not violates_minimum(_rule(active=False, minimum=5), None)
