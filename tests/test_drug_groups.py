from datetime import date

from drug_groups import (
    batch_identity,
    batches_for_dispense,
    expiring_batches,
    group_key,
    identity_key,
    low_stock_groups,
    project_groups,
    select_dispense_order,
)
from drug_models import DrugBatch


def batch(id, generic, stock, brand=None, dosage=None, expiry=None, threshold=5, number=None):
    return DrugBatch(
        id=id, generic_name=generic, stock=stock, brand_name=brand, dosage=dosage,
        expiry_date=expiry, low_stock_threshold=threshold, batch_number=number,
    )


def test_identity_key_ignores_case_and_padding():
    assert identity_key("Metformin", "Glycomet", "500mg") == identity_key(" metformin", "GLYCOMET ", "500MG")
    assert identity_key("Metformin", None, "500mg") == identity_key("Metformin", "", "500mg")


def test_identity_key_does_not_collide_on_separator_text():
    # a plain "-DELIMITER-" join would map both of these to the same key
    assert identity_key("a-DELIMITER-b", "", "") != identity_key("a", "b", "")
    assert identity_key("x|1:y", None, None) != identity_key("x", "y", None)
    assert identity_key("a", "b:c", None) != identity_key("a", "b", ":c")


def test_project_groups_totals_and_order():
    batches = [
        batch("m2", "Metformin", 20, "Glycomet", "500mg", "2025-06-01", threshold=10),
        batch("a1", "Amlodipine", 50, "Amlong", "5mg", "2025-03-01"),
        batch("m1", "metformin", 30, "glycomet", "500MG", "2025-01-01", threshold=3),
        batch("m3", "Metformin", 15, None, "500mg", None),
        batch("m4", "Metformin", 1, None, "500mg", "2024-07-01"),
    ]

    groups = project_groups(batches)

    assert [g.display_name for g in groups] == ["Amlong Amlodipine 5mg", "Glycomet Metformin 500mg", "Metformin 500mg"]
    glycomet = groups[1]
    assert glycomet.total_stock == 50
    assert [b.id for b in glycomet.batches] == ["m1", "m2"]
    assert glycomet.low_stock_threshold == 10
    generic = groups[2]
    assert [b.id for b in generic.batches] == ["m4", "m3"]
    assert generic.next_expiry == "2024-07-01"
    for g in groups:
        assert g.total_stock == sum(b.stock for b in g.batches)


def test_low_stock_uses_strict_less_than():
    groups = project_groups([
        batch("a", "Amlodipine", 10, threshold=10),
        batch("b", "Cetirizine", 9, threshold=10),
        batch("c", "Ibuprofen", 0, threshold=5),
    ])

    assert [g.generic_name for g in low_stock_groups(groups)] == ["Ibuprofen", "Cetirizine"]


def test_dispense_order_puts_undated_and_bad_dates_last():
    batches = [
        batch("none", "P", 1),
        batch("mar", "P", 1, expiry="2024-03-01"),
        batch("junk", "P", 1, expiry="someday"),
        batch("jan", "P", 1, expiry="2024-01-15T00:00:00.000Z"),
    ]

    assert [b.id for b in select_dispense_order(batches)] == ["jan", "mar", "none", "junk"]


def test_batches_for_dispense_labels_in_stock_only():
    options = batches_for_dispense([
        batch("m2", "Metformin", 20, "Glycomet", "500mg", "2025-06-01", number="M002"),
        batch("m1", "Metformin", 30, "Glycomet", "500mg", "2025-01-01", number="M001"),
        batch("m0", "Metformin", 0, "Glycomet", "500mg", "2024-01-01", number="M000"),
        batch("a1", "Amlodipine", 5),
    ])

    assert [o.id for o in options] == ["a1", "m1", "m2"]
    assert options[1].display_name == "Metformin (Glycomet) 500mg - Batch: M001 - Exp: 01/25 (Stock: 30)"
    assert options[0].display_name == "Amlodipine - Batch: N/A - Exp: N/A (Stock: 5)"
    assert options[1].group_key == group_key(batch("x", "Metformin", 0, "Glycomet", "500mg"))


def test_expiring_batches_window():
    batches = [
        batch("past", "P", 3, expiry="2024-02-01"),
        batch("soon", "P", 3, expiry="2024-04-15"),
        batch("later", "P", 3, expiry="2024-12-01"),
        batch("empty", "P", 0, expiry="2024-03-15"),
        batch("undated", "P", 3),
    ]

    hits = expiring_batches(batches, within_days=60, today=date(2024, 3, 1))

    assert [b.id for b in hits] == ["past", "soon"]


def test_batch_identity_takes_raw_fields():
    assert batch_identity(" Metformin", "GLYCOMET", "500mg ", "m001") == ("metformin", "glycomet", "500mg", "m001")
    assert batch_identity("Metformin", None, "", None) == ("metformin", "", "", "")
