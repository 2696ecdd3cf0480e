import pandas as pd
import pytest

from conftest import by_batch_number
from ingest_excel import clean_batches, ingest, rows_to_lines


def sheet(rows):
    return pd.DataFrame(rows)


def write_sheet(tmp_path, rows, name="Batches"):
    path = tmp_path / "inventory.xlsx"
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        pd.DataFrame(rows).to_excel(writer, sheet_name=name, index=False)
    return path


def test_clean_batches_tidies_sheet():
    raw = sheet([
        {"generic_name": " Paracetamol ", "dosage": "500mg", "batch_number": "B1", "quantity": "10",
         "expiry_date": "2025-01-31", "Unnamed: 9": None},
        {"generic_name": "paracetamol", "dosage": "500MG", "batch_number": "b1", "quantity": 12,
         "expiry_date": "31/01/2025", "Unnamed: 9": None},
        {"generic_name": "Cetirizine", "dosage": "10mg", "batch_number": "C1", "quantity": 0,
         "expiry_date": None, "Unnamed: 9": None},
        {"generic_name": None, "dosage": "1g", "batch_number": "X", "quantity": 5,
         "expiry_date": None, "Unnamed: 9": None},
    ])

    df = clean_batches(raw)

    assert "Unnamed: 9" not in df.columns
    assert len(df) == 1
    row = df.iloc[0]
    assert row["generic_name"] == "paracetamol"
    assert row["quantity"] == 12
    assert row["brand_name"] == ""


def test_clean_batches_requires_columns():
    with pytest.raises(ValueError, match="batch_number, quantity"):
        clean_batches(sheet([{"generic_name": "Paracetamol"}]))


def test_rows_matching_existing_batches_top_them_up(stocked):
    df = clean_batches(sheet([
        {"generic_name": "Amlodipine", "brand_name": "AMLONG", "dosage": "5mg", "batch_number": "a002",
         "quantity": 4, "purchase_price_per_unit": 2.5},
        {"generic_name": "Cetirizine", "dosage": "10mg", "batch_number": "C1", "quantity": 30,
         "purchase_price_per_unit": 0.8, "low_stock_threshold": 12},
    ]))

    existing, new = rows_to_lines(df, stocked.batches)

    assert existing == {"kind": "existing", "batch_id": by_batch_number(stocked, "A002").id,
                        "quantity": 4, "price_override": 2.5}
    assert new["kind"] == "new"
    assert new["details"]["low_stock_threshold"] == 12
    assert new["quantity"] == 30


def test_ingest_restocks_through_ledger(stocked, tmp_path):
    path = write_sheet(tmp_path, [
        {"generic_name": "Cetirizine", "brand_name": None, "dosage": "10mg", "batch_number": "C1",
         "manufacture_date": "2024-01-01", "expiry_date": "2026-01-01", "quantity": 30,
         "purchase_price_per_unit": 0.8, "low_stock_threshold": 12},
        {"generic_name": "Amlodipine", "brand_name": "Amlong", "dosage": "5mg", "batch_number": "A002",
         "manufacture_date": None, "expiry_date": None, "quantity": 4,
         "purchase_price_per_unit": None, "low_stock_threshold": None},
    ])

    result = ingest(stocked, path, "Spreadsheet import")

    assert result.success, result.message
    cet = by_batch_number(stocked, "C1")
    assert (cet.stock, cet.expiry_date, cet.low_stock_threshold, cet.brand_name) == (30, "2026-01-01", 12, None)
    assert cet.initial_source == "Spreadsheet import"
    assert by_batch_number(stocked, "A002").stock == 54
    assert [t.type for t in stocked.transactions] == ["restock", "restock"]


def test_ingest_empty_sheet_is_rejected(ledger, tmp_path):
    path = write_sheet(tmp_path, [{"generic_name": "Cetirizine", "batch_number": "C1", "quantity": 0}])

    result = ingest(ledger, path, "Spreadsheet import")

    assert result.error == "validation"
    assert ledger.transactions == ()
