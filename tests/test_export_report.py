from datetime import date, datetime

import pandas as pd
import pytest

from conftest import PATIENT, by_batch_number
from drug_groups import identity_key
from export_report import (
    COLUMNS,
    CURRENT_INVENTORY,
    INVENTORY_LOG,
    MASTER_LOG,
    PATIENT_DISPENSING,
    build_report_tables,
    default_export_name,
    fmt_date,
    fmt_timestamp,
    write_workbook,
)

MARCH_1 = date(2024, 3, 1)


@pytest.fixture
def busy(stocked):
    stocked.dispense(PATIENT, [{"group_key": identity_key("Paracetamol", None, "500mg"), "quantity": 8}])
    amlo = by_batch_number(stocked, "A002")
    stocked.restock("NGO", [{"kind": "existing", "batch_id": amlo.id, "quantity": 10, "price_override": 4.0}])
    stocked.adjust_stock(amlo.id, 55, "broken strips")
    return stocked


def test_tables_cover_every_transaction_line(busy):
    tables = build_report_tables(busy.batches, busy.transactions, MARCH_1, MARCH_1)

    # restock(4) + dispense(2) + restock(1) + price update(1) + adjustment(1)
    assert len(tables[MASTER_LOG]) == 9
    assert len(tables[PATIENT_DISPENSING]) == 2
    assert len(tables[INVENTORY_LOG]) == 7
    assert len(tables[CURRENT_INVENTORY]) == 4
    for name, rows in tables.items():
        for row in rows:
            assert list(row) == COLUMNS[name]


def test_patient_dispensing_rows(busy):
    rows = build_report_tables(busy.batches, busy.transactions, MARCH_1, MARCH_1)[PATIENT_DISPENSING]

    # newest first, lines in FEFO order
    assert [r["Quantity Dispensed"] for r in rows] == [5, 3]
    assert rows[0]["Batch and Expiry"] == "Batch: P-JAN, Exp: 2024-01-31"
    assert rows[0]["Patient Name"] == "Asha Devi"
    assert rows[0]["Age/Sex"] == "34 / Female"
    assert rows[0]["Village"] == "Rampur"


def test_inventory_log_rows(busy):
    rows = build_report_tables(busy.batches, busy.transactions, MARCH_1, MARCH_1)[INVENTORY_LOG]

    adjustment, price_update, restock = rows[:3]
    assert adjustment["Type"] == "adjustment"
    assert adjustment["Stock After Change"] == 55
    assert adjustment["Notes"] == "Stock adjusted from 60 to 55. Reason: broken strips"
    assert price_update["Type"] == "update"
    assert price_update["Drug"] == "Amlong"
    assert restock["Source"] == "NGO"
    assert restock["Stock After Change"] == 60


def test_date_range_filters_transactions_not_snapshot(busy):
    tables = build_report_tables(busy.batches, busy.transactions, date(2024, 3, 2), date(2024, 3, 31))

    assert tables[MASTER_LOG] == []
    assert tables[PATIENT_DISPENSING] == []
    assert len(tables[CURRENT_INVENTORY]) == 4


def test_rows_survive_deleted_batches(busy):
    amlo = by_batch_number(busy, "A002")
    busy.delete_batch(amlo.id)

    tables = build_report_tables(busy.batches, busy.transactions, MARCH_1, MARCH_1)

    deleted = tables[INVENTORY_LOG][0]
    assert deleted["Drug"] == "Amlodipine"
    assert deleted["Stock After Change"] == "N/A"
    assert deleted["Notes"].startswith("DELETED BATCH")


def test_end_before_start_is_rejected(busy):
    with pytest.raises(ValueError):
        build_report_tables(busy.batches, busy.transactions, date(2024, 3, 2), MARCH_1)


def test_write_workbook(busy, tmp_path):
    tables = build_report_tables(busy.batches, busy.transactions, MARCH_1, MARCH_1)

    path = write_workbook(tables, tmp_path / "reports" / "march")

    assert path.name == "march.xlsx"
    sheets = pd.read_excel(path, sheet_name=None)
    assert list(sheets) == [MASTER_LOG, PATIENT_DISPENSING, INVENTORY_LOG, CURRENT_INVENTORY]
    assert list(sheets[CURRENT_INVENTORY].columns) == COLUMNS[CURRENT_INVENTORY]
    assert sheets[CURRENT_INVENTORY]["Current Stock (Units)"].sum() == 5 + 20 + 7 + 55 - 8


def test_write_workbook_with_empty_tables(tmp_path):
    tables = build_report_tables([], [], MARCH_1, MARCH_1)

    path = write_workbook(tables, tmp_path / "empty.xlsx")

    sheets = pd.read_excel(path, sheet_name=None)
    assert all(df.empty for df in sheets.values())
    assert list(sheets[MASTER_LOG].columns) == COLUMNS[MASTER_LOG]


def test_formatters():
    assert fmt_timestamp("2024-03-01T09:05:07.123+00:00") == "2024-03-01 09:05:07"
    assert fmt_timestamp("garbage") == "garbage"
    assert fmt_timestamp(None) == ""
    assert fmt_date("2025-01-01T00:00:00.000Z") == "2025-01-01"
    assert fmt_date("") == ""
    assert default_export_name(datetime(2024, 1, 2, 3, 4, 5)) == "CampPharmacy_Export_20240102_030405"
