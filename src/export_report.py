"""Report tables for a date range and the XLSX export built from them.

Run directly to export from the local database:

    python src/export_report.py --start 2024-01-01 --end 2024-01-31
"""
import argparse
import logging
from datetime import date, datetime
from pathlib import Path

import pandas as pd

from drug_models import parse_iso_date
from inventory_ledger import InventoryLedger
from inventory_store import SqliteStore
from settings import DB_PATH, LOG_LEVEL, REPORTS_DIR
from txn_log import TransactionLog

MASTER_LOG = "Master Log"
PATIENT_DISPENSING = "Patient Dispensing"
INVENTORY_LOG = "Drug Inventory Log"
CURRENT_INVENTORY = "Current Inventory"

COLUMNS = {
    MASTER_LOG: [
        "Date", "Type", "Patient Name", "ID (last 4)", "Age/Sex", "Village", "Drug Involved",
        "Dosage", "Batch Number", "Mfg. Date", "Expiry Date", "Source", "Notes",
    ],
    PATIENT_DISPENSING: [
        "Date", "Patient Name", "Age/Sex", "ID (last 4)", "Village", "Drug Involved",
        "Dosage", "Batch and Expiry", "Quantity Dispensed",
    ],
    INVENTORY_LOG: [
        "Date", "Source", "Type", "Drug", "Dose", "Batch", "Mfg. Date", "Exp. Date",
        "Stock After Change", "Notes",
    ],
    CURRENT_INVENTORY: [
        "Generic Name", "Brand Name", "Dosage", "Batch No.", "Mfg. Date", "Exp. Date",
        "Current Stock (Units)", "Purchase Price/Unit (INR)", "Low Stock Threshold", "Initial Source",
    ],
}


def fmt_timestamp(value) -> str:
    if not value:
        return ""
    try:
        return datetime.fromisoformat(str(value)).strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        return str(value)


def fmt_date(value) -> str:
    if not value:
        return ""
    parsed = parse_iso_date(value)
    return parsed.isoformat() if parsed else str(value)


def default_export_name(now=None) -> str:
    return f"CampPharmacy_Export_{(now or datetime.now()).strftime('%Y%m%d_%H%M%S')}"


def _age_sex(txn) -> str:
    return f"{txn.age or ''} / {txn.sex or ''}"


def _master_rows(txn, batch_by_id):
    if not txn.drugs:
        details = txn.update_details
        batch = batch_by_id.get(details.batch_id) if details else None
        return [{
            "Date": fmt_timestamp(txn.timestamp),
            "Type": txn.type,
            "Patient Name": txn.patient_name or "",
            "ID (last 4)": txn.id_last_four or "",
            "Age/Sex": _age_sex(txn),
            "Village": txn.village_name or "",
            "Drug Involved": (batch.brand_name or batch.generic_name) if batch else (details.drug_name if details else "N/A"),
            "Dosage": (batch.dosage or "N/A") if batch else "N/A",
            "Batch Number": (batch.batch_number or "N/A") if batch else "N/A",
            "Mfg. Date": fmt_date(batch.manufacture_date) if batch else "N/A",
            "Expiry Date": fmt_date(batch.expiry_date) if batch else "N/A",
            "Source": txn.source or (batch.initial_source if batch else "") or "",
            "Notes": txn.notes or "",
        }]
    rows = []
    for line in txn.drugs:
        batch = batch_by_id.get(line.batch_id)
        rows.append({
            "Date": fmt_timestamp(txn.timestamp),
            "Type": txn.type,
            "Patient Name": txn.patient_name or "",
            "ID (last 4)": txn.id_last_four or "",
            "Age/Sex": _age_sex(txn),
            "Village": txn.village_name or "",
            "Drug Involved": line.brand_name or line.drug_name,
            "Dosage": line.dosage or "",
            "Batch Number": line.batch_number or "",
            "Mfg. Date": fmt_date(batch.manufacture_date) if batch else "",
            "Expiry Date": fmt_date(batch.expiry_date) if batch else "",
            "Source": txn.source or (batch.initial_source if batch else "") or "",
            "Notes": txn.notes or f"Qty: {line.quantity}, Stock: {line.previous_stock} -> {line.new_stock}",
        })
    return rows


def _dispensing_rows(txn, batch_by_id):
    rows = []
    for line in txn.drugs:
        batch = batch_by_id.get(line.batch_id)
        expiry = fmt_date(batch.expiry_date) if batch and batch.expiry_date else "N/A"
        rows.append({
            "Date": fmt_timestamp(txn.timestamp),
            "Patient Name": txn.patient_name or "",
            "Age/Sex": _age_sex(txn),
            "ID (last 4)": txn.id_last_four or "",
            "Village": txn.village_name or "",
            "Drug Involved": line.brand_name or line.drug_name,
            "Dosage": line.dosage or "",
            "Batch and Expiry": f"Batch: {line.batch_number or 'N/A'}, Exp: {expiry}",
            "Quantity Dispensed": -line.quantity,
        })
    return rows


def _inventory_rows(txn, batch_by_id):
    if not txn.drugs:
        details = txn.update_details
        if details is None:
            return []
        batch = batch_by_id.get(details.batch_id)
        return [{
            "Date": fmt_timestamp(txn.timestamp),
            "Source": txn.source or (batch.initial_source if batch else "") or "",
            "Type": txn.type,
            "Drug": (batch.brand_name or batch.generic_name) if batch else details.drug_name,
            "Dose": (batch.dosage or "") if batch else "",
            "Batch": (batch.batch_number or "") if batch else "",
            "Mfg. Date": fmt_date(batch.manufacture_date) if batch else "",
            "Exp. Date": fmt_date(batch.expiry_date) if batch else "",
            "Stock After Change": batch.stock if batch else "N/A",
            "Notes": txn.notes or "",
        }]
    rows = []
    for line in txn.drugs:
        batch = batch_by_id.get(line.batch_id)
        rows.append({
            "Date": fmt_timestamp(txn.timestamp),
            "Source": txn.source or (batch.initial_source if batch else "") or "",
            "Type": txn.type,
            "Drug": line.brand_name or line.drug_name,
            "Dose": line.dosage or "",
            "Batch": line.batch_number or "",
            "Mfg. Date": fmt_date(batch.manufacture_date) if batch else "",
            "Exp. Date": fmt_date(batch.expiry_date) if batch else "",
            "Stock After Change": line.new_stock,
            "Notes": txn.notes or f"Qty changed by {line.quantity}",
        })
    return rows


def build_report_tables(batches, transactions, start: date, end: date) -> dict:
    """Rows for the four export sheets.

    ``transactions`` are filtered to the calendar days [start, end]; the
    current-inventory sheet always lists every batch.
    """
    if end < start:
        raise ValueError("End date cannot be before start date.")

    batch_by_id = {b.id: b for b in batches}
    tables = {name: [] for name in COLUMNS}
    for txn in TransactionLog(transactions).in_range(start, end):
        tables[MASTER_LOG].extend(_master_rows(txn, batch_by_id))
        if txn.type == "dispense":
            tables[PATIENT_DISPENSING].extend(_dispensing_rows(txn, batch_by_id))
        else:
            tables[INVENTORY_LOG].extend(_inventory_rows(txn, batch_by_id))

    tables[CURRENT_INVENTORY] = [
        {
            "Generic Name": b.generic_name,
            "Brand Name": b.brand_name or "",
            "Dosage": b.dosage or "",
            "Batch No.": b.batch_number or "",
            "Mfg. Date": fmt_date(b.manufacture_date),
            "Exp. Date": fmt_date(b.expiry_date),
            "Current Stock (Units)": b.stock,
            "Purchase Price/Unit (INR)": b.purchase_price_per_unit,
            "Low Stock Threshold": b.low_stock_threshold,
            "Initial Source": b.initial_source or "",
        }
        for b in batches
    ]
    return tables


def to_frames(tables: dict) -> dict:
    return {name: pd.DataFrame(rows, columns=COLUMNS[name]) for name, rows in tables.items()}


def write_workbook(tables: dict, path) -> Path:
    """One sheet per table; returns the path written (``.xlsx`` added if missing)."""
    path = Path(path)
    if path.suffix.lower() != ".xlsx":
        path = path.with_name(path.name + ".xlsx")
    path.parent.mkdir(parents=True, exist_ok=True)
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        for name, df in to_frames(tables).items():
            df.to_excel(writer, sheet_name=name, index=False)
    return path


def main():
    parser = argparse.ArgumentParser(description="Export inventory reports to XLSX")
    parser.add_argument("--start", help="First day YYYY-MM-DD (default: today)")
    parser.add_argument("--end", help="Last day YYYY-MM-DD (default: today)")
    parser.add_argument("--out", help="Output file (default: reports/<timestamped name>.xlsx)")
    parser.add_argument("--db", type=Path, default=DB_PATH, help="Database file")
    parser.add_argument("--csv", action="store_true", help="Also write one CSV per sheet")
    parser.add_argument("--verbose", action="store_true", help="Print the tables")
    args = parser.parse_args()

    logging.basicConfig(level=LOG_LEVEL, format="%(levelname)s %(name)s: %(message)s")

    if not args.db.exists():
        raise SystemExit(f"DB not found: {args.db}")

    today = date.today()
    try:
        start = date.fromisoformat(args.start) if args.start else today
        end = date.fromisoformat(args.end) if args.end else today
        ledger = InventoryLedger(SqliteStore(args.db))
        tables = build_report_tables(ledger.batches, ledger.transactions, start, end)
    except ValueError as e:
        raise SystemExit(f"[ERROR] {e}")

    out = Path(args.out) if args.out else REPORTS_DIR / default_export_name()
    path = write_workbook(tables, out)

    if args.verbose:
        for name, df in to_frames(tables).items():
            print(f"\n=== {name} ===")
            print(df.to_string(index=False) if not df.empty else "None")

    if args.csv:
        for name, df in to_frames(tables).items():
            df.to_csv(path.with_name(f"{path.stem}_{name.lower().replace(' ', '_')}.csv"), index=False)

    counts = ", ".join(f"{name}: {len(rows)}" for name, rows in tables.items())
    print(f"[OK] Exported {start} .. {end} to {path} ({counts})")


if __name__ == "__main__":
    main()
