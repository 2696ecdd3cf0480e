import argparse
import logging
from pathlib import Path

import pandas as pd

from drug_groups import batch_identity
from drug_models import OperationResult
from inventory_ledger import InventoryLedger
from inventory_store import SqliteStore
from settings import DB_PATH, LOG_LEVEL, PROJECT_ROOT

EXCEL = PROJECT_ROOT / "data" / "inventory.xlsx"
SHEET = "Batches"

TEXT_COLS = ["generic_name", "brand_name", "dosage", "batch_number"]
DATE_COLS = ["manufacture_date", "expiry_date"]
REQUIRED = {"generic_name", "batch_number", "quantity"}


def clean_batches(df: pd.DataFrame) -> pd.DataFrame:
    """Tidy a raw sheet: one row per batch identity, positive integer quantities."""
    df = df.drop(columns=[c for c in df.columns if str(c).startswith("Unnamed")], errors="ignore")
    missing = REQUIRED - set(df.columns)
    if missing:
        raise ValueError(f"Sheet is missing columns: {', '.join(sorted(missing))}")

    df = df.copy()
    for c in TEXT_COLS:
        if c in df.columns:
            df[c] = df[c].fillna("").astype(str).str.strip()
        else:
            df[c] = ""

    df["quantity"] = pd.to_numeric(df["quantity"], errors="coerce").fillna(0).astype(int)
    for c in ("purchase_price_per_unit", "low_stock_threshold"):
        if c in df.columns:
            df[c] = pd.to_numeric(df[c], errors="coerce")

    # Date cleanup to ISO format (YYYY-MM-DD)
    for c in DATE_COLS:
        if c in df.columns:
            df[c] = pd.to_datetime(df[c], errors="coerce").dt.strftime("%Y-%m-%d")

    df = df[(df["generic_name"] != "") & (df["quantity"] > 0)]

    # same batch listed twice: keep the last row
    keys = df[TEXT_COLS].apply(lambda s: s.str.lower())
    df = df.loc[~keys.duplicated(keep="last")]
    return df.reset_index(drop=True)


def _present(row: dict, col: str) -> bool:
    return col in row and not pd.isna(row[col])


def rows_to_lines(df: pd.DataFrame, batches) -> list[dict]:
    """Restock lines: rows matching an existing batch top it up, the rest are new batches."""
    existing = {batch_identity(b.generic_name, b.brand_name, b.dosage, b.batch_number): b.id for b in batches}
    lines = []
    for row in df.to_dict(orient="records"):
        identity = batch_identity(*(row[c] for c in TEXT_COLS))
        quantity = int(row["quantity"])
        if identity in existing:
            line = {"kind": "existing", "batch_id": existing[identity], "quantity": quantity}
            if _present(row, "purchase_price_per_unit"):
                line["price_override"] = float(row["purchase_price_per_unit"])
        else:
            details = {c: row[c] for c in TEXT_COLS}
            for c in DATE_COLS:
                if _present(row, c):
                    details[c] = row[c]
            if _present(row, "purchase_price_per_unit"):
                details["purchase_price_per_unit"] = float(row["purchase_price_per_unit"])
            if _present(row, "low_stock_threshold"):
                details["low_stock_threshold"] = int(row["low_stock_threshold"])
            line = {"kind": "new", "details": details, "quantity": quantity}
        lines.append(line)
    return lines


def ingest(ledger: InventoryLedger, excel_path, source: str, sheet: str = SHEET) -> OperationResult:
    df = clean_batches(pd.read_excel(excel_path, sheet_name=sheet))
    if df.empty:
        return OperationResult.failed("validation", "No rows with a generic name and positive quantity found.")
    return ledger.restock(source, rows_to_lines(df, ledger.batches))


def main():
    parser = argparse.ArgumentParser(description="Restock from a spreadsheet")
    parser.add_argument("--excel", type=Path, default=EXCEL, help="Workbook to read")
    parser.add_argument("--sheet", default=SHEET, help="Sheet name")
    parser.add_argument("--source", default="Spreadsheet import", help="Where the stock came from")
    parser.add_argument("--db", type=Path, default=DB_PATH, help="Database file")
    args = parser.parse_args()

    logging.basicConfig(level=LOG_LEVEL, format="%(levelname)s %(name)s: %(message)s")

    ledger = InventoryLedger(SqliteStore(args.db))
    try:
        result = ingest(ledger, args.excel, args.source, args.sheet)
    except ValueError as e:
        raise SystemExit(f"[ERROR] {e}")
    if not result.success:
        raise SystemExit(f"[ERROR] {result.message}")

    for item in result.items:
        print(f"  + {item.quantity:>5}  {item.drug_name} {item.brand_name or ''} {item.dosage or ''} (Batch: {item.batch_number})")
    print(f"[OK] {result.message} {len(result.items)} batches from {args.excel.name}")


if __name__ == "__main__":
    main()
