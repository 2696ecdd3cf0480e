import argparse
import sqlite3
from pathlib import Path

from settings import DB_PATH

SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

-- which collections have ever been saved (a missing row means "first load")
CREATE TABLE IF NOT EXISTS collections_meta (
  name TEXT PRIMARY KEY,               -- 'batches' | 'transactions' | 'villages'
  saved_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- one row per physical lot
CREATE TABLE IF NOT EXISTS batches (
  id TEXT PRIMARY KEY,
  position INTEGER NOT NULL,           -- keeps the in-memory order
  generic_name TEXT NOT NULL,
  brand_name TEXT,
  dosage TEXT,
  batch_number TEXT,
  manufacture_date TEXT,               -- YYYY-MM-DD
  expiry_date TEXT,                    -- YYYY-MM-DD, NULL sorts last in FEFO
  purchase_price_per_unit REAL NOT NULL CHECK (purchase_price_per_unit >= 0),
  stock INTEGER NOT NULL CHECK (stock >= 0),
  low_stock_threshold INTEGER NOT NULL CHECK (low_stock_threshold >= 0),
  initial_source TEXT
);

-- audit trail, position 0 = newest
CREATE TABLE IF NOT EXISTS transactions (
  id TEXT PRIMARY KEY,
  position INTEGER NOT NULL,
  ts TEXT NOT NULL,
  type TEXT NOT NULL CHECK (type IN ('dispense','restock','update','adjustment')),
  patient_name TEXT,
  id_last_four TEXT,
  age INTEGER,
  sex TEXT,
  village_name TEXT,
  source TEXT,
  reason TEXT,
  notes TEXT,
  update_details TEXT                  -- JSON, only for 'update'
);

-- per-batch deltas; batch_id is a snapshot, not a foreign key (batches can be deleted)
CREATE TABLE IF NOT EXISTS transaction_lines (
  txn_id TEXT NOT NULL,
  line_no INTEGER NOT NULL,
  batch_id TEXT NOT NULL,
  drug_name TEXT NOT NULL,
  brand_name TEXT,
  dosage TEXT,
  batch_number TEXT,
  quantity INTEGER NOT NULL,           -- negative for dispense
  previous_stock INTEGER NOT NULL,
  new_stock INTEGER NOT NULL,
  PRIMARY KEY (txn_id, line_no),
  FOREIGN KEY (txn_id) REFERENCES transactions(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS villages (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL UNIQUE COLLATE NOCASE
);

CREATE INDEX IF NOT EXISTS idx_batches_expiry ON batches (date(expiry_date));
CREATE INDEX IF NOT EXISTS idx_transactions_ts ON transactions (ts);
CREATE INDEX IF NOT EXISTS idx_lines_batch ON transaction_lines (batch_id);
"""


def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)


def main():
    parser = argparse.ArgumentParser(description="Create the inventory SQLite schema")
    parser.add_argument("--db", type=Path, default=DB_PATH, help="Database file")
    args = parser.parse_args()

    args.db.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(args.db) as conn:
        ensure_schema(conn)
    print(f"Schema ensured at {args.db.resolve()}")


if __name__ == "__main__":
    main()
