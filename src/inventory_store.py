"""Persistence adapters for the three ledger collections.

Both stores speak the same small protocol, keyed by collection name
(``batches``, ``transactions``, ``villages``):

    load(key)            -> list of dicts, or None if never saved / unreadable
    save(key, rows)      -> bool
    save_many({key: rows}) -> bool, all collections written together
    clear()

Storage problems are logged and reported through the return value; they
never propagate to the ledger.
"""
from __future__ import annotations

import copy
import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path

from create_schema import ensure_schema
from settings import DB_PATH

logger = logging.getLogger(__name__)

COLLECTIONS = ("batches", "transactions", "villages")

BATCH_COLUMNS = (
    "id", "generic_name", "brand_name", "dosage", "batch_number", "manufacture_date",
    "expiry_date", "purchase_price_per_unit", "stock", "low_stock_threshold", "initial_source",
)
TXN_COLUMNS = (
    "id", "ts", "type", "patient_name", "id_last_four", "age", "sex",
    "village_name", "source", "reason", "notes", "update_details",
)
LINE_COLUMNS = (
    "batch_id", "drug_name", "brand_name", "dosage", "batch_number",
    "quantity", "previous_stock", "new_stock",
)


def _check_key(key: str) -> None:
    if key not in COLLECTIONS:
        raise KeyError(f"unknown collection {key!r}")


class MemoryStore:
    """Dict-backed store; nothing survives the process."""

    def __init__(self, initial: dict | None = None):
        self._data = copy.deepcopy(initial or {})

    def load(self, key: str):
        _check_key(key)
        rows = self._data.get(key)
        return copy.deepcopy(rows) if rows is not None else None

    def save(self, key: str, rows: list) -> bool:
        return self.save_many({key: rows})

    def save_many(self, collections: dict) -> bool:
        for key in collections:
            _check_key(key)
        for key, rows in collections.items():
            self._data[key] = copy.deepcopy(list(rows))
        return True

    def clear(self) -> None:
        self._data.clear()


class SqliteStore:
    def __init__(self, db_path: Path | str = DB_PATH):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self._connection() as conn:
                ensure_schema(conn)
        except sqlite3.DatabaseError as e:
            # loads will come back empty and saves will report False
            logger.warning("Could not prepare schema in %s: %s", self.db_path, e)

    @contextmanager
    def _connection(self):
        conn = sqlite3.connect(self.db_path)
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON;")
            yield conn
        finally:
            conn.close()

    # reads

    def load(self, key: str):
        _check_key(key)
        try:
            with self._connection() as conn:
                seen = conn.execute(
                    "SELECT 1 FROM collections_meta WHERE name = ?", (key,)
                ).fetchone()
                if not seen:
                    return None
                return getattr(self, f"_load_{key}")(conn)
        except (sqlite3.DatabaseError, json.JSONDecodeError) as e:
            logger.warning("Could not load %s from %s, starting empty: %s", key, self.db_path, e)
            return None

    @staticmethod
    def _load_batches(conn):
        rows = conn.execute(
            f"SELECT {', '.join(BATCH_COLUMNS)} FROM batches ORDER BY position"
        ).fetchall()
        return [dict(r) for r in rows]

    @staticmethod
    def _load_transactions(conn):
        lines: dict[str, list] = {}
        for r in conn.execute(
            f"SELECT txn_id, {', '.join(LINE_COLUMNS)} FROM transaction_lines ORDER BY txn_id, line_no"
        ):
            row = dict(r)
            lines.setdefault(row.pop("txn_id"), []).append(row)

        out = []
        for r in conn.execute(f"SELECT {', '.join(TXN_COLUMNS)} FROM transactions ORDER BY position"):
            row = dict(r)
            row["timestamp"] = row.pop("ts")
            details = row.pop("update_details")
            row["update_details"] = json.loads(details) if details else None
            row["drugs"] = lines.get(row["id"], [])
            out.append(row)
        return out

    @staticmethod
    def _load_villages(conn):
        return [dict(r) for r in conn.execute("SELECT id, name FROM villages ORDER BY name COLLATE NOCASE")]

    # writes

    def save(self, key: str, rows: list) -> bool:
        return self.save_many({key: rows})

    def save_many(self, collections: dict) -> bool:
        """Replace each given collection wholesale, all in one SQLite transaction."""
        for key in collections:
            _check_key(key)
        try:
            with self._connection() as conn:
                with conn:
                    for key, rows in collections.items():
                        getattr(self, f"_save_{key}")(conn, rows)
                        conn.execute(
                            """
                            INSERT INTO collections_meta (name, saved_at) VALUES (?, datetime('now'))
                            ON CONFLICT(name) DO UPDATE SET saved_at = excluded.saved_at
                            """,
                            (key,),
                        )
            return True
        except (sqlite3.DatabaseError, TypeError, ValueError) as e:
            logger.warning("Could not save %s to %s: %s", ", ".join(collections), self.db_path, e)
            return False

    @staticmethod
    def _save_batches(conn, rows):
        conn.execute("DELETE FROM batches")
        cols = ("position",) + BATCH_COLUMNS
        conn.executemany(
            f"INSERT INTO batches ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
            [(i,) + tuple(row.get(c) for c in BATCH_COLUMNS) for i, row in enumerate(rows)],
        )

    @staticmethod
    def _save_transactions(conn, rows):
        conn.execute("DELETE FROM transaction_lines")
        conn.execute("DELETE FROM transactions")
        cols = ("position",) + TXN_COLUMNS
        txn_values, line_values = [], []
        for i, row in enumerate(rows):
            details = row.get("update_details")
            values = dict(row, ts=row["timestamp"], update_details=json.dumps(details) if details else None)
            txn_values.append((i,) + tuple(values.get(c) for c in TXN_COLUMNS))
            for n, line in enumerate(row.get("drugs") or ()):
                line_values.append((row["id"], n) + tuple(line.get(c) for c in LINE_COLUMNS))
        conn.executemany(
            f"INSERT INTO transactions ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
            txn_values,
        )
        line_cols = ("txn_id", "line_no") + LINE_COLUMNS
        conn.executemany(
            f"INSERT INTO transaction_lines ({', '.join(line_cols)}) VALUES ({', '.join('?' for _ in line_cols)})",
            line_values,
        )

    @staticmethod
    def _save_villages(conn, rows):
        conn.execute("DELETE FROM villages")
        conn.executemany(
            "INSERT INTO villages (id, name) VALUES (?, ?)",
            [(row["id"], row["name"]) for row in rows],
        )

    def clear(self) -> None:
        try:
            with self._connection() as conn:
                with conn:
                    for table in ("transaction_lines", "transactions", "batches", "villages", "collections_meta"):
                        conn.execute(f"DELETE FROM {table}")
        except sqlite3.DatabaseError as e:
            logger.warning("Could not clear %s: %s", self.db_path, e)
