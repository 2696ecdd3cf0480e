"""Append-only transaction log, newest record first."""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Callable, Iterable, Optional

from drug_models import Transaction, new_id, parse_iso_date


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TransactionLog:
    def __init__(
        self,
        records: Iterable[Transaction] = (),
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self._records: list[Transaction] = list(records)
        self._clock = clock or utc_now
        self._new_id = id_factory or (lambda: new_id("txn"))

    def append(self, type: str, **fields) -> Transaction:
        """Stamp a new record with id and timestamp and put it at the head."""
        record = Transaction(
            id=self._new_id(),
            timestamp=self._clock().isoformat(),
            type=type,
            **fields,
        )
        self._records.insert(0, record)
        return record

    def __iter__(self):
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def records(self) -> tuple:
        return tuple(self._records)

    def chronological(self) -> list[Transaction]:
        # sort is stable, so same-instant records keep append order
        return sorted(reversed(self._records), key=lambda t: t.timestamp)

    def in_range(self, start: date, end: date) -> list[Transaction]:
        """Records whose timestamp falls on a day in [start, end], newest first."""
        hits = []
        for txn in self._records:
            day = parse_iso_date(txn.timestamp)
            if day is not None and start <= day <= end:
                hits.append(txn)
        return hits

    def for_batch(self, batch_id: str) -> list[Transaction]:
        return [
            t for t in self._records
            if any(line.batch_id == batch_id for line in t.drugs)
            or (t.update_details is not None and t.update_details.batch_id == batch_id)
        ]

    def clear(self) -> None:
        self._records.clear()
