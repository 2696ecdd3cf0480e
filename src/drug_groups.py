"""Drug identity keys, FEFO ordering and the read projections built on them.

A clinician dispenses "Metformin Glycomet 500mg", not a batch: every batch
sharing (generic name, brand, dosage) belongs to one identity group. All
projections here are pure functions of the batch list and are recomputed on
every read.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable, Optional

from drug_models import DrugBatch, parse_iso_date


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def identity_key(generic_name: str, brand_name: Optional[str] = None, dosage: Optional[str] = None) -> str:
    # length-prefixed so no field value can spill into its neighbour
    return "|".join(f"{len(v)}:{v}" for v in map(_norm, (generic_name, brand_name, dosage)))


def group_key(batch: DrugBatch) -> str:
    return identity_key(batch.generic_name, batch.brand_name, batch.dosage)


def batch_identity(generic_name, brand_name, dosage, batch_number) -> tuple:
    """Uniqueness tuple: no two batches may share it."""
    return tuple(_norm(v) for v in (generic_name, brand_name, dosage, batch_number))


def display_name(batch: DrugBatch) -> str:
    return " ".join(p for p in (batch.brand_name, batch.generic_name, batch.dosage) if p)


def expiry_sort_key(batch: DrugBatch) -> tuple:
    expiry = parse_iso_date(batch.expiry_date)
    # undated batches never expire, so they go last
    return (expiry is None, expiry or date.max)


def select_dispense_order(batches: Iterable[DrugBatch]) -> list[DrugBatch]:
    """FEFO: earliest expiry first, undated last, ties keep list order."""
    return sorted(batches, key=expiry_sort_key)


@dataclass
class DrugIdentityGroup:
    group_key: str
    display_name: str
    generic_name: str
    brand_name: Optional[str]
    dosage: Optional[str]
    low_stock_threshold: int
    total_stock: int = 0
    batches: list = field(default_factory=list)

    @property
    def is_low_stock(self) -> bool:
        return self.total_stock < self.low_stock_threshold

    @property
    def next_expiry(self) -> Optional[str]:
        for b in self.batches:
            if b.stock > 0 and b.expiry_date:
                return b.expiry_date
        return None


def project_groups(batches: Iterable[DrugBatch]) -> list[DrugIdentityGroup]:
    groups: dict[str, DrugIdentityGroup] = {}
    for batch in batches:
        key = group_key(batch)
        group = groups.get(key)
        if group is None:
            group = groups[key] = DrugIdentityGroup(
                group_key=key,
                display_name=display_name(batch),
                generic_name=batch.generic_name,
                brand_name=batch.brand_name,
                dosage=batch.dosage,
                low_stock_threshold=batch.low_stock_threshold,
            )
        group.total_stock += batch.stock
        group.batches.append(batch)

    for group in groups.values():
        group.batches = select_dispense_order(group.batches)
    return sorted(groups.values(), key=lambda g: g.display_name.casefold())


def low_stock_groups(groups: Iterable[DrugIdentityGroup]) -> list[DrugIdentityGroup]:
    return sorted((g for g in groups if g.is_low_stock), key=lambda g: (g.total_stock, g.display_name.casefold()))


def expiring_batches(batches: Iterable[DrugBatch], within_days: int, today: Optional[date] = None) -> list[DrugBatch]:
    """In-stock batches expiring on or before today + within_days (already expired included)."""
    cutoff = (today or date.today()) + timedelta(days=within_days)
    hits = [
        b for b in batches
        if b.stock > 0 and parse_iso_date(b.expiry_date) is not None
        and parse_iso_date(b.expiry_date) <= cutoff
    ]
    return select_dispense_order(hits)


@dataclass(frozen=True)
class DispenseOption:
    id: str
    group_key: str
    display_name: str
    stock: int
    generic_name: str
    brand_name: Optional[str] = None
    dosage: Optional[str] = None
    batch_number: Optional[str] = None
    expiry_date: Optional[str] = None


def _dispense_label(batch: DrugBatch) -> str:
    brand = f" ({batch.brand_name})" if batch.brand_name else ""
    dosage = f" {batch.dosage}" if batch.dosage else ""
    expiry = parse_iso_date(batch.expiry_date)
    if expiry:
        exp = expiry.strftime("%m/%y")
    else:
        exp = batch.expiry_date or "N/A"
    return (
        f"{batch.generic_name}{brand}{dosage} - Batch: {batch.batch_number or 'N/A'}"
        f" - Exp: {exp} (Stock: {batch.stock})"
    )


def batches_for_dispense(batches: Iterable[DrugBatch]) -> list[DispenseOption]:
    """Batches with stock, labelled for a picker, by name, brand, dosage then expiry."""
    in_stock = [b for b in batches if b.stock > 0]
    in_stock.sort(key=lambda b: (_norm(b.generic_name), _norm(b.brand_name), _norm(b.dosage), expiry_sort_key(b)))
    return [
        DispenseOption(
            id=b.id,
            group_key=group_key(b),
            display_name=_dispense_label(b),
            stock=b.stock,
            generic_name=b.generic_name,
            brand_name=b.brand_name,
            dosage=b.dosage,
            batch_number=b.batch_number,
            expiry_date=b.expiry_date,
        )
        for b in in_stock
    ]
