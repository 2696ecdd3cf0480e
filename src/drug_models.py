"""Plain records for drug batches, the transaction log and camps.

``DrugBatch`` is the only mutable record and only the ledger mutates it.
Every record round-trips through ``to_dict``/``from_dict`` so the storage
layer only ever sees dicts.
"""
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Optional

from settings import DEFAULT_LOW_STOCK_THRESHOLD, DEFAULT_PURCHASE_PRICE

TXN_TYPES = ("dispense", "restock", "update", "adjustment")

# metadata fields an edit may touch, in the order diffs are reported
DETAIL_FIELDS = (
    "generic_name",
    "brand_name",
    "dosage",
    "batch_number",
    "manufacture_date",
    "expiry_date",
    "purchase_price_per_unit",
    "low_stock_threshold",
    "initial_source",
)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def require_mapping(row, what: str) -> dict:
    if not isinstance(row, dict):
        raise TypeError(f"{what} row must be a mapping, got {type(row).__name__}")
    return row


def blank_to_none(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def parse_iso_date(value) -> Optional[date]:
    """Date part of an ISO date/instant, or None when missing or unparsable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


@dataclass
class DrugBatch:
    id: str
    generic_name: str
    stock: int = 0
    purchase_price_per_unit: float = DEFAULT_PURCHASE_PRICE
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
    brand_name: Optional[str] = None
    dosage: Optional[str] = None
    batch_number: Optional[str] = None
    manufacture_date: Optional[str] = None
    expiry_date: Optional[str] = None
    initial_source: Optional[str] = None

    @property
    def label(self) -> str:
        parts = [self.generic_name, self.brand_name or "", self.dosage or ""]
        name = " ".join(p for p in parts if p)
        return f"{name} (Batch: {self.batch_number or 'N/A'})"

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, row: dict) -> "DrugBatch":
        row = require_mapping(row, "batch")
        generic_name = blank_to_none(row["generic_name"])
        if generic_name is None:
            raise ValueError(f"batch {row.get('id')!r} has no generic name")
        stock = int(row["stock"])
        threshold = int(row.get("low_stock_threshold", DEFAULT_LOW_STOCK_THRESHOLD))
        price = float(row.get("purchase_price_per_unit", DEFAULT_PURCHASE_PRICE))
        if stock < 0 or threshold < 0 or price < 0:
            raise ValueError(f"batch {row.get('id')!r} has negative stock, threshold or price")
        return cls(
            id=str(row["id"]),
            generic_name=generic_name,
            stock=stock,
            purchase_price_per_unit=price,
            low_stock_threshold=threshold,
            brand_name=blank_to_none(row.get("brand_name")),
            dosage=blank_to_none(row.get("dosage")),
            batch_number=blank_to_none(row.get("batch_number")),
            manufacture_date=blank_to_none(row.get("manufacture_date")),
            expiry_date=blank_to_none(row.get("expiry_date")),
            initial_source=blank_to_none(row.get("initial_source")),
        )


@dataclass(frozen=True)
class TransactionLine:
    """One batch touched by a transaction, with a snapshot of its identity."""

    batch_id: str
    drug_name: str
    quantity: int
    previous_stock: int
    new_stock: int
    brand_name: Optional[str] = None
    dosage: Optional[str] = None
    batch_number: Optional[str] = None

    @classmethod
    def snapshot(cls, batch: DrugBatch, previous_stock: int) -> "TransactionLine":
        return cls(
            batch_id=batch.id,
            drug_name=batch.generic_name,
            quantity=batch.stock - previous_stock,
            previous_stock=previous_stock,
            new_stock=batch.stock,
            brand_name=batch.brand_name,
            dosage=batch.dosage,
            batch_number=batch.batch_number,
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, row: dict) -> "TransactionLine":
        row = require_mapping(row, "transaction line")
        return cls(
            batch_id=str(row["batch_id"]),
            drug_name=str(row["drug_name"]),
            quantity=int(row["quantity"]),
            previous_stock=int(row["previous_stock"]),
            new_stock=int(row["new_stock"]),
            brand_name=blank_to_none(row.get("brand_name")),
            dosage=blank_to_none(row.get("dosage")),
            batch_number=blank_to_none(row.get("batch_number")),
        )


@dataclass(frozen=True)
class FieldChange:
    previous: object
    new: object


@dataclass(frozen=True)
class UpdateDetails:
    batch_id: str
    drug_name: str
    changes: dict = field(default_factory=dict)   # field name -> FieldChange
    deleted: bool = False

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "drug_name": self.drug_name,
            "deleted": self.deleted,
            "changes": {
                name: {"previous": ch.previous, "new": ch.new}
                for name, ch in self.changes.items()
            },
        }

    @classmethod
    def from_dict(cls, row: dict) -> "UpdateDetails":
        row = require_mapping(row, "update details")
        changes = {}
        for name, ch in require_mapping(row.get("changes") or {}, "changes").items():
            ch = require_mapping(ch, "field change")
            changes[name] = FieldChange(ch.get("previous"), ch.get("new"))
        return cls(
            batch_id=str(row["batch_id"]),
            drug_name=str(row["drug_name"]),
            changes=changes,
            deleted=bool(row.get("deleted", False)),
        )


@dataclass(frozen=True)
class Transaction:
    id: str
    timestamp: str
    type: str
    drugs: tuple = ()
    patient_name: Optional[str] = None
    id_last_four: Optional[str] = None
    age: Optional[int] = None
    sex: Optional[str] = None
    village_name: Optional[str] = None
    source: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    update_details: Optional[UpdateDetails] = None

    def __post_init__(self):
        if self.type not in TXN_TYPES:
            raise ValueError(f"unknown transaction type {self.type!r}")
        object.__setattr__(self, "drugs", tuple(self.drugs))

    def to_dict(self) -> dict:
        row = {
            k: getattr(self, k)
            for k in ("id", "timestamp", "type", "patient_name", "id_last_four", "age",
                      "sex", "village_name", "source", "reason", "notes")
        }
        row["drugs"] = [line.to_dict() for line in self.drugs]
        row["update_details"] = self.update_details.to_dict() if self.update_details else None
        return row

    @classmethod
    def from_dict(cls, row: dict) -> "Transaction":
        row = require_mapping(row, "transaction")
        details = row.get("update_details")
        age = row.get("age")
        return cls(
            id=str(row["id"]),
            timestamp=str(row["timestamp"]),
            type=row["type"],
            drugs=tuple(TransactionLine.from_dict(d) for d in row.get("drugs") or ()),
            patient_name=row.get("patient_name"),
            id_last_four=row.get("id_last_four"),
            age=int(age) if age is not None else None,
            sex=row.get("sex"),
            village_name=row.get("village_name"),
            source=row.get("source"),
            reason=row.get("reason"),
            notes=row.get("notes"),
            update_details=UpdateDetails.from_dict(details) if details else None,
        )


@dataclass(frozen=True)
class Village:
    id: str
    name: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, row: dict) -> "Village":
        row = require_mapping(row, "village")
        name = blank_to_none(row["name"])
        if name is None:
            raise ValueError(f"village {row.get('id')!r} has no name")
        return cls(id=str(row["id"]), name=name)


@dataclass(frozen=True)
class LineSummary:
    """Receipt line: what was handed out or received, always positive."""

    drug_name: str
    quantity: int
    brand_name: Optional[str] = None
    dosage: Optional[str] = None
    batch_number: Optional[str] = None

    @classmethod
    def from_line(cls, line: TransactionLine) -> "LineSummary":
        return cls(
            drug_name=line.drug_name,
            quantity=abs(line.quantity),
            brand_name=line.brand_name,
            dosage=line.dosage,
            batch_number=line.batch_number,
        )


@dataclass
class OperationResult:
    success: bool
    message: str
    error: Optional[str] = None          # "validation" | "not_found" | "conflict"
    items: list = field(default_factory=list)
    batch: Optional[DrugBatch] = None
    village: Optional[Village] = None
    transactions: list = field(default_factory=list)

    @property
    def partial(self) -> bool:
        """Some but not all of the request went through (dispense shortfalls)."""
        return not self.success and bool(self.items)

    @classmethod
    def failed(cls, error: str, message: str) -> "OperationResult":
        return cls(success=False, message=message, error=error)


def sample_batches() -> list[DrugBatch]:
    """Demo stock used when the clinic starts from a blank install."""
    return [
        DrugBatch(
            id="metformin-500mg-glycomet-batch1", generic_name="Metformin",
            brand_name="Glycomet", dosage="500mg", batch_number="M001",
            manufacture_date="2023-01-01", expiry_date="2025-01-01",
            purchase_price_per_unit=5.0, stock=30, low_stock_threshold=10,
            initial_source="System Setup",
        ),
        DrugBatch(
            id="metformin-500mg-glycomet-batch2", generic_name="Metformin",
            brand_name="Glycomet", dosage="500mg", batch_number="M002",
            manufacture_date="2023-06-01", expiry_date="2025-06-01",
            purchase_price_per_unit=5.5, stock=20, low_stock_threshold=10,
            initial_source="System Setup",
        ),
        DrugBatch(
            id="metformin-500mg-generic-batch3", generic_name="Metformin",
            dosage="500mg", batch_number="MG003",
            manufacture_date="2023-07-01", expiry_date="2024-07-01",
            purchase_price_per_unit=4.5, stock=15, low_stock_threshold=5,
            initial_source="System Setup",
        ),
        DrugBatch(
            id="amlong-5mg-batch1", generic_name="Amlodipine",
            brand_name="Amlong", dosage="5mg", batch_number="A002",
            manufacture_date="2023-03-01", expiry_date="2025-03-01",
            purchase_price_per_unit=10.0, stock=50, low_stock_threshold=10,
            initial_source="System Setup",
        ),
    ]
