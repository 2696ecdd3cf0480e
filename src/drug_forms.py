"""Validated input contracts for ledger operations.

The dashboard (or any other caller) hands the ledger plain dicts; they are
parsed here so malformed payloads never reach the batch collection.
"""
from __future__ import annotations

from datetime import date
from typing import Annotated, Literal, Optional, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from drug_models import parse_iso_date
from settings import (
    DEFAULT_LOW_STOCK_THRESHOLD,
    DEFAULT_PURCHASE_PRICE,
    MAX_ADJUST_REASON_LENGTH,
    MAX_VILLAGE_NAME_LENGTH,
    MIN_ADJUST_REASON_LENGTH,
    MIN_NAME_LENGTH,
    MIN_VILLAGE_NAME_LENGTH,
)


def _blank_to_none(value):
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _to_date(value):
    value = _blank_to_none(value)
    if value is None or isinstance(value, date):
        return value
    parsed = parse_iso_date(value)
    if parsed is None:
        raise ValueError(f"{value!r} is not an ISO date (YYYY-MM-DD)")
    return parsed


OptionalText = Annotated[Optional[str], BeforeValidator(_blank_to_none)]
IsoDate = Annotated[Optional[date], BeforeValidator(_to_date)]


def describe_errors(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


def check_date_order(manufacture: Optional[date], expiry: Optional[date]) -> None:
    if manufacture and expiry and manufacture >= expiry:
        raise ValueError("manufacture date must be before expiry date")


class _Form(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


# Dispense

class PatientInfo(_Form):
    patient_name: str = Field(..., min_length=MIN_NAME_LENGTH)
    id_last_four: str = Field(..., pattern=r"^\d{4}$")
    age: int = Field(..., gt=0, le=150)
    sex: Literal["Male", "Female", "Other"]
    village_name: OptionalText = None


class DispenseLine(_Form):
    group_key: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)


class DispenseRequest(_Form):
    patient: PatientInfo
    lines: list[DispenseLine] = Field(..., min_length=1)


# Restock

class NewBatchDetails(_Form):
    generic_name: str = Field(..., min_length=MIN_NAME_LENGTH)
    brand_name: OptionalText = None
    dosage: OptionalText = None
    batch_number: str = Field(..., min_length=1)
    manufacture_date: IsoDate = None
    expiry_date: IsoDate = None
    purchase_price_per_unit: float = Field(DEFAULT_PURCHASE_PRICE, ge=0)
    low_stock_threshold: int = Field(DEFAULT_LOW_STOCK_THRESHOLD, ge=0)

    @model_validator(mode="after")
    def _dates_in_order(self):
        check_date_order(self.manufacture_date, self.expiry_date)
        return self


class NewBatch(_Form):
    kind: Literal["new"] = "new"
    details: NewBatchDetails
    quantity: int = Field(..., gt=0)


class ExistingBatch(_Form):
    kind: Literal["existing"] = "existing"
    batch_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    price_override: Optional[float] = Field(None, ge=0)


RestockLine = Annotated[Union[NewBatch, ExistingBatch], Field(discriminator="kind")]


class RestockRequest(_Form):
    source: str = Field(..., min_length=MIN_NAME_LENGTH)
    lines: list[RestockLine] = Field(..., min_length=1)


# Edits

class BatchDetailsUpdate(_Form):
    """Partial edit of a batch's metadata. Stock is not editable here."""

    generic_name: Optional[str] = Field(None, min_length=MIN_NAME_LENGTH)
    brand_name: OptionalText = None
    dosage: OptionalText = None
    batch_number: Optional[str] = Field(None, min_length=1)
    manufacture_date: IsoDate = None
    expiry_date: IsoDate = None
    purchase_price_per_unit: Optional[float] = Field(None, ge=0)
    low_stock_threshold: Optional[int] = Field(None, ge=0)
    initial_source: OptionalText = None

    @field_validator("generic_name", "batch_number", "purchase_price_per_unit", "low_stock_threshold")
    @classmethod
    def _not_cleared(cls, value):
        if value is None:
            raise ValueError("cannot be cleared")
        return value

    def as_batch_fields(self) -> dict:
        """Only the fields the caller supplied, dates as ISO strings."""
        fields = self.model_dump(exclude_unset=True)
        # a blank initial source keeps the recorded one
        if fields.get("initial_source", "") is None:
            del fields["initial_source"]
        for name in ("manufacture_date", "expiry_date"):
            if isinstance(fields.get(name), date):
                fields[name] = fields[name].isoformat()
        return fields


class AdjustStockRequest(_Form):
    batch_id: str = Field(..., min_length=1)
    new_stock: int = Field(..., ge=0)
    reason: str = Field(..., min_length=MIN_ADJUST_REASON_LENGTH, max_length=MAX_ADJUST_REASON_LENGTH)


class VillageForm(_Form):
    name: str = Field(..., min_length=MIN_VILLAGE_NAME_LENGTH, max_length=MAX_VILLAGE_NAME_LENGTH)
