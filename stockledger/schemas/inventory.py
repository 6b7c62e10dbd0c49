from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stockledger.core.money import to_optional_money


class BatchCreate(BaseModel):
    batch_number: str | None = Field(default=None, max_length=128)
    quantity: int = Field(ge=0, strict=True)
    received_date: date | None = None
    manufacturing_date: date | None = None
    expiry_date: date | None = None
    cost_per_unit: Decimal | None = Field(default=None, ge=0)

    @field_validator("batch_number", mode="before")
    @classmethod
    def normalize_batch_number(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("cost_per_unit", mode="before")
    @classmethod
    def normalize_cost(cls, value: Any) -> Decimal | None:
        return to_optional_money(value)

    @model_validator(mode="after")
    def validate_dates(self) -> "BatchCreate":
        if self.manufacturing_date and self.expiry_date and self.expiry_date < self.manufacturing_date:
            raise ValueError("expiry_date cannot be before manufacturing_date")
        return self

    model_config = ConfigDict(
        extra="forbid",
        json_schema_extra={
            "example": {
                "batch_number": "LOT-2024-001",
                "quantity": 24,
                "expiry_date": "2024-06-30",
                "cost_per_unit": "3.25",
            }
        },
    )


class BatchUpdate(BaseModel):
    """Metadata-only changes. Quantity moves through adjust/sell/return."""

    batch_number: str | None = Field(default=None, min_length=1, max_length=128)
    received_date: date | None = None
    manufacturing_date: date | None = None
    expiry_date: date | None = None
    cost_per_unit: Decimal | None = Field(default=None, ge=0)

    @field_validator("batch_number", mode="before")
    @classmethod
    def strip_batch_number(cls, value: str | None) -> str | None:
        return value.strip() if isinstance(value, str) else value

    @field_validator("cost_per_unit", mode="before")
    @classmethod
    def normalize_cost(cls, value: Any) -> Decimal | None:
        return to_optional_money(value)

    @model_validator(mode="after")
    def validate_fields(self) -> "BatchUpdate":
        if not self.model_fields_set:
            raise ValueError("at least one field is required")
        if "batch_number" in self.model_fields_set and self.batch_number is None:
            raise ValueError("batch_number cannot be null")
        if "received_date" in self.model_fields_set and self.received_date is None:
            raise ValueError("received_date cannot be null")
        return self

    model_config = ConfigDict(extra="forbid")


class BatchOut(BaseModel):
    id: str
    inventory_id: str
    batch_number: str
    quantity: int
    received_date: date
    manufacturing_date: date | None = None
    expiry_date: date | None = None
    cost_per_unit: Decimal | None = None

    model_config = ConfigDict(from_attributes=True)


class InventoryItemOut(BaseModel):
    id: str
    store_id: str
    product_id: str
    quantity: int
    min_stock: int

    model_config = ConfigDict(from_attributes=True)


class AllocationLineOut(BaseModel):
    batch_id: str
    quantity_to_subtract: int
    resulting_quantity: int

    model_config = ConfigDict(from_attributes=True)


class FifoSaleOut(BaseModel):
    allocations: list[AllocationLineOut]
    batches: list[BatchOut]
    inventory_quantity: int


class AuditLogEntryOut(BaseModel):
    id: int
    batch_id: str
    user_id: str
    action: str
    quantity_before: int
    quantity_after: int
    details: dict[str, Any] | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
