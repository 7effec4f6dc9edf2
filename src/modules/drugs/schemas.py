"""Schemas for Drugs module."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from src.modules.inventory.models import Department


class DrugCreate(BaseModel):
    """New catalog entry, optionally with opening stock in one department."""

    hospital_drug_code: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=300)
    generic_name: str | None = Field(None, max_length=300)
    dosage_form: str = Field(..., min_length=1, max_length=50)
    strength: str | None = Field(None, max_length=50)
    unit: str = Field(..., min_length=1, max_length=30)
    package_size: str | None = Field(None, max_length=50)
    price_per_box: Decimal = Field(Decimal("0.00"), ge=0, decimal_places=2)
    category: str | None = Field(None, max_length=50)
    notes: str | None = None

    department: Department = Department.PHARMACY
    initial_quantity: int = Field(0, ge=0)
    minimum_stock: int = Field(0, ge=0)
    lot_number: str | None = Field(None, max_length=100)
    expiry_date: date | None = None


class DrugPriceUpdate(BaseModel):
    price_per_box: Decimal = Field(..., ge=0, decimal_places=2)
    note: str | None = None


class DrugResponse(BaseModel):
    id: int
    hospital_drug_code: str
    name: str
    generic_name: str | None = None
    dosage_form: str
    strength: str | None = None
    unit: str
    package_size: str | None = None
    price_per_box: Decimal
    category: str | None = None
    notes: str | None = None
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class DrugPriceUpdateResponse(BaseModel):
    drug: DrugResponse
    price_changed: bool
    old_price: Decimal
    new_price: Decimal
    revalued_stock_ids: list[int]
