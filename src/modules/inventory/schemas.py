"""Schemas for Inventory module."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from src.modules.inventory.models import Department, TransactionType


# --- Stock Schemas ---


class StockResponse(BaseModel):
    """Stock snapshot with availability."""

    id: int
    drug_id: int
    hospital_drug_code: str | None = None
    drug_name: str | None = None
    unit: str | None = None
    department: Department
    total_quantity: int
    reserved_quantity: int
    available_quantity: int
    minimum_stock: int
    is_low_stock: bool
    unit_price: Decimal
    total_value: Decimal
    last_updated: datetime
    version: int


class StockUpdateRequest(BaseModel):
    """Edit of a stock row; the ledger kind is derived from what changed."""

    department: Department
    total_quantity: int = Field(..., ge=0)
    minimum_stock: int = Field(..., ge=0)
    reason: str | None = Field(None, max_length=500)
    expected_version: int | None = Field(
        None, description="Version last read by the client; a mismatch is a conflict"
    )


class TransactionInfo(BaseModel):
    kind: TransactionType
    quantity_changed: bool
    quantity_change: int
    minimum_stock_changed: bool
    minimum_stock_change: int
    reason: str | None = None
    transaction_id: int


class StockUpdateResponse(BaseModel):
    stock: StockResponse
    transaction_info: TransactionInfo


class StockSummaryResponse(BaseModel):
    department: Department | None = None
    total_items: int
    low_stock_count: int
    out_of_stock_count: int
    total_value: Decimal


class ReserveStockRequest(BaseModel):
    quantity: int = Field(..., gt=0)
    note: str | None = None


class StockReconciliationResponse(BaseModel):
    """Ledger replay and lot totals compared with the stock row."""

    stock_id: int
    current_total: int
    ledger_total: int
    batch_total: int
    entry_count: int
    chain_intact: bool
    is_consistent: bool


# --- Movement Schemas ---


class ReceiveStockRequest(BaseModel):
    """Goods received from outside the hospital into one lot."""

    drug_id: int
    department: Department = Department.PHARMACY
    lot_number: str = Field(..., min_length=1, max_length=100)
    expiry_date: date | None = None
    manufacturer: str | None = Field(None, max_length=200)
    quantity: int = Field(..., gt=0)
    unit_cost: Decimal | None = Field(
        None, ge=0, decimal_places=2, description="Defaults to the catalog price"
    )
    reference: str | None = Field(None, max_length=100)
    note: str | None = None


class DispenseStockRequest(BaseModel):
    """Dispensing to patients; earliest-expiring unexpired lots are used first."""

    drug_id: int
    department: Department
    quantity: int = Field(..., gt=0)
    reference: str | None = Field(None, max_length=100)
    note: str | None = None


class StockTransactionResponse(BaseModel):
    id: int
    stock_id: int
    drug_id: int | None = None
    drug_name: str | None = None
    department: Department | None = None
    user_id: int
    user_name: str | None = None
    transaction_type: TransactionType
    quantity: int
    before_quantity: int
    after_quantity: int
    before_min_stock: int | None = None
    after_min_stock: int | None = None
    min_stock_change: int | None = None
    unit_cost: Decimal
    total_cost: Decimal
    reference: str | None = None
    note: str | None = None
    batch_id: int | None = None
    lot_number: str | None = None
    transfer_id: int | None = None
    created_at: datetime


class DispenseResponse(BaseModel):
    drug_id: int
    department: Department
    requested_quantity: int
    dispensed_quantity: int
    unsatisfied: int
    transactions: list[StockTransactionResponse]


# --- Batch Schemas ---


class DrugBatchResponse(BaseModel):
    id: int
    stock_id: int
    drug_id: int
    department: Department
    lot_number: str
    expiry_date: date | None = None
    manufacturer: str | None = None
    remaining_quantity: int
    unit_cost: Decimal
    received_date: datetime

    model_config = {"from_attributes": True}
