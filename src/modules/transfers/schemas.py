"""Schemas for Transfers module."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from src.modules.inventory.models import Department
from src.modules.transfers.models import TransferStatus


# --- Requests ---


class TransferItemCreate(BaseModel):
    drug_id: int
    requested_quantity: int = Field(..., gt=0)
    item_note: str | None = None


class TransferCreate(BaseModel):
    """Schema for opening a requisition."""

    title: str = Field(..., min_length=1, max_length=200)
    purpose: str | None = None
    source_department: Department = Department.PHARMACY
    destination_department: Department
    request_note: str | None = None
    items: list[TransferItemCreate] = Field(..., min_length=1)


class ApproveItem(BaseModel):
    item_id: int
    approved_quantity: int | None = Field(None, ge=0)
    item_note: str | None = None


class TransferApproveRequest(BaseModel):
    """Approved quantities; unlisted items are approved as requested."""

    items: list[ApproveItem] = []
    note: str | None = None


class DispenseItem(BaseModel):
    item_id: int
    quantity: int | None = Field(None, ge=0, description="Defaults to the approved quantity")
    item_note: str | None = None


class TransferDispenseRequest(BaseModel):
    items: list[DispenseItem] = []
    note: str | None = None


class ReceiveItem(BaseModel):
    item_id: int
    received_quantity: int | None = Field(
        None, ge=0, description="Defaults to the dispensed quantity"
    )
    item_note: str | None = None


class TransferReceiveRequest(BaseModel):
    items: list[ReceiveItem] = []
    note: str | None = None


class TransferCancelRequest(BaseModel):
    note: str | None = None


# --- Responses ---


class TransferItemBatchResponse(BaseModel):
    id: int
    source_batch_id: int
    lot_number: str
    expiry_date: date | None = None
    manufacturer: str | None = None
    unit_cost: Decimal
    quantity: int
    received_quantity: int | None = None

    model_config = {"from_attributes": True}


class TransferItemResponse(BaseModel):
    id: int
    drug_id: int
    hospital_drug_code: str | None = None
    drug_name: str | None = None
    requested_quantity: int
    approved_quantity: int | None = None
    dispensed_quantity: int | None = None
    received_quantity: int | None = None
    unit_price: Decimal
    total_value: Decimal
    lot_number: str | None = None
    expiry_date: date | None = None
    manufacturer: str | None = None
    item_note: str | None = None
    batches: list[TransferItemBatchResponse] = []


class TransferResponse(BaseModel):
    id: int
    requisition_number: str
    title: str
    purpose: str | None = None
    source_department: str
    destination_department: str
    status: TransferStatus
    requester_id: int
    requester_name: str | None = None
    requested_at: datetime
    request_note: str | None = None
    approver_id: int | None = None
    approver_name: str | None = None
    approved_at: datetime | None = None
    approval_note: str | None = None
    dispenser_id: int | None = None
    dispenser_name: str | None = None
    dispensed_at: datetime | None = None
    dispense_note: str | None = None
    receiver_id: int | None = None
    receiver_name: str | None = None
    received_at: datetime | None = None
    receive_note: str | None = None
    cancelled_by_id: int | None = None
    cancelled_at: datetime | None = None
    cancellation_note: str | None = None
    total_items: int
    total_value: Decimal
    version: int
    items: list[TransferItemResponse] = []


class TransferSummaryResponse(BaseModel):
    """Row of the transfer list."""

    id: int
    requisition_number: str
    title: str
    source_department: str
    destination_department: str
    status: TransferStatus
    requester_name: str | None = None
    requested_at: datetime
    total_items: int
    total_value: Decimal
