"""API endpoints for Transfers module."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import ALL_ROLES, PHARMACY_ROLES, require_roles
from src.core.auth.models import User
from src.core.database.session import get_db
from src.modules.inventory.models import Department
from src.modules.inventory.queries import StockQueryService
from src.modules.transfers.models import Transfer, TransferItem, TransferStatus
from src.modules.transfers.schemas import (
    TransferApproveRequest,
    TransferCancelRequest,
    TransferCreate,
    TransferDispenseRequest,
    TransferItemBatchResponse,
    TransferItemResponse,
    TransferReceiveRequest,
    TransferResponse,
    TransferSummaryResponse,
)
from src.modules.transfers.workflow import TransferWorkflow
from src.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/transfers", tags=["Transfers"])


def _item_to_response(item: TransferItem) -> TransferItemResponse:
    return TransferItemResponse(
        id=item.id,
        drug_id=item.drug_id,
        hospital_drug_code=item.drug.hospital_drug_code if item.drug else None,
        drug_name=item.drug.name if item.drug else None,
        requested_quantity=item.requested_quantity,
        approved_quantity=item.approved_quantity,
        dispensed_quantity=item.dispensed_quantity,
        received_quantity=item.received_quantity,
        unit_price=item.unit_price,
        total_value=item.total_value,
        lot_number=item.lot_number,
        expiry_date=item.expiry_date,
        manufacturer=item.manufacturer,
        item_note=item.item_note,
        batches=[TransferItemBatchResponse.model_validate(b) for b in item.batches],
    )


def _transfer_to_response(transfer: Transfer) -> TransferResponse:
    return TransferResponse(
        id=transfer.id,
        requisition_number=transfer.requisition_number,
        title=transfer.title,
        purpose=transfer.purpose,
        source_department=transfer.source_department,
        destination_department=transfer.destination_department,
        status=transfer.status,
        requester_id=transfer.requester_id,
        requester_name=transfer.requester.full_name if transfer.requester else None,
        requested_at=transfer.requested_at,
        request_note=transfer.request_note,
        approver_id=transfer.approver_id,
        approver_name=transfer.approver.full_name if transfer.approver else None,
        approved_at=transfer.approved_at,
        approval_note=transfer.approval_note,
        dispenser_id=transfer.dispenser_id,
        dispenser_name=transfer.dispenser.full_name if transfer.dispenser else None,
        dispensed_at=transfer.dispensed_at,
        dispense_note=transfer.dispense_note,
        receiver_id=transfer.receiver_id,
        receiver_name=transfer.receiver.full_name if transfer.receiver else None,
        received_at=transfer.received_at,
        receive_note=transfer.receive_note,
        cancelled_by_id=transfer.cancelled_by_id,
        cancelled_at=transfer.cancelled_at,
        cancellation_note=transfer.cancellation_note,
        total_items=transfer.total_items,
        total_value=transfer.total_value,
        version=transfer.version,
        items=[_item_to_response(i) for i in transfer.items],
    )


async def _detail(db: AsyncSession, transfer_id: int) -> TransferResponse:
    transfer = await StockQueryService(db).get_transfer(transfer_id)
    return _transfer_to_response(transfer)


@router.post(
    "",
    response_model=ApiResponse[TransferResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_transfer(
    data: TransferCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*ALL_ROLES)),
):
    """Open a transfer requisition."""
    transfer = await TransferWorkflow(db).create(data, current_user.id)
    return ApiResponse(
        success=True,
        data=await _detail(db, transfer.id),
        message=f"Transfer {transfer.requisition_number} created",
    )


@router.get(
    "",
    response_model=ApiResponse[PaginatedResponse[TransferSummaryResponse]],
)
async def list_transfers(
    department: Department | None = Query(None, description="Source or destination"),
    status_filter: TransferStatus | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*ALL_ROLES)),
):
    """List transfers, newest first."""
    transfers, total = await StockQueryService(db).list_transfers(
        department=department,
        status=status_filter,
        page=page,
        limit=limit,
    )
    return ApiResponse(
        success=True,
        data=PaginatedResponse.create(
            items=[
                TransferSummaryResponse(
                    id=t.id,
                    requisition_number=t.requisition_number,
                    title=t.title,
                    source_department=t.source_department,
                    destination_department=t.destination_department,
                    status=t.status,
                    requester_name=t.requester.full_name if t.requester else None,
                    requested_at=t.requested_at,
                    total_items=t.total_items,
                    total_value=t.total_value,
                )
                for t in transfers
            ],
            total=total,
            page=page,
            limit=limit,
        ),
    )


@router.get(
    "/{transfer_id}",
    response_model=ApiResponse[TransferResponse],
)
async def get_transfer(
    transfer_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*ALL_ROLES)),
):
    """Transfer with items, quantities and lots."""
    return ApiResponse(success=True, data=await _detail(db, transfer_id))


@router.post(
    "/{transfer_id}/approve",
    response_model=ApiResponse[TransferResponse],
)
async def approve_transfer(
    transfer_id: int,
    data: TransferApproveRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*PHARMACY_ROLES)),
):
    """PENDING -> APPROVED."""
    await TransferWorkflow(db).approve(transfer_id, data, current_user.id)
    return ApiResponse(success=True, data=await _detail(db, transfer_id), message="Transfer approved")


@router.post(
    "/{transfer_id}/dispense",
    response_model=ApiResponse[TransferResponse],
)
async def dispense_transfer(
    transfer_id: int,
    data: TransferDispenseRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*PHARMACY_ROLES)),
):
    """APPROVED -> PREPARED. Takes stock from the source department."""
    await TransferWorkflow(db).dispense(transfer_id, data, current_user.id)
    return ApiResponse(
        success=True, data=await _detail(db, transfer_id), message="Transfer dispensed"
    )


@router.post(
    "/{transfer_id}/receive",
    response_model=ApiResponse[TransferResponse],
)
async def receive_transfer(
    transfer_id: int,
    data: TransferReceiveRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*ALL_ROLES)),
):
    """PREPARED -> DELIVERED or PARTIAL. Credits the destination department."""
    await TransferWorkflow(db).receive(transfer_id, data, current_user.id)
    return ApiResponse(success=True, data=await _detail(db, transfer_id), message="Transfer received")


@router.post(
    "/{transfer_id}/cancel",
    response_model=ApiResponse[TransferResponse],
)
async def cancel_transfer(
    transfer_id: int,
    data: TransferCancelRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*ALL_ROLES)),
):
    """PENDING or APPROVED -> CANCELLED."""
    await TransferWorkflow(db).cancel(transfer_id, data, current_user.id)
    return ApiResponse(
        success=True, data=await _detail(db, transfer_id), message="Transfer cancelled"
    )
