"""API endpoints for Inventory module."""

from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import ALL_ROLES, PHARMACY_ROLES, require_roles
from src.core.auth.models import User, UserRole
from src.core.config import settings
from src.core.database.session import get_db
from src.modules.inventory.models import Department, Stock, StockTransaction, TransactionType
from src.modules.inventory.queries import StockQueryService
from src.modules.inventory.schemas import (
    DispenseResponse,
    DispenseStockRequest,
    DrugBatchResponse,
    ReceiveStockRequest,
    ReserveStockRequest,
    StockReconciliationResponse,
    StockResponse,
    StockSummaryResponse,
    StockTransactionResponse,
    StockUpdateRequest,
    StockUpdateResponse,
    TransactionInfo,
)
from src.modules.inventory.service import InventoryService
from src.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/inventory", tags=["Inventory"])


def stock_to_response(stock: Stock) -> StockResponse:
    return StockResponse(
        id=stock.id,
        drug_id=stock.drug_id,
        hospital_drug_code=stock.drug.hospital_drug_code if stock.drug else None,
        drug_name=stock.drug.name if stock.drug else None,
        unit=stock.drug.unit if stock.drug else None,
        department=stock.department,
        total_quantity=stock.total_quantity,
        reserved_quantity=stock.reserved_quantity,
        available_quantity=stock.available_quantity,
        minimum_stock=stock.minimum_stock,
        is_low_stock=stock.is_low_stock,
        unit_price=stock.drug.price_per_box if stock.drug else 0,
        total_value=stock.total_value,
        last_updated=stock.last_updated,
        version=stock.version,
    )


def transaction_to_response(entry: StockTransaction) -> StockTransactionResponse:
    stock = entry.stock
    return StockTransactionResponse(
        id=entry.id,
        stock_id=entry.stock_id,
        drug_id=stock.drug_id if stock else None,
        drug_name=stock.drug.name if stock and stock.drug else None,
        department=stock.department if stock else None,
        user_id=entry.user_id,
        user_name=entry.user.full_name if entry.user else None,
        transaction_type=entry.transaction_type,
        quantity=entry.quantity,
        before_quantity=entry.before_quantity,
        after_quantity=entry.after_quantity,
        before_min_stock=entry.before_min_stock,
        after_min_stock=entry.after_min_stock,
        min_stock_change=entry.min_stock_change,
        unit_cost=entry.unit_cost,
        total_cost=entry.total_cost,
        reference=entry.reference,
        note=entry.note,
        batch_id=entry.batch_id,
        lot_number=entry.batch.lot_number if entry.batch else None,
        transfer_id=entry.transfer_id,
        created_at=entry.created_at,
    )


# --- Stock Endpoints ---


@router.get(
    "/stocks",
    response_model=ApiResponse[PaginatedResponse[StockResponse]],
)
async def list_stocks(
    department: Department | None = Query(None),
    low_stock_only: bool = Query(False, description="Only stocks below their minimum"),
    search: str | None = Query(None, description="Drug name, generic name or code"),
    include_zero: bool = Query(True, description="Include stocks with zero quantity"),
    page: int = Query(1, ge=1),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*ALL_ROLES)),
):
    """List stock with availability."""
    stocks, total = await StockQueryService(db).list_stocks(
        department=department,
        low_stock_only=low_stock_only,
        search=search,
        include_zero=include_zero,
        page=page,
        limit=limit,
    )
    return ApiResponse(
        success=True,
        data=PaginatedResponse.create(
            items=[stock_to_response(s) for s in stocks],
            total=total,
            page=page,
            limit=limit,
        ),
    )


@router.get(
    "/stocks/summary",
    response_model=ApiResponse[StockSummaryResponse],
)
async def get_stock_summary(
    department: Department | None = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*ALL_ROLES)),
):
    """Item counts and value of stock."""
    summary = await StockQueryService(db).summary(department)
    return ApiResponse(
        success=True,
        data=StockSummaryResponse(
            department=summary.department,
            total_items=summary.total_items,
            low_stock_count=summary.low_stock_count,
            out_of_stock_count=summary.out_of_stock_count,
            total_value=summary.total_value,
        ),
    )


@router.get(
    "/stocks/{stock_id}",
    response_model=ApiResponse[StockResponse],
)
async def get_stock(
    stock_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*ALL_ROLES)),
):
    """Get one stock row."""
    stock = await StockQueryService(db).get_stock(stock_id)
    return ApiResponse(success=True, data=stock_to_response(stock))


@router.patch(
    "/stocks/{stock_id}",
    response_model=ApiResponse[StockUpdateResponse],
)
async def update_stock(
    stock_id: int,
    data: StockUpdateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*PHARMACY_ROLES)),
):
    """Edit total and minimum stock. The ledger kind is derived from the change."""
    service = InventoryService(db)
    _, entry, classification = await service.adjust_stock(stock_id, data, current_user.id)
    stock = await StockQueryService(db).get_stock(stock_id)
    return ApiResponse(
        success=True,
        data=StockUpdateResponse(
            stock=stock_to_response(stock),
            transaction_info=TransactionInfo(
                kind=classification.transaction_type,
                quantity_changed=classification.quantity_changed,
                quantity_change=classification.quantity_change,
                minimum_stock_changed=classification.min_stock_changed,
                minimum_stock_change=classification.min_stock_change,
                reason=entry.note,
                transaction_id=entry.id,
            ),
        ),
        message="Stock updated",
    )


@router.delete(
    "/stocks/{stock_id}",
    response_model=ApiResponse[None],
)
async def delete_stock(
    stock_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.SUPER_ADMIN, UserRole.ADMIN)),
):
    """Delete a stock row that has no history."""
    await InventoryService(db).delete_stock(stock_id)
    return ApiResponse(success=True, data=None, message="Stock deleted")


@router.get(
    "/stocks/{stock_id}/batches",
    response_model=ApiResponse[list[DrugBatchResponse]],
)
async def list_stock_batches(
    stock_id: int,
    include_empty: bool = Query(True, description="Include lots with nothing left"),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*ALL_ROLES)),
):
    """Lots of a stock in allocation order."""
    batches = await StockQueryService(db).list_batches(stock_id, include_empty=include_empty)
    return ApiResponse(
        success=True,
        data=[DrugBatchResponse.model_validate(b) for b in batches],
    )


@router.get(
    "/stocks/{stock_id}/reconciliation",
    response_model=ApiResponse[StockReconciliationResponse],
)
async def reconcile_stock(
    stock_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*PHARMACY_ROLES)),
):
    """Compare the stock total with its ledger replay and its lots."""
    result = await StockQueryService(db).reconcile(stock_id)
    return ApiResponse(
        success=True,
        data=StockReconciliationResponse(
            stock_id=result.stock_id,
            current_total=result.current_total,
            ledger_total=result.ledger_total,
            batch_total=result.batch_total,
            entry_count=result.entry_count,
            chain_intact=result.chain_intact,
            is_consistent=result.is_consistent,
        ),
    )


@router.post(
    "/stocks/{stock_id}/reserve",
    response_model=ApiResponse[StockResponse],
)
async def reserve_stock(
    stock_id: int,
    data: ReserveStockRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*PHARMACY_ROLES)),
):
    """Hold units so they are not dispensed or transferred."""
    await InventoryService(db).reserve(stock_id, data.quantity, current_user.id, data.note)
    stock = await StockQueryService(db).get_stock(stock_id)
    return ApiResponse(success=True, data=stock_to_response(stock))


@router.post(
    "/stocks/{stock_id}/release",
    response_model=ApiResponse[StockResponse],
)
async def release_stock(
    stock_id: int,
    data: ReserveStockRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*PHARMACY_ROLES)),
):
    """Release previously reserved units."""
    await InventoryService(db).release(stock_id, data.quantity, current_user.id, data.note)
    stock = await StockQueryService(db).get_stock(stock_id)
    return ApiResponse(success=True, data=stock_to_response(stock))


# --- Movement Endpoints ---


@router.post(
    "/receive",
    response_model=ApiResponse[StockTransactionResponse],
    status_code=status.HTTP_201_CREATED,
)
async def receive_stock(
    data: ReceiveStockRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*PHARMACY_ROLES)),
):
    """Receive a lot from a supplier."""
    entry = await InventoryService(db).receive(data, current_user.id)
    loaded = await StockQueryService(db).get_transactions([entry.id])
    return ApiResponse(
        success=True,
        data=transaction_to_response(loaded[0]),
        message="Stock received",
    )


@router.post(
    "/dispense",
    response_model=ApiResponse[DispenseResponse],
)
async def dispense_stock(
    data: DispenseStockRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*PHARMACY_ROLES)),
):
    """Dispense to patients, earliest-expiring lots first. Partial fulfilment is allowed."""
    result = await InventoryService(db).dispense(data, current_user.id)
    loaded = await StockQueryService(db).get_transactions([t.id for t in result.transactions])
    entries = [transaction_to_response(e) for e in loaded]
    return ApiResponse(
        success=True,
        data=DispenseResponse(
            drug_id=data.drug_id,
            department=data.department,
            requested_quantity=result.requested_quantity,
            dispensed_quantity=result.dispensed_quantity,
            unsatisfied=result.unsatisfied,
            transactions=entries,
        ),
    )


@router.get(
    "/transactions",
    response_model=ApiResponse[PaginatedResponse[StockTransactionResponse]],
)
async def list_transactions(
    department: Department | None = Query(None),
    stock_id: int | None = Query(None),
    transfer_id: int | None = Query(None),
    transaction_type: list[TransactionType] | None = Query(None),
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*ALL_ROLES)),
):
    """Stock ledger, newest first."""
    entries, total = await StockQueryService(db).list_transactions(
        department=department,
        stock_id=stock_id,
        transfer_id=transfer_id,
        transaction_types=[t.value for t in transaction_type] if transaction_type else None,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )
    return ApiResponse(
        success=True,
        data=PaginatedResponse.create(
            items=[transaction_to_response(e) for e in entries],
            total=total,
            page=page,
            limit=limit,
        ),
    )


# --- Batch Endpoints ---


@router.get(
    "/batches/expiring",
    response_model=ApiResponse[list[DrugBatchResponse]],
)
async def list_expiring_batches(
    days: int | None = Query(None, ge=0, description="Window in days"),
    department: Department | None = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*ALL_ROLES)),
):
    """Lots with stock left that expire within the window."""
    within = days if days is not None else settings.expiry_alert_days
    batches = await StockQueryService(db).expiring_batches(within, department)
    return ApiResponse(
        success=True,
        data=[DrugBatchResponse.model_validate(b) for b in batches],
    )
