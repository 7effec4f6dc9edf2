"""Read-only projections over stock, the ledger, lots and transfers."""

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import NotFoundError
from src.modules.drugs.models import Drug
from src.modules.inventory.ledger import signed_delta
from src.modules.inventory.models import Department, DrugBatch, Stock, StockTransaction
from src.modules.transfers.models import Transfer, TransferStatus
from src.shared.utils.dates import days_from_today
from src.shared.utils.money import round_money


@dataclass(frozen=True)
class StockSummary:
    department: str | None
    total_items: int
    low_stock_count: int
    out_of_stock_count: int
    total_value: Decimal


@dataclass(frozen=True)
class StockReconciliation:
    stock_id: int
    current_total: int
    ledger_total: int
    batch_total: int
    entry_count: int
    chain_intact: bool

    @property
    def is_consistent(self) -> bool:
        return (
            self.chain_intact
            and self.ledger_total == self.current_total
            and self.batch_total == self.current_total
        )


def _low_stock_clause():
    return and_(
        Stock.minimum_stock > 0,
        (Stock.total_quantity - Stock.reserved_quantity) < Stock.minimum_stock,
    )


class StockQueryService:
    """Queries for stock, transaction history, lots and transfers."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_stock(self, stock_id: int) -> Stock:
        result = await self.db.execute(
            select(Stock).where(Stock.id == stock_id).execution_options(populate_existing=True)
        )
        stock = result.scalar_one_or_none()
        if not stock:
            raise NotFoundError("Stock", stock_id)
        return stock

    async def list_stocks(
        self,
        department: Department | None = None,
        low_stock_only: bool = False,
        search: str | None = None,
        include_zero: bool = True,
        page: int = 1,
        limit: int = 100,
    ) -> tuple[list[Stock], int]:
        """List stock rows ordered by drug name."""
        query = select(Stock).join(Drug, Drug.id == Stock.drug_id).order_by(Drug.name, Stock.id)

        if department is not None:
            query = query.where(Stock.department == Department(department).value)
        if low_stock_only:
            query = query.where(_low_stock_clause())
        if not include_zero:
            query = query.where(Stock.total_quantity > 0)
        if search:
            pattern = f"%{search.strip()}%"
            query = query.where(
                or_(
                    Drug.name.ilike(pattern),
                    Drug.generic_name.ilike(pattern),
                    Drug.hospital_drug_code.ilike(pattern),
                )
            )

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        offset = (page - 1) * limit
        result = await self.db.execute(query.offset(offset).limit(limit))
        return list(result.scalars().all()), total

    async def summary(self, department: Department | None = None) -> StockSummary:
        """Item counts and total value, optionally for one department."""
        query = select(
            func.count(Stock.id),
            func.coalesce(func.sum(Stock.total_value), 0),
            func.count(Stock.id).filter(_low_stock_clause()),
            func.count(Stock.id).filter(Stock.total_quantity == 0),
        )
        if department is not None:
            query = query.where(Stock.department == Department(department).value)
        total_items, total_value, low_stock, out_of_stock = (await self.db.execute(query)).one()
        return StockSummary(
            department=Department(department).value if department is not None else None,
            total_items=int(total_items or 0),
            low_stock_count=int(low_stock or 0),
            out_of_stock_count=int(out_of_stock or 0),
            total_value=round_money(total_value or 0),
        )

    async def list_transactions(
        self,
        department: Department | None = None,
        stock_id: int | None = None,
        transfer_id: int | None = None,
        transaction_types: list[str] | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[StockTransaction], int]:
        """Ledger entries, newest first."""
        query = (
            select(StockTransaction)
            .join(Stock, Stock.id == StockTransaction.stock_id)
            .order_by(StockTransaction.created_at.desc(), StockTransaction.id.desc())
            .execution_options(populate_existing=True)
        )

        if department is not None:
            query = query.where(Stock.department == Department(department).value)
        if stock_id is not None:
            query = query.where(StockTransaction.stock_id == stock_id)
        if transfer_id is not None:
            query = query.where(StockTransaction.transfer_id == transfer_id)
        if transaction_types:
            query = query.where(StockTransaction.transaction_type.in_(transaction_types))
        if date_from is not None:
            query = query.where(
                StockTransaction.created_at
                >= datetime.combine(date_from, time.min, tzinfo=timezone.utc)
            )
        if date_to is not None:
            query = query.where(
                StockTransaction.created_at
                <= datetime.combine(date_to, time.max, tzinfo=timezone.utc)
            )

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        offset = (page - 1) * limit
        result = await self.db.execute(query.offset(offset).limit(limit))
        return list(result.scalars().all()), total

    async def get_transactions(self, transaction_ids: list[int]) -> list[StockTransaction]:
        """Given ledger entries with stock, user and lot loaded, in ledger order."""
        if not transaction_ids:
            return []
        result = await self.db.execute(
            select(StockTransaction)
            .where(StockTransaction.id.in_(transaction_ids))
            .order_by(StockTransaction.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_batches(self, stock_id: int, include_empty: bool = True) -> list[DrugBatch]:
        """Lots of a stock in allocation order."""
        await self.get_stock(stock_id)
        query = (
            select(DrugBatch)
            .where(DrugBatch.stock_id == stock_id)
            .order_by(
                DrugBatch.expiry_date.is_(None),
                DrugBatch.expiry_date.asc(),
                DrugBatch.received_date.asc(),
                DrugBatch.id.asc(),
            )
        )
        if not include_empty:
            query = query.where(DrugBatch.remaining_quantity > 0)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def expiring_batches(
        self, within_days: int, department: Department | None = None
    ) -> list[DrugBatch]:
        """Non-empty lots expiring within ``within_days`` (already expired included)."""
        query = (
            select(DrugBatch)
            .where(
                DrugBatch.remaining_quantity > 0,
                DrugBatch.expiry_date.is_not(None),
                DrugBatch.expiry_date <= days_from_today(within_days),
            )
            .order_by(DrugBatch.expiry_date.asc(), DrugBatch.id.asc())
        )
        if department is not None:
            query = query.where(DrugBatch.department == Department(department).value)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def reconcile(self, stock_id: int) -> StockReconciliation:
        """Replay the ledger of a stock and sum its lots."""
        stock = await self.get_stock(stock_id)
        result = await self.db.execute(
            select(StockTransaction)
            .where(StockTransaction.stock_id == stock_id)
            .order_by(StockTransaction.id.asc())
        )
        entries = list(result.scalars().all())

        total = 0
        chain_intact = True
        for entry in entries:
            if entry.before_quantity != total:
                chain_intact = False
            total += signed_delta(entry.transaction_type, entry.quantity)
            if entry.after_quantity != total:
                chain_intact = False

        batch_total = await self.db.scalar(
            select(func.coalesce(func.sum(DrugBatch.remaining_quantity), 0)).where(
                DrugBatch.stock_id == stock_id
            )
        )
        return StockReconciliation(
            stock_id=stock.id,
            current_total=stock.total_quantity,
            ledger_total=total,
            batch_total=int(batch_total or 0),
            entry_count=len(entries),
            chain_intact=chain_intact,
        )

    async def get_transfer(self, transfer_id: int) -> Transfer:
        """Transfer with items, lot consumption and actors loaded."""
        result = await self.db.execute(
            select(Transfer)
            .where(Transfer.id == transfer_id)
            .execution_options(populate_existing=True)
        )
        transfer = result.scalar_one_or_none()
        if not transfer:
            raise NotFoundError("Transfer", transfer_id)
        return transfer

    async def list_transfers(
        self,
        department: Department | None = None,
        status: TransferStatus | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[Transfer], int]:
        """Transfers touching ``department`` on either side, newest first."""
        query = select(Transfer).order_by(Transfer.requested_at.desc(), Transfer.id.desc())
        if department is not None:
            value = Department(department).value
            query = query.where(
                or_(
                    Transfer.source_department == value,
                    Transfer.destination_department == value,
                )
            )
        if status is not None:
            query = query.where(Transfer.status == TransferStatus(status).value)

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        offset = (page - 1) * limit
        result = await self.db.execute(query.offset(offset).limit(limit))
        return list(result.scalars().all()), total
