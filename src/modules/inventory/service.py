"""Service for Inventory module: direct stock operations outside transfers."""

import logging
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database.transaction import run_in_transaction
from src.core.documents.number_generator import get_document_number
from src.core.exceptions import NotFoundError, ValidationError
from src.modules.inventory.batches import BatchAllocator
from src.modules.inventory.ledger import AdjustmentClassification, StockLedger
from src.modules.inventory.models import (
    Department,
    DrugBatch,
    Stock,
    StockTransaction,
    TransactionType,
)
from src.modules.inventory.schemas import (
    DispenseStockRequest,
    ReceiveStockRequest,
    StockUpdateRequest,
)
from src.shared.utils.dates import today

logger = logging.getLogger(__name__)


@dataclass
class DispenseResult:
    stock: Stock
    requested_quantity: int
    transactions: list[StockTransaction]
    unsatisfied: int

    @property
    def dispensed_quantity(self) -> int:
        return sum(t.quantity for t in self.transactions)


class InventoryService:
    """Receipts, patient dispensing, manual edits and reservations."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = StockLedger(db)
        self.allocator = BatchAllocator(db)

    async def adjust_stock(
        self, stock_id: int, data: StockUpdateRequest, user_id: int
    ) -> tuple[Stock, StockTransaction, AdjustmentClassification]:
        """Apply an edit of total and minimum stock."""

        async def work():
            stock = await self.ledger.get_stock_for_update(stock_id)
            self.ledger.check_version(stock, data.expected_version)
            if Department(data.department).value != stock.department:
                raise ValidationError(
                    f"Stock {stock_id} belongs to {stock.department}, not {data.department}",
                    field="department",
                )
            entry, classification = await self.ledger.record_adjustment(
                stock,
                data.total_quantity,
                data.minimum_stock,
                data.reason,
                user_id,
            )
            return stock, entry, classification

        stock, entry, classification = await run_in_transaction(self.db, work)
        logger.info(
            "Stock %s adjusted by user %s: %s %d",
            stock.id,
            user_id,
            classification.transaction_type,
            classification.quantity,
        )
        return stock, entry, classification

    async def receive(self, data: ReceiveStockRequest, user_id: int) -> StockTransaction:
        """Receive one lot from a supplier."""

        async def work() -> StockTransaction:
            stock = await self.ledger.get_or_create_stock(data.drug_id, data.department)
            unit_cost = data.unit_cost if data.unit_cost is not None else stock.drug.price_per_box
            batch = await self.allocator.credit(
                stock,
                data.lot_number,
                data.quantity,
                expiry_date=data.expiry_date,
                manufacturer=data.manufacturer,
                unit_cost=unit_cost,
            )
            reference = data.reference or await get_document_number(self.db, "RCV")
            return await self.ledger.record_inflow(
                stock,
                TransactionType.RECEIVE_EXTERNAL,
                data.quantity,
                user_id,
                unit_cost=unit_cost,
                reference=reference,
                note=data.note,
                batch_id=batch.id,
            )

        return await run_in_transaction(self.db, work)

    async def dispense(self, data: DispenseStockRequest, user_id: int) -> DispenseResult:
        """Dispense to patients from unexpired lots, earliest expiry first.

        Dispenses what is available; the remainder is reported as unsatisfied.
        """

        async def work() -> DispenseResult:
            stock = await self.ledger.find_stock_for_update(data.drug_id, data.department)
            if stock is None:
                raise NotFoundError(f"Stock of drug {data.drug_id} in {data.department}")
            allocation = await self.allocator.allocate(
                stock.drug_id,
                stock.department,
                min(data.quantity, stock.available_quantity),
                exclude_expired_before=today(),
            )
            transactions = []
            for consumption in allocation.consumptions:
                transactions.append(
                    await self.ledger.record_outflow(
                        stock,
                        TransactionType.DISPENSE_EXTERNAL,
                        consumption.quantity,
                        user_id,
                        reference=data.reference,
                        note=data.note,
                        batch_id=consumption.batch_id,
                    )
                )
            return DispenseResult(
                stock=stock,
                requested_quantity=data.quantity,
                transactions=transactions,
                unsatisfied=data.quantity - allocation.allocated,
            )

        result = await run_in_transaction(self.db, work)
        if result.unsatisfied:
            logger.info(
                "Dispensed %d of %d units of drug %s in %s",
                result.dispensed_quantity,
                data.quantity,
                data.drug_id,
                data.department,
            )
        return result

    async def reserve(
        self, stock_id: int, quantity: int, user_id: int, note: str | None = None
    ) -> Stock:
        async def work() -> Stock:
            stock = await self.ledger.get_stock_for_update(stock_id)
            await self.ledger.reserve(stock, quantity, user_id, note)
            return stock

        return await run_in_transaction(self.db, work)

    async def release(
        self, stock_id: int, quantity: int, user_id: int, note: str | None = None
    ) -> Stock:
        async def work() -> Stock:
            stock = await self.ledger.get_stock_for_update(stock_id)
            await self.ledger.release(stock, quantity, user_id, note)
            return stock

        return await run_in_transaction(self.db, work)

    async def delete_stock(self, stock_id: int) -> None:
        """Remove a stock row that never had ledger entries or lots."""

        async def work() -> None:
            stock = await self.ledger.get_stock_for_update(stock_id)
            entries = await self.db.scalar(
                select(func.count())
                .select_from(StockTransaction)
                .where(StockTransaction.stock_id == stock_id)
            )
            lots = await self.db.scalar(
                select(func.count()).select_from(DrugBatch).where(DrugBatch.stock_id == stock_id)
            )
            if entries or lots:
                raise ValidationError(
                    f"Stock {stock_id} has {entries} ledger entries and {lots} lots "
                    "and cannot be deleted",
                )
            await self.db.delete(stock)
            await self.db.flush()

        await run_in_transaction(self.db, work)
