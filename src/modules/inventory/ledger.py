"""Stock ledger.

Every change to a Stock row goes through ``StockLedger`` and is paired with
an append-only ``StockTransaction`` holding the before/after state. The
ledger never commits: callers wrap it in ``run_in_transaction``.
"""

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import ConflictError, NotFoundError, ValidationError
from src.modules.drugs.models import Drug
from src.modules.inventory.batches import BatchAllocator
from src.modules.inventory.models import Department, Stock, StockTransaction, TransactionType
from src.shared.utils.dates import utcnow
from src.shared.utils.money import line_value, round_money

INFLOW_TYPES = frozenset({TransactionType.RECEIVE_EXTERNAL, TransactionType.TRANSFER_IN})
OUTFLOW_TYPES = frozenset({TransactionType.DISPENSE_EXTERNAL, TransactionType.TRANSFER_OUT})


def signed_delta(transaction_type: str | TransactionType, quantity: int) -> int:
    """Effect of a ledger entry on the stock total."""
    match TransactionType(transaction_type):
        case (
            TransactionType.RECEIVE_EXTERNAL
            | TransactionType.TRANSFER_IN
            | TransactionType.ADJUST_INCREASE
        ):
            return quantity
        case (
            TransactionType.DISPENSE_EXTERNAL
            | TransactionType.TRANSFER_OUT
            | TransactionType.ADJUST_DECREASE
        ):
            return -quantity
        case (
            TransactionType.MIN_STOCK_INCREASE
            | TransactionType.MIN_STOCK_DECREASE
            | TransactionType.DATA_UPDATE
            | TransactionType.RESERVE
            | TransactionType.UNRESERVE
        ):
            return 0
        case _:
            raise ValueError(f"Unhandled transaction type: {transaction_type}")


@dataclass(frozen=True)
class AdjustmentClassification:
    """Kind and recorded quantity derived from an edit of a stock row."""

    transaction_type: TransactionType
    quantity: int
    quantity_change: int
    min_stock_change: int

    @property
    def quantity_changed(self) -> bool:
        return self.quantity_change != 0

    @property
    def min_stock_changed(self) -> bool:
        return self.min_stock_change != 0


def classify_adjustment(
    before_quantity: int,
    after_quantity: int,
    before_min_stock: int,
    after_min_stock: int,
) -> AdjustmentClassification:
    """Derive the ledger kind from observed deltas.

    A quantity change wins over a minimum-stock change. For MIN_STOCK_* the
    recorded quantity is the signed minimum-stock delta.
    """
    quantity_change = after_quantity - before_quantity
    min_stock_change = after_min_stock - before_min_stock

    if quantity_change > 0:
        kind, quantity = TransactionType.ADJUST_INCREASE, quantity_change
    elif quantity_change < 0:
        kind, quantity = TransactionType.ADJUST_DECREASE, -quantity_change
    elif min_stock_change > 0:
        kind, quantity = TransactionType.MIN_STOCK_INCREASE, min_stock_change
    elif min_stock_change < 0:
        kind, quantity = TransactionType.MIN_STOCK_DECREASE, min_stock_change
    else:
        kind, quantity = TransactionType.DATA_UPDATE, 0

    return AdjustmentClassification(
        transaction_type=kind,
        quantity=quantity,
        quantity_change=quantity_change,
        min_stock_change=min_stock_change,
    )


def default_adjustment_reason(transaction_type: str | TransactionType) -> str:
    """Reason stored when the user gives none."""
    match TransactionType(transaction_type):
        case TransactionType.ADJUST_INCREASE:
            return "ปรับเพิ่มสต็อก"
        case TransactionType.ADJUST_DECREASE:
            return "ปรับลดสต็อก"
        case TransactionType.MIN_STOCK_INCREASE:
            return "ปรับเพิ่มขั้นต่ำ"
        case TransactionType.MIN_STOCK_DECREASE:
            return "ปรับลดขั้นต่ำ"
        case TransactionType.DATA_UPDATE:
            return "อัพเดทข้อมูล"
        case (
            TransactionType.RECEIVE_EXTERNAL
            | TransactionType.DISPENSE_EXTERNAL
            | TransactionType.TRANSFER_OUT
            | TransactionType.TRANSFER_IN
            | TransactionType.RESERVE
            | TransactionType.UNRESERVE
        ):
            raise ValueError(f"{transaction_type} is not an adjustment kind")
        case _:
            raise ValueError(f"Unhandled transaction type: {transaction_type}")


class StockLedger:
    """Applies stock changes and appends the matching ledger entries."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.allocator = BatchAllocator(db)

    async def get_stock_for_update(self, stock_id: int) -> Stock:
        result = await self.db.execute(
            select(Stock)
            .where(Stock.id == stock_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        stock = result.scalar_one_or_none()
        if not stock:
            raise NotFoundError("Stock", stock_id)
        return stock

    async def find_stock_for_update(
        self, drug_id: int, department: str | Department
    ) -> Stock | None:
        result = await self.db.execute(
            select(Stock)
            .where(Stock.drug_id == drug_id, Stock.department == Department(department).value)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create_stock(self, drug_id: int, department: str | Department) -> Stock:
        """Locked stock row for (drug, department), created empty on first use."""
        department = Department(department).value
        stock = await self.find_stock_for_update(drug_id, department)
        if stock:
            return stock

        drug = await self.db.get(Drug, drug_id)
        if not drug:
            raise NotFoundError("Drug", drug_id)
        stock = Stock(
            drug_id=drug_id,
            department=department,
            total_quantity=0,
            reserved_quantity=0,
            minimum_stock=0,
            total_value=Decimal("0.00"),
            last_updated=utcnow(),
        )
        stock.drug = drug
        self.db.add(stock)
        await self.db.flush()
        return stock

    @staticmethod
    def check_version(stock: Stock, expected_version: int | None) -> None:
        """Reject a write based on a stale read of the stock row."""
        if expected_version is not None and stock.version != expected_version:
            raise ConflictError(
                f"Stock {stock.id} was modified by another request "
                f"(version {stock.version}, expected {expected_version})",
                field="expected_version",
            )

    async def record_adjustment(
        self,
        stock: Stock,
        new_total_quantity: int,
        new_minimum_stock: int,
        reason: str | None,
        user_id: int,
        reference: str | None = None,
    ) -> tuple[StockTransaction, AdjustmentClassification]:
        """Set total and minimum stock to new values, classifying the change.

        Decreases write off lots earliest-expiry first; increases are credited
        to the stock's adjustment lot so lot totals keep matching the stock.
        """
        if new_total_quantity < 0:
            raise ValidationError("Total quantity must not be negative", field="total_quantity")
        if new_minimum_stock < 0:
            raise ValidationError("Minimum stock must not be negative", field="minimum_stock")
        if new_total_quantity < stock.reserved_quantity:
            raise ValidationError(
                f"Total quantity {new_total_quantity} is below the reserved "
                f"quantity {stock.reserved_quantity}",
                field="total_quantity",
            )

        before_quantity = stock.total_quantity
        before_min_stock = stock.minimum_stock
        classification = classify_adjustment(
            before_quantity, new_total_quantity, before_min_stock, new_minimum_stock
        )
        unit_cost = round_money(stock.drug.price_per_box)

        if classification.quantity_change < 0:
            allocation = await self.allocator.allocate(
                stock.drug_id, stock.department, -classification.quantity_change
            )
            if allocation.unsatisfied:
                raise ValidationError(
                    f"Lots of stock {stock.id} cover only {allocation.allocated} of the "
                    f"{-classification.quantity_change} units to remove",
                    field="total_quantity",
                )
        elif classification.quantity_change > 0:
            await self.allocator.credit_adjustment_lot(
                stock, classification.quantity_change, unit_cost
            )

        stock.total_quantity = new_total_quantity
        stock.minimum_stock = new_minimum_stock
        self._touch(stock)

        entry = StockTransaction(
            stock_id=stock.id,
            user_id=user_id,
            transaction_type=classification.transaction_type.value,
            quantity=classification.quantity,
            before_quantity=before_quantity,
            after_quantity=new_total_quantity,
            unit_cost=unit_cost,
            total_cost=(
                line_value(abs(classification.quantity_change), unit_cost)
                if classification.quantity_changed
                else Decimal("0.00")
            ),
            reference=reference,
            note=reason or default_adjustment_reason(classification.transaction_type),
        )
        if classification.min_stock_changed:
            entry.before_min_stock = before_min_stock
            entry.after_min_stock = new_minimum_stock
            entry.min_stock_change = classification.min_stock_change
        return await self._append(entry), classification

    async def record_inflow(
        self,
        stock: Stock,
        transaction_type: TransactionType,
        quantity: int,
        user_id: int,
        *,
        unit_cost: Decimal | None = None,
        reference: str | None = None,
        note: str | None = None,
        batch_id: int | None = None,
        transfer_id: int | None = None,
    ) -> StockTransaction:
        """Add units that arrived in a lot (the caller credits the lot)."""
        if transaction_type not in INFLOW_TYPES:
            raise ValueError(f"{transaction_type} is not an inflow kind")
        if quantity <= 0:
            raise ValidationError("Quantity must be positive", field="quantity")
        return await self._apply_movement(
            stock, transaction_type, quantity, user_id, unit_cost, reference, note, batch_id, transfer_id
        )

    async def record_outflow(
        self,
        stock: Stock,
        transaction_type: TransactionType,
        quantity: int,
        user_id: int,
        *,
        unit_cost: Decimal | None = None,
        reference: str | None = None,
        note: str | None = None,
        batch_id: int | None = None,
        transfer_id: int | None = None,
    ) -> StockTransaction:
        """Remove units taken from a lot (the caller decrements the lot)."""
        if transaction_type not in OUTFLOW_TYPES:
            raise ValueError(f"{transaction_type} is not an outflow kind")
        if quantity <= 0:
            raise ValidationError("Quantity must be positive", field="quantity")
        if quantity > stock.available_quantity:
            raise ValidationError(
                f"Cannot remove {quantity} units: only {stock.available_quantity} available",
                field="quantity",
            )
        return await self._apply_movement(
            stock, transaction_type, quantity, user_id, unit_cost, reference, note, batch_id, transfer_id
        )

    async def reserve(
        self, stock: Stock, quantity: int, user_id: int, note: str | None = None
    ) -> StockTransaction:
        if quantity <= 0:
            raise ValidationError("Quantity must be positive", field="quantity")
        if quantity > stock.available_quantity:
            raise ValidationError(
                f"Cannot reserve {quantity} units: only {stock.available_quantity} available",
                field="quantity",
            )
        stock.reserved_quantity += quantity
        return await self._append_marker(stock, TransactionType.RESERVE, quantity, user_id, note)

    async def release(
        self, stock: Stock, quantity: int, user_id: int, note: str | None = None
    ) -> StockTransaction:
        if quantity <= 0:
            raise ValidationError("Quantity must be positive", field="quantity")
        if quantity > stock.reserved_quantity:
            raise ValidationError(
                f"Cannot release {quantity} units: only {stock.reserved_quantity} reserved",
                field="quantity",
            )
        stock.reserved_quantity -= quantity
        return await self._append_marker(stock, TransactionType.UNRESERVE, quantity, user_id, note)

    async def restamp_price(
        self, stock: Stock, new_price: Decimal, user_id: int, note: str | None = None
    ) -> StockTransaction:
        """Revalue a stock after a catalog price change (total unchanged)."""
        new_price = round_money(new_price)
        stock.total_value = line_value(stock.total_quantity, new_price)
        stock.last_updated = utcnow()
        entry = StockTransaction(
            stock_id=stock.id,
            user_id=user_id,
            transaction_type=TransactionType.DATA_UPDATE.value,
            quantity=0,
            before_quantity=stock.total_quantity,
            after_quantity=stock.total_quantity,
            unit_cost=new_price,
            total_cost=stock.total_value,
            note=note,
        )
        return await self._append(entry)

    async def _apply_movement(
        self,
        stock: Stock,
        transaction_type: TransactionType,
        quantity: int,
        user_id: int,
        unit_cost: Decimal | None,
        reference: str | None,
        note: str | None,
        batch_id: int | None,
        transfer_id: int | None,
    ) -> StockTransaction:
        before_quantity = stock.total_quantity
        stock.total_quantity = before_quantity + signed_delta(transaction_type, quantity)
        self._touch(stock)

        cost = round_money(unit_cost if unit_cost is not None else stock.drug.price_per_box)
        entry = StockTransaction(
            stock_id=stock.id,
            user_id=user_id,
            transaction_type=transaction_type.value,
            quantity=quantity,
            before_quantity=before_quantity,
            after_quantity=stock.total_quantity,
            unit_cost=cost,
            total_cost=line_value(quantity, cost),
            reference=reference,
            note=note,
            batch_id=batch_id,
            transfer_id=transfer_id,
        )
        return await self._append(entry)

    async def _append_marker(
        self,
        stock: Stock,
        transaction_type: TransactionType,
        quantity: int,
        user_id: int,
        note: str | None,
    ) -> StockTransaction:
        stock.last_updated = utcnow()
        entry = StockTransaction(
            stock_id=stock.id,
            user_id=user_id,
            transaction_type=transaction_type.value,
            quantity=quantity,
            before_quantity=stock.total_quantity,
            after_quantity=stock.total_quantity,
            unit_cost=round_money(stock.drug.price_per_box),
            total_cost=Decimal("0.00"),
            note=note,
        )
        return await self._append(entry)

    def _touch(self, stock: Stock) -> None:
        stock.total_value = line_value(stock.total_quantity, stock.drug.price_per_box)
        stock.last_updated = utcnow()

    async def _append(self, entry: StockTransaction) -> StockTransaction:
        expected = entry.before_quantity + signed_delta(entry.transaction_type, entry.quantity)
        if entry.after_quantity != expected:
            raise ValueError(
                f"Ledger entry for stock {entry.stock_id} does not balance: "
                f"{entry.before_quantity} -> {entry.after_quantity} via {entry.transaction_type}"
            )
        self.db.add(entry)
        await self.db.flush()
        return entry
