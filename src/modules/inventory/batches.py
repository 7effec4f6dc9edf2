"""Lot allocation, earliest expiry first."""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import ValidationError
from src.modules.inventory.models import (
    ADJUSTMENT_LOT,
    LOT_NUMBER_LENGTH,
    Department,
    DrugBatch,
    Stock,
)
from src.shared.utils.dates import as_utc, utcnow
from src.shared.utils.money import round_money

_NO_DATE = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class BatchConsumption:
    """Units taken from one lot."""

    batch_id: int
    lot_number: str
    expiry_date: date | None
    manufacturer: str | None
    unit_cost: Decimal
    quantity: int


@dataclass(frozen=True)
class AllocationResult:
    consumptions: tuple[BatchConsumption, ...]
    unsatisfied: int

    @property
    def allocated(self) -> int:
        return sum(c.quantity for c in self.consumptions)


def allocation_order(lot: Any) -> tuple:
    """Sort key: earliest expiry, then earliest received, then id. No expiry sorts last."""
    return (
        lot.expiry_date is None,
        lot.expiry_date or date.max,
        as_utc(lot.received_date) or _NO_DATE,
        lot.id,
    )


def plan_allocation(
    lots: Iterable[Any],
    requested_quantity: int,
    exclude_expired_before: date | None = None,
) -> tuple[list[tuple[Any, int]], int]:
    """Split ``requested_quantity`` over ``lots`` without touching them.

    ``lots`` are objects with ``id``, ``expiry_date``, ``received_date`` and
    ``remaining_quantity``. Lots expiring before ``exclude_expired_before``
    are skipped. Returns ``[(lot, quantity), ...]`` and the unsatisfied rest.
    """
    if requested_quantity < 0:
        raise ValidationError("Requested quantity must not be negative", field="quantity")

    plan: list[tuple[Any, int]] = []
    need = requested_quantity
    for lot in sorted(lots, key=allocation_order):
        if need <= 0:
            break
        if lot.remaining_quantity <= 0:
            continue
        if (
            exclude_expired_before is not None
            and lot.expiry_date is not None
            and lot.expiry_date < exclude_expired_before
        ):
            continue
        take = min(lot.remaining_quantity, need)
        plan.append((lot, take))
        need -= take
    return plan, need


class BatchAllocator:
    """Reads lots with row locks and applies allocations in the caller's unit of work."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _locked_lots(self, drug_id: int, department: str) -> list[DrugBatch]:
        result = await self.db.execute(
            select(DrugBatch)
            .where(
                DrugBatch.drug_id == drug_id,
                DrugBatch.department == department,
                DrugBatch.remaining_quantity > 0,
            )
            .order_by(
                DrugBatch.expiry_date.is_(None),
                DrugBatch.expiry_date.asc(),
                DrugBatch.received_date.asc(),
                DrugBatch.id.asc(),
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def allocate(
        self,
        drug_id: int,
        department: str | Department,
        requested_quantity: int,
        exclude_expired_before: date | None = None,
    ) -> AllocationResult:
        """Take up to ``requested_quantity`` units from the department's lots.

        Lot quantities are decremented here; ledger entries are the caller's job.
        """
        department = Department(department).value
        lots = await self._locked_lots(drug_id, department)
        plan, unsatisfied = plan_allocation(lots, requested_quantity, exclude_expired_before)

        consumptions = []
        for lot, quantity in plan:
            lot.remaining_quantity -= quantity
            consumptions.append(
                BatchConsumption(
                    batch_id=lot.id,
                    lot_number=lot.lot_number,
                    expiry_date=lot.expiry_date,
                    manufacturer=lot.manufacturer,
                    unit_cost=round_money(lot.unit_cost),
                    quantity=quantity,
                )
            )
        await self.db.flush()
        return AllocationResult(consumptions=tuple(consumptions), unsatisfied=unsatisfied)

    async def credit(
        self,
        stock: Stock,
        lot_number: str,
        quantity: int,
        *,
        expiry_date: date | None = None,
        manufacturer: str | None = None,
        unit_cost: Decimal | None = None,
        conflict_suffix: str | None = None,
    ) -> DrugBatch:
        """Add units to a lot of ``stock``, creating the lot if it is new.

        An existing lot with a different expiry is an error, unless
        ``conflict_suffix`` is given: the units then go to lot
        ``"<lot_number>/<conflict_suffix>"``.
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be positive", field="quantity")
        lot_number = lot_number.strip()
        if not lot_number:
            raise ValidationError("Lot number is required", field="lot_number")

        result = await self.db.execute(
            select(DrugBatch)
            .where(
                DrugBatch.drug_id == stock.drug_id,
                DrugBatch.department == stock.department,
                DrugBatch.lot_number == lot_number,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        batch = result.scalar_one_or_none()
        if batch:
            if (
                expiry_date is not None
                and batch.expiry_date is not None
                and batch.expiry_date != expiry_date
            ):
                if conflict_suffix:
                    suffix = f"/{conflict_suffix}"
                    return await self.credit(
                        stock,
                        lot_number[: LOT_NUMBER_LENGTH - len(suffix)] + suffix,
                        quantity,
                        expiry_date=expiry_date,
                        manufacturer=manufacturer,
                        unit_cost=unit_cost,
                    )
                raise ValidationError(
                    f"Lot {lot_number} is already recorded with expiry {batch.expiry_date}",
                    field="expiry_date",
                )
            batch.remaining_quantity += quantity
        else:
            batch = DrugBatch(
                stock_id=stock.id,
                drug_id=stock.drug_id,
                department=stock.department,
                lot_number=lot_number,
                expiry_date=expiry_date,
                manufacturer=manufacturer,
                remaining_quantity=quantity,
                unit_cost=round_money(unit_cost if unit_cost is not None else 0),
                received_date=utcnow(),
            )
            self.db.add(batch)
        await self.db.flush()
        return batch

    async def credit_adjustment_lot(
        self, stock: Stock, quantity: int, unit_cost: Decimal
    ) -> DrugBatch:
        return await self.credit(stock, ADJUSTMENT_LOT, quantity, unit_cost=unit_cost)
