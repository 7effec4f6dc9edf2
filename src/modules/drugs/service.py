"""Service for Drugs module."""

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditAction, AuditService
from src.core.database.transaction import run_in_transaction
from src.core.exceptions import DuplicateError, NotFoundError
from src.modules.drugs.models import Drug
from src.modules.drugs.schemas import DrugCreate
from src.modules.inventory.batches import BatchAllocator
from src.modules.inventory.ledger import StockLedger
from src.modules.inventory.models import Department, Stock, TransactionType
from src.shared.utils.money import round_money

logger = logging.getLogger(__name__)

INITIAL_LOT = "INITIAL"


@dataclass
class PriceChange:
    drug: Drug
    old_price: Decimal
    new_price: Decimal
    stocks: list[Stock] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.old_price != self.new_price


class DrugService:
    """Catalog maintenance."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = StockLedger(db)
        self.allocator = BatchAllocator(db)
        self.audit = AuditService(db)

    async def get_drug(self, drug_id: int) -> Drug:
        drug = await self.db.get(Drug, drug_id)
        if not drug:
            raise NotFoundError("Drug", drug_id)
        return drug

    async def list_drugs(
        self,
        search: str | None = None,
        active_only: bool = True,
        page: int = 1,
        limit: int = 100,
    ) -> tuple[list[Drug], int]:
        query = select(Drug).order_by(Drug.name)
        if active_only:
            query = query.where(Drug.is_active.is_(True))
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

    async def create_drug(self, data: DrugCreate, user_id: int) -> Drug:
        """Create a drug with an empty stock row in every department.

        Opening quantity and minimum stock go to ``data.department`` through
        the ledger.
        """
        code = data.hospital_drug_code.strip()

        async def work() -> Drug:
            existing = await self.db.execute(
                select(Drug.id).where(Drug.hospital_drug_code == code)
            )
            if existing.scalar_one_or_none() is not None:
                raise DuplicateError("Drug", "hospital_drug_code", code)

            drug = Drug(
                hospital_drug_code=code,
                name=data.name,
                generic_name=data.generic_name,
                dosage_form=data.dosage_form,
                strength=data.strength,
                unit=data.unit,
                package_size=data.package_size,
                price_per_box=round_money(data.price_per_box),
                category=data.category,
                notes=data.notes,
                is_active=True,
            )
            self.db.add(drug)
            await self.db.flush()

            for department in Department:
                stock = await self.ledger.get_or_create_stock(drug.id, department)
                if department != data.department:
                    continue
                if data.initial_quantity > 0:
                    batch = await self.allocator.credit(
                        stock,
                        data.lot_number or INITIAL_LOT,
                        data.initial_quantity,
                        expiry_date=data.expiry_date,
                        unit_cost=drug.price_per_box,
                    )
                    await self.ledger.record_inflow(
                        stock,
                        TransactionType.RECEIVE_EXTERNAL,
                        data.initial_quantity,
                        user_id,
                        reference=f"INITIAL-{code}",
                        note=f"Opening stock ({department.value})",
                        batch_id=batch.id,
                    )
                if data.minimum_stock > 0:
                    await self.ledger.record_adjustment(
                        stock, stock.total_quantity, data.minimum_stock, None, user_id
                    )
            return drug

        return await run_in_transaction(self.db, work)

    async def update_price(
        self, drug_id: int, new_price: Decimal, user_id: int, note: str | None = None
    ) -> PriceChange:
        """Change the catalog price and revalue every stock of the drug.

        Each stock gets one DATA_UPDATE entry; quantities do not change.
        """
        new_price = round_money(new_price)

        async def work() -> PriceChange:
            result = await self.db.execute(
                select(Drug)
                .where(Drug.id == drug_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            drug = result.scalar_one_or_none()
            if not drug:
                raise NotFoundError("Drug", drug_id)

            change = PriceChange(
                drug=drug, old_price=round_money(drug.price_per_box), new_price=new_price
            )
            if not change.changed:
                return change

            drug.price_per_box = new_price
            await self.db.flush()
            stocks = await self.db.execute(
                select(Stock)
                .where(Stock.drug_id == drug_id)
                .order_by(Stock.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            for stock in stocks.scalars().all():
                await self.ledger.restamp_price(
                    stock,
                    new_price,
                    user_id,
                    note=note or f"Price changed from {change.old_price} to {new_price}",
                )
                change.stocks.append(stock)

            await self.audit.log(
                action=AuditAction.CHANGE_PRICE,
                entity_type="Drug",
                entity_id=drug.id,
                entity_identifier=drug.hospital_drug_code,
                user_id=user_id,
                old_values={"price_per_box": str(change.old_price)},
                new_values={"price_per_box": str(new_price)},
                comment=note,
            )
            return change

        change = await run_in_transaction(self.db, work)
        if change.changed:
            logger.info(
                "Drug %s price %s -> %s, %d stocks revalued",
                change.drug.hospital_drug_code,
                change.old_price,
                change.new_price,
                len(change.stocks),
            )
        return change
