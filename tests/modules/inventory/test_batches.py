"""Tests for lot allocation."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.models import User
from src.core.exceptions import ValidationError
from src.modules.inventory.batches import BatchAllocator, allocation_order, plan_allocation
from src.modules.inventory.models import Department, DrugBatch
from src.shared.utils.dates import days_from_today, today

RECEIVED = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _lot(id, quantity, expires_in=None, received=RECEIVED):
    return SimpleNamespace(
        id=id,
        remaining_quantity=quantity,
        expiry_date=days_from_today(expires_in) if expires_in is not None else None,
        received_date=received,
    )


class TestPlanAllocation:
    """Tests for the pure allocation plan."""

    def test_earliest_expiry_first(self):
        lot_a = _lot(1, 10, expires_in=5)
        lot_b = _lot(2, 10, expires_in=30)

        plan, unsatisfied = plan_allocation([lot_b, lot_a], 15)

        assert [(lot.id, qty) for lot, qty in plan] == [(1, 10), (2, 5)]
        assert unsatisfied == 0

    def test_received_date_breaks_ties(self):
        older = _lot(2, 4, expires_in=10, received=RECEIVED)
        newer = _lot(1, 4, expires_in=10, received=RECEIVED + timedelta(days=3))

        plan, _ = plan_allocation([newer, older], 6)

        assert [(lot.id, qty) for lot, qty in plan] == [(2, 4), (1, 2)]

    def test_lots_without_expiry_go_last(self):
        undated = _lot(1, 10)
        dated = _lot(2, 10, expires_in=400)

        plan, _ = plan_allocation([undated, dated], 12)

        assert [(lot.id, qty) for lot, qty in plan] == [(2, 10), (1, 2)]

    def test_shortfall_reported(self):
        plan, unsatisfied = plan_allocation([_lot(1, 3, expires_in=5)], 8)
        assert [qty for _, qty in plan] == [3]
        assert unsatisfied == 5

    def test_expired_lots_skipped(self):
        expired = _lot(1, 10, expires_in=-1)
        fresh = _lot(2, 10, expires_in=20)

        plan, unsatisfied = plan_allocation(
            [expired, fresh], 12, exclude_expired_before=today()
        )

        assert [(lot.id, qty) for lot, qty in plan] == [(2, 10)]
        assert unsatisfied == 2

    def test_empty_lots_and_zero_request(self):
        plan, unsatisfied = plan_allocation([_lot(1, 0, expires_in=1)], 0)
        assert plan == []
        assert unsatisfied == 0

    def test_negative_request_rejected(self):
        with pytest.raises(ValidationError):
            plan_allocation([], -1)

    def test_order_key_handles_naive_received_dates(self):
        naive = _lot(1, 1, expires_in=5, received=datetime(2026, 1, 2))
        aware = _lot(2, 1, expires_in=5, received=RECEIVED)
        assert sorted([naive, aware], key=allocation_order) == [aware, naive]


class TestBatchAllocator:
    """Tests for allocation against stored lots."""

    async def test_allocate_decrements_lots(
        self, db_session: AsyncSession, pharmacist: User, make_drug, receive
    ):
        drug = await make_drug(pharmacist)
        await receive(pharmacist, drug, "B", 10, days_from_today(30))
        await receive(pharmacist, drug, "A", 10, days_from_today(5))

        allocation = await BatchAllocator(db_session).allocate(
            drug.id, Department.PHARMACY, 15
        )
        await db_session.commit()

        assert [(c.lot_number, c.quantity) for c in allocation.consumptions] == [
            ("A", 10),
            ("B", 5),
        ]
        assert allocation.unsatisfied == 0
        assert allocation.allocated == 15

        result = await db_session.execute(
            select(DrugBatch)
            .where(DrugBatch.drug_id == drug.id)
            .order_by(DrugBatch.lot_number)
            .execution_options(populate_existing=True)
        )
        remaining = {b.lot_number: b.remaining_quantity for b in result.scalars().all()}
        # Emptied lots are kept
        assert remaining == {"A": 0, "B": 5}

    async def test_allocate_only_from_department(
        self, db_session: AsyncSession, pharmacist: User, make_drug, receive
    ):
        drug = await make_drug(pharmacist)
        await receive(pharmacist, drug, "P1", 5, days_from_today(30))
        await receive(pharmacist, drug, "O1", 5, days_from_today(10), Department.OPD)

        allocation = await BatchAllocator(db_session).allocate(drug.id, Department.OPD, 8)

        assert [(c.lot_number, c.quantity) for c in allocation.consumptions] == [("O1", 5)]
        assert allocation.unsatisfied == 3

    async def test_credit_existing_lot_checks_expiry(
        self, db_session: AsyncSession, pharmacist: User, make_drug, receive
    ):
        drug = await make_drug(pharmacist)
        await receive(pharmacist, drug, "L1", 5, days_from_today(30))

        # Same lot and expiry tops the lot up
        await receive(pharmacist, drug, "L1", 5, days_from_today(30))
        result = await db_session.execute(
            select(DrugBatch)
            .where(DrugBatch.drug_id == drug.id, DrugBatch.lot_number == "L1")
            .execution_options(populate_existing=True)
        )
        assert result.scalar_one().remaining_quantity == 10

        with pytest.raises(ValidationError):
            await receive(pharmacist, drug, "L1", 5, days_from_today(60))
