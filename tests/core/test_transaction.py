import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.models import User
from src.core.database.transaction import run_in_transaction
from src.core.exceptions import ConflictError, ValidationError
from src.modules.inventory.models import Department, Stock


async def _pharmacy_stock(db_session: AsyncSession, drug_id: int) -> Stock:
    result = await db_session.execute(
        select(Stock)
        .where(Stock.drug_id == drug_id, Stock.department == Department.PHARMACY.value)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


class _DriverError(Exception):
    def __init__(self, sqlstate: str):
        super().__init__(f"driver error {sqlstate}")
        self.sqlstate = sqlstate


async def _bump_version(db_session: AsyncSession, stock_id: int) -> None:
    """Simulate another request committing a change to the row."""
    await db_session.execute(
        update(Stock)
        .where(Stock.id == stock_id)
        .values(version=Stock.version + 1)
        .execution_options(synchronize_session=False)
    )


class TestRunInTransaction:
    """Tests for the optimistic-concurrency unit of work."""

    async def test_commits_result(self, db_session: AsyncSession, pharmacist: User, make_drug):
        drug_id = (await make_drug(pharmacist)).id

        async def work():
            stock = await _pharmacy_stock(db_session, drug_id)
            stock.minimum_stock = 12
            await db_session.flush()
            return stock.id

        stock_id = await run_in_transaction(db_session, work)
        stock = await _pharmacy_stock(db_session, drug_id)
        assert stock.id == stock_id
        assert stock.minimum_stock == 12

    async def test_retries_after_version_conflict(
        self, db_session: AsyncSession, pharmacist: User, make_drug
    ):
        drug_id = (await make_drug(pharmacist)).id
        calls = []

        async def work():
            calls.append(1)
            stock = await _pharmacy_stock(db_session, drug_id)
            if len(calls) == 1:
                await _bump_version(db_session, stock.id)
            stock.minimum_stock = 20
            await db_session.flush()
            return stock

        stock = await run_in_transaction(db_session, work, attempts=3)
        assert len(calls) == 2
        assert stock.minimum_stock == 20

    async def test_conflict_after_last_attempt(
        self, db_session: AsyncSession, pharmacist: User, make_drug
    ):
        drug_id = (await make_drug(pharmacist)).id
        calls = []

        async def work():
            calls.append(1)
            stock = await _pharmacy_stock(db_session, drug_id)
            await _bump_version(db_session, stock.id)
            stock.minimum_stock = 30
            await db_session.flush()

        with pytest.raises(ConflictError) as exc_info:
            await run_in_transaction(db_session, work, attempts=2)

        assert len(calls) == 2
        assert exc_info.value.status_code == 409
        assert exc_info.value.details["retry"] is True
        stock = await _pharmacy_stock(db_session, drug_id)
        assert stock.minimum_stock == 0

    async def test_other_errors_roll_back_without_retry(
        self, db_session: AsyncSession, pharmacist: User, make_drug
    ):
        drug_id = (await make_drug(pharmacist)).id
        calls = []

        async def work():
            calls.append(1)
            stock = await _pharmacy_stock(db_session, drug_id)
            stock.minimum_stock = 40
            await db_session.flush()
            raise ValidationError("rejected")

        with pytest.raises(ValidationError):
            await run_in_transaction(db_session, work)

        assert len(calls) == 1
        stock = await _pharmacy_stock(db_session, drug_id)
        assert stock.minimum_stock == 0

    async def test_retries_after_deadlock(
        self, db_session: AsyncSession, pharmacist: User, make_drug
    ):
        drug_id = (await make_drug(pharmacist)).id
        calls = []

        async def work():
            calls.append(1)
            stock = await _pharmacy_stock(db_session, drug_id)
            if len(calls) == 1:
                raise DBAPIError("SELECT ... FOR UPDATE", {}, _DriverError("40P01"))
            stock.minimum_stock = 25
            await db_session.flush()
            return stock

        stock = await run_in_transaction(db_session, work, attempts=3)
        assert len(calls) == 2
        assert stock.minimum_stock == 25

    async def test_other_database_errors_are_not_retried(
        self, db_session: AsyncSession, pharmacist: User, make_drug
    ):
        drug_id = (await make_drug(pharmacist)).id
        calls = []

        async def work():
            calls.append(1)
            await _pharmacy_stock(db_session, drug_id)
            raise DBAPIError("INSERT ...", {}, _DriverError("23505"))

        with pytest.raises(DBAPIError):
            await run_in_transaction(db_session, work, attempts=3)

        assert len(calls) == 1
