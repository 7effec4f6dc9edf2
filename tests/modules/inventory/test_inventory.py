"""Tests for Inventory module."""

from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.models import User
from src.core.exceptions import ConflictError, NotFoundError, ValidationError
from src.modules.inventory.models import Department, Stock, TransactionType
from src.modules.inventory.queries import StockQueryService
from src.modules.inventory.schemas import DispenseStockRequest, StockUpdateRequest
from src.modules.inventory.service import InventoryService
from src.shared.utils.dates import days_from_today


async def _stock(db_session: AsyncSession, drug_id: int, department: Department) -> Stock:
    result = await db_session.execute(
        select(Stock)
        .where(Stock.drug_id == drug_id, Stock.department == department.value)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


class TestInventoryService:
    """Tests for InventoryService."""

    async def test_receive_numbers_receipt_and_credits_lot(
        self, db_session: AsyncSession, pharmacist: User, make_drug, receive
    ):
        drug = await make_drug(pharmacist, price="4.50")

        entry = await receive(pharmacist, drug, "LOT-1", 40, days_from_today(200))

        assert entry.transaction_type == TransactionType.RECEIVE_EXTERNAL.value
        assert entry.reference.startswith("RCV-")
        assert entry.after_quantity == 40
        assert entry.total_cost == Decimal("180.00")
        stock = await _stock(db_session, drug.id, Department.PHARMACY)
        assert stock.total_quantity == 40
        assert stock.total_value == Decimal("180.00")

    async def test_adjust_rejects_department_mismatch(
        self, db_session: AsyncSession, pharmacist: User, make_drug
    ):
        drug = await make_drug(pharmacist)
        stock = await _stock(db_session, drug.id, Department.PHARMACY)

        with pytest.raises(ValidationError) as exc_info:
            await InventoryService(db_session).adjust_stock(
                stock.id,
                StockUpdateRequest(department=Department.OPD, total_quantity=5, minimum_stock=0),
                pharmacist.id,
            )
        assert exc_info.value.details["field"] == "department"

    async def test_adjust_rejects_stale_version(
        self, db_session: AsyncSession, pharmacist: User, make_drug
    ):
        drug = await make_drug(pharmacist)
        drug_id = drug.id
        stock = await _stock(db_session, drug.id, Department.PHARMACY)
        service = InventoryService(db_session)
        seen_version = stock.version

        await service.adjust_stock(
            stock.id,
            StockUpdateRequest(
                department=Department.PHARMACY,
                total_quantity=3,
                minimum_stock=0,
                expected_version=seen_version,
            ),
            pharmacist.id,
        )
        with pytest.raises(ConflictError):
            await service.adjust_stock(
                stock.id,
                StockUpdateRequest(
                    department=Department.PHARMACY,
                    total_quantity=9,
                    minimum_stock=0,
                    expected_version=seen_version,
                ),
                pharmacist.id,
            )
        stock = await _stock(db_session, drug_id, Department.PHARMACY)
        assert stock.total_quantity == 3

    async def test_adjust_unknown_stock(self, db_session: AsyncSession, pharmacist: User):
        with pytest.raises(NotFoundError):
            await InventoryService(db_session).adjust_stock(
                999,
                StockUpdateRequest(department=Department.PHARMACY, total_quantity=1, minimum_stock=0),
                pharmacist.id,
            )

    async def test_dispense_skips_expired_and_reports_shortfall(
        self, db_session: AsyncSession, pharmacist: User, make_drug, receive
    ):
        drug = await make_drug(pharmacist)
        await receive(pharmacist, drug, "OLD", 5, days_from_today(-2))
        await receive(pharmacist, drug, "B", 10, days_from_today(30))
        await receive(pharmacist, drug, "A", 10, days_from_today(5))

        result = await InventoryService(db_session).dispense(
            DispenseStockRequest(drug_id=drug.id, department=Department.PHARMACY, quantity=22),
            pharmacist.id,
        )

        assert result.dispensed_quantity == 20
        assert result.unsatisfied == 2
        assert [t.quantity for t in result.transactions] == [10, 10]
        assert all(t.transaction_type == "DISPENSE_EXTERNAL" for t in result.transactions)

        stock = await _stock(db_session, drug.id, Department.PHARMACY)
        assert stock.total_quantity == 5
        reconciliation = await StockQueryService(db_session).reconcile(stock.id)
        assert reconciliation.is_consistent

    async def test_dispensed_entries_loaded_by_id(
        self, db_session: AsyncSession, pharmacist: User, make_drug, receive
    ):
        drug = await make_drug(pharmacist)
        await receive(pharmacist, drug, "A", 10, days_from_today(5))
        await receive(pharmacist, drug, "B", 10, days_from_today(30))
        service = InventoryService(db_session)

        result = await service.dispense(
            DispenseStockRequest(drug_id=drug.id, department=Department.PHARMACY, quantity=15),
            pharmacist.id,
        )
        dispensed_ids = [t.id for t in result.transactions]
        # A later edit of the same stock appends its own entry
        await service.adjust_stock(
            result.stock.id,
            StockUpdateRequest(department=Department.PHARMACY, total_quantity=5, minimum_stock=3),
            pharmacist.id,
        )

        loaded = await StockQueryService(db_session).get_transactions(dispensed_ids)
        assert [e.id for e in loaded] == dispensed_ids
        assert [e.transaction_type for e in loaded] == ["DISPENSE_EXTERNAL"] * 2
        assert [e.batch.lot_number for e in loaded] == ["A", "B"]
        assert await StockQueryService(db_session).get_transactions([]) == []

    async def test_dispense_without_stock_row(
        self, db_session: AsyncSession, pharmacist: User, make_drug
    ):
        drug = await make_drug(pharmacist)
        stock = await _stock(db_session, drug.id, Department.OPD)
        await InventoryService(db_session).delete_stock(stock.id)

        with pytest.raises(NotFoundError):
            await InventoryService(db_session).dispense(
                DispenseStockRequest(drug_id=drug.id, department=Department.OPD, quantity=1),
                pharmacist.id,
            )

    async def test_delete_refused_when_history_exists(
        self, db_session: AsyncSession, pharmacist: User, make_drug, receive
    ):
        drug = await make_drug(pharmacist)
        await receive(pharmacist, drug, "L1", 3, days_from_today(30))
        stock = await _stock(db_session, drug.id, Department.PHARMACY)

        with pytest.raises(ValidationError):
            await InventoryService(db_session).delete_stock(stock.id)

    async def test_summary_and_low_stock(
        self, db_session: AsyncSession, pharmacist: User, make_drug
    ):
        await make_drug(pharmacist, code="LOW", price="2.00", initial_quantity=5, minimum_stock=10)
        await make_drug(pharmacist, code="OK", price="1.00", initial_quantity=50, minimum_stock=10)
        queries = StockQueryService(db_session)

        summary = await queries.summary(Department.PHARMACY)
        assert summary.total_items == 2
        assert summary.low_stock_count == 1
        assert summary.out_of_stock_count == 0
        assert summary.total_value == Decimal("60.00")

        low, total = await queries.list_stocks(Department.PHARMACY, low_stock_only=True)
        assert total == 1
        assert low[0].drug.hospital_drug_code == "LOW"
        assert low[0].is_low_stock

        opd = await queries.summary(Department.OPD)
        assert opd.out_of_stock_count == 2

    async def test_expiring_batches(
        self, db_session: AsyncSession, pharmacist: User, make_drug, receive
    ):
        drug = await make_drug(pharmacist)
        await receive(pharmacist, drug, "FAR", 5, days_from_today(365))
        await receive(pharmacist, drug, "NEAR", 5, days_from_today(20))
        await receive(pharmacist, drug, "GONE", 5, days_from_today(-1))

        batches = await StockQueryService(db_session).expiring_batches(30)

        assert [b.lot_number for b in batches] == ["GONE", "NEAR"]


class TestInventoryEndpoints:
    """API tests for the inventory router."""

    async def test_patch_reports_transaction_info(
        self, client: AsyncClient, db_session: AsyncSession, pharmacist: User, make_drug,
        receive, headers_for,
    ):
        drug = await make_drug(pharmacist)
        await receive(pharmacist, drug, "L1", 10, days_from_today(90))
        stock = await _stock(db_session, drug.id, Department.PHARMACY)

        response = await client.patch(
            f"/api/v1/inventory/stocks/{stock.id}",
            json={"department": "PHARMACY", "total_quantity": 15, "minimum_stock": 0},
            headers=headers_for(pharmacist),
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["stock"]["total_quantity"] == 15
        assert data["stock"]["available_quantity"] == 15
        info = data["transaction_info"]
        assert info["kind"] == "ADJUST_INCREASE"
        assert info["quantity_changed"] is True
        assert info["minimum_stock_changed"] is False
        assert info["reason"] == "ปรับเพิ่มสต็อก"

    async def test_patch_minimum_only(
        self, client: AsyncClient, db_session: AsyncSession, pharmacist: User, make_drug,
        headers_for,
    ):
        drug = await make_drug(pharmacist)
        stock = await _stock(db_session, drug.id, Department.PHARMACY)

        response = await client.patch(
            f"/api/v1/inventory/stocks/{stock.id}",
            json={
                "department": "PHARMACY",
                "total_quantity": 0,
                "minimum_stock": 8,
                "reason": "Flu season",
            },
            headers=headers_for(pharmacist),
        )

        data = response.json()["data"]
        assert data["transaction_info"]["kind"] == "MIN_STOCK_INCREASE"
        assert data["transaction_info"]["reason"] == "Flu season"
        assert data["stock"]["is_low_stock"] is True

    async def test_patch_version_conflict(
        self, client: AsyncClient, db_session: AsyncSession, pharmacist: User, make_drug,
        headers_for,
    ):
        drug = await make_drug(pharmacist)
        stock = await _stock(db_session, drug.id, Department.PHARMACY)
        headers = headers_for(pharmacist)

        current = await client.get(f"/api/v1/inventory/stocks/{stock.id}", headers=headers)
        version = current.json()["data"]["version"]

        response = await client.patch(
            f"/api/v1/inventory/stocks/{stock.id}",
            json={
                "department": "PHARMACY",
                "total_quantity": 4,
                "minimum_stock": 0,
                "expected_version": version - 1,
            },
            headers=headers,
        )
        assert response.status_code == 409
        assert response.json()["success"] is False

    async def test_patch_rejects_negative_quantity(
        self, client: AsyncClient, db_session: AsyncSession, pharmacist: User, make_drug,
        headers_for,
    ):
        drug = await make_drug(pharmacist)
        stock = await _stock(db_session, drug.id, Department.PHARMACY)

        response = await client.patch(
            f"/api/v1/inventory/stocks/{stock.id}",
            json={"department": "PHARMACY", "total_quantity": -3, "minimum_stock": 0},
            headers=headers_for(pharmacist),
        )
        assert response.status_code == 422

    async def test_receive_and_dispense(
        self, client: AsyncClient, pharmacist: User, make_drug, headers_for
    ):
        drug = await make_drug(pharmacist)
        headers = headers_for(pharmacist)

        received = await client.post(
            "/api/v1/inventory/receive",
            json={
                "drug_id": drug.id,
                "lot_number": "L-77",
                "expiry_date": str(days_from_today(100)),
                "quantity": 12,
                "reference": "PO-1",
            },
            headers=headers,
        )
        assert received.status_code == 201
        entry = received.json()["data"]
        assert entry["transaction_type"] == "RECEIVE_EXTERNAL"
        assert entry["reference"] == "PO-1"
        assert entry["lot_number"] == "L-77"
        assert entry["after_quantity"] == 12

        dispensed = await client.post(
            "/api/v1/inventory/dispense",
            json={"drug_id": drug.id, "department": "PHARMACY", "quantity": 15},
            headers=headers,
        )
        assert dispensed.status_code == 200
        data = dispensed.json()["data"]
        assert data["dispensed_quantity"] == 12
        assert data["unsatisfied"] == 3
        assert [t["lot_number"] for t in data["transactions"]] == ["L-77"]

    async def test_transactions_filtered_by_kind(
        self, client: AsyncClient, db_session: AsyncSession, pharmacist: User, make_drug,
        receive, headers_for,
    ):
        drug = await make_drug(pharmacist, minimum_stock=5)
        await receive(pharmacist, drug, "L1", 10, days_from_today(90))
        await receive(pharmacist, drug, "L2", 10, days_from_today(120))
        stock = await _stock(db_session, drug.id, Department.PHARMACY)

        response = await client.get(
            "/api/v1/inventory/transactions",
            params={"stock_id": stock.id, "transaction_type": "RECEIVE_EXTERNAL"},
            headers=headers_for(pharmacist),
        )

        data = response.json()["data"]
        assert data["total"] == 2
        assert {e["lot_number"] for e in data["items"]} == {"L1", "L2"}

        everything = await client.get(
            "/api/v1/inventory/transactions",
            params={"stock_id": stock.id},
            headers=headers_for(pharmacist),
        )
        kinds = [e["transaction_type"] for e in everything.json()["data"]["items"]]
        assert kinds.count("MIN_STOCK_INCREASE") == 1

    async def test_reserve_and_reconcile(
        self, client: AsyncClient, db_session: AsyncSession, pharmacist: User, make_drug,
        receive, headers_for,
    ):
        drug = await make_drug(pharmacist)
        await receive(pharmacist, drug, "L1", 10, days_from_today(90))
        stock = await _stock(db_session, drug.id, Department.PHARMACY)
        stock_id = stock.id
        headers = headers_for(pharmacist)

        reserved = await client.post(
            f"/api/v1/inventory/stocks/{stock.id}/reserve",
            json={"quantity": 4},
            headers=headers,
        )
        assert reserved.json()["data"]["available_quantity"] == 6

        too_much = await client.post(
            f"/api/v1/inventory/stocks/{stock.id}/reserve",
            json={"quantity": 7},
            headers=headers,
        )
        assert too_much.status_code == 422

        check = await client.get(
            f"/api/v1/inventory/stocks/{stock_id}/reconciliation", headers=headers
        )
        result = check.json()["data"]
        assert result["is_consistent"] is True
        assert result["current_total"] == result["ledger_total"] == result["batch_total"] == 10

    async def test_delete_requires_admin(
        self, client: AsyncClient, db_session: AsyncSession, pharmacist: User, admin: User,
        make_drug, headers_for,
    ):
        drug = await make_drug(pharmacist)
        stock = await _stock(db_session, drug.id, Department.OPD)

        forbidden = await client.delete(
            f"/api/v1/inventory/stocks/{stock.id}", headers=headers_for(pharmacist)
        )
        assert forbidden.status_code == 403

        deleted = await client.delete(
            f"/api/v1/inventory/stocks/{stock.id}", headers=headers_for(admin)
        )
        assert deleted.status_code == 200

        missing = await client.get(
            f"/api/v1/inventory/stocks/{stock.id}", headers=headers_for(admin)
        )
        assert missing.status_code == 404
