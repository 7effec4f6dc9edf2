from collections.abc import AsyncGenerator
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# ruff: noqa: F401
from src.core.audit.models import AuditLog
from src.core.auth.models import User, UserRole
from src.core.config import settings
from src.core.database import get_db
from src.core.database.base import Base
from src.core.documents.models import DocumentSequence
from src.main import app
from src.modules.drugs.models import Drug
from src.modules.drugs.schemas import DrugCreate
from src.modules.drugs.service import DrugService
from src.modules.inventory.models import Department, DrugBatch, Stock, StockTransaction
from src.modules.inventory.schemas import ReceiveStockRequest
from src.modules.inventory.service import InventoryService
from src.modules.transfers.models import Transfer, TransferItem, TransferItemBatch

# In-memory SQLite shared by all connections of one engine
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh database per test."""
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
async def db_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Get test database session (same options as the application session)."""
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Get test HTTP client with overridden database dependency."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()


async def _create_user(
    db_session: AsyncSession, username: str, role: UserRole, department: Department
) -> User:
    user = User(
        username=username,
        full_name=username.title(),
        department=department.value,
        role=role.value,
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
async def pharmacist(db_session: AsyncSession) -> User:
    return await _create_user(db_session, "pharmacist", UserRole.PHARMACIST, Department.PHARMACY)


@pytest.fixture
async def opd_staff(db_session: AsyncSession) -> User:
    return await _create_user(db_session, "nurse", UserRole.STAFF, Department.OPD)


@pytest.fixture
async def admin(db_session: AsyncSession) -> User:
    return await _create_user(db_session, "manager", UserRole.ADMIN, Department.PHARMACY)


def issue_token(
    user_id: int,
    role: str,
    token_type: str = "access",
    expires_in: timedelta = timedelta(minutes=30),
) -> str:
    """Bearer token in the shape issued by the identity service."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "type": token_type,
        "exp": now + expires_in,
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(user.id, user.role)}"}


async def create_drug(
    db_session: AsyncSession,
    user: User,
    code: str = "PARA500",
    price: str = "10.00",
    **kwargs,
) -> Drug:
    """Catalog drug with empty PHARMACY and OPD stocks unless an opening quantity is given."""
    data = DrugCreate(
        hospital_drug_code=code,
        name=kwargs.pop("name", f"Drug {code}"),
        dosage_form=kwargs.pop("dosage_form", "TAB"),
        unit=kwargs.pop("unit", "box"),
        price_per_box=Decimal(price),
        **kwargs,
    )
    return await DrugService(db_session).create_drug(data, user.id)


async def receive_lot(
    db_session: AsyncSession,
    user: User,
    drug: Drug,
    lot_number: str,
    quantity: int,
    expiry_date: date | None = None,
    department: Department = Department.PHARMACY,
) -> StockTransaction:
    return await InventoryService(db_session).receive(
        ReceiveStockRequest(
            drug_id=drug.id,
            department=department,
            lot_number=lot_number,
            expiry_date=expiry_date,
            quantity=quantity,
        ),
        user.id,
    )


@pytest.fixture
def headers_for():
    return auth_headers


@pytest.fixture
def token_for():
    return issue_token


@pytest.fixture
def make_drug(db_session: AsyncSession):
    async def factory(user: User, code: str = "PARA500", price: str = "10.00", **kwargs) -> Drug:
        return await create_drug(db_session, user, code, price, **kwargs)

    return factory


@pytest.fixture
def receive(db_session: AsyncSession):
    async def factory(
        user: User,
        drug: Drug,
        lot_number: str,
        quantity: int,
        expiry_date: date | None = None,
        department: Department = Department.PHARMACY,
    ) -> StockTransaction:
        return await receive_lot(
            db_session, user, drug, lot_number, quantity, expiry_date, department
        )

    return factory
