"""Inventory models: per-department stock, lots and the stock ledger."""

import logging
from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.database.base import Base, BigIntPK
from src.core.exceptions import ImmutableRecordError
from src.shared.utils.dates import utcnow

logger = logging.getLogger(__name__)

# Lot credited by manual increases; has no expiry so it is consumed last
ADJUSTMENT_LOT = "ADJUSTMENT"
LOT_NUMBER_LENGTH = 100


class Department(StrEnum):
    """Hospital departments holding stock."""

    PHARMACY = "PHARMACY"
    OPD = "OPD"


class TransactionType(StrEnum):
    """Stock ledger entry kinds."""

    RECEIVE_EXTERNAL = "RECEIVE_EXTERNAL"  # Goods received from a supplier
    DISPENSE_EXTERNAL = "DISPENSE_EXTERNAL"  # Dispensed to patients
    TRANSFER_OUT = "TRANSFER_OUT"
    TRANSFER_IN = "TRANSFER_IN"
    ADJUST_INCREASE = "ADJUST_INCREASE"
    ADJUST_DECREASE = "ADJUST_DECREASE"
    MIN_STOCK_INCREASE = "MIN_STOCK_INCREASE"
    MIN_STOCK_DECREASE = "MIN_STOCK_DECREASE"
    DATA_UPDATE = "DATA_UPDATE"
    RESERVE = "RESERVE"
    UNRESERVE = "UNRESERVE"


class Stock(Base):
    """Current stock of one drug in one department.

    Mutated only through StockLedger. ``version`` is bumped on every flush
    and checked by the UPDATE statement.
    """

    __tablename__ = "stock"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    drug_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("drugs.id"), nullable=False, index=True
    )
    department: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    total_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    minimum_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_value: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0.00")
    )  # catalog price * total_quantity
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("drug_id", "department", name="uq_stock_drug_department"),
        CheckConstraint("total_quantity >= 0", name="total_quantity_non_negative"),
        CheckConstraint(
            "reserved_quantity >= 0 AND reserved_quantity <= total_quantity",
            name="reserved_within_total",
        ),
        CheckConstraint("minimum_stock >= 0", name="minimum_stock_non_negative"),
    )
    __mapper_args__ = {"version_id_col": version}

    # Relationships
    drug: Mapped["Drug"] = relationship("Drug", lazy="selectin")

    @property
    def available_quantity(self) -> int:
        return self.total_quantity - self.reserved_quantity

    @property
    def is_low_stock(self) -> bool:
        return self.minimum_stock > 0 and self.available_quantity < self.minimum_stock


class DrugBatch(Base):
    """A lot of one drug held by one department."""

    __tablename__ = "drug_batches"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    stock_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("stock.id"), nullable=False, index=True
    )
    drug_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("drugs.id"), nullable=False, index=True
    )  # Denormalized for allocation queries
    department: Mapped[str] = mapped_column(String(20), nullable=False)
    lot_number: Mapped[str] = mapped_column(String(LOT_NUMBER_LENGTH), nullable=False)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    manufacturer: Mapped[str | None] = mapped_column(String(200), nullable=True)
    remaining_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unit_cost: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0.00")
    )
    received_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "drug_id", "department", "lot_number", name="uq_drug_batches_lot_number"
        ),
        CheckConstraint("remaining_quantity >= 0", name="remaining_non_negative"),
    )


class StockTransaction(Base):
    """Append-only ledger entry.

    ``quantity_after = quantity_before + signed_delta(transaction_type, quantity)``.
    For MIN_STOCK_* entries ``quantity`` holds the signed minimum-stock change.
    """

    __tablename__ = "stock_transactions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    stock_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("stock.id"), nullable=False, index=True
    )
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=False, index=True
    )
    transaction_type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    before_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    after_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    before_min_stock: Mapped[int | None] = mapped_column(Integer, nullable=True)
    after_min_stock: Mapped[int | None] = mapped_column(Integer, nullable=True)
    min_stock_change: Mapped[int | None] = mapped_column(Integer, nullable=True)
    unit_cost: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0.00")
    )
    total_cost: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0.00")
    )
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    batch_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("drug_batches.id"), nullable=True
    )
    transfer_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("transfers.id"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )

    # Relationships
    stock: Mapped["Stock"] = relationship("Stock", lazy="selectin")
    user: Mapped["User"] = relationship("User", lazy="selectin")
    batch: Mapped["DrugBatch | None"] = relationship("DrugBatch", lazy="selectin")


def _reject_ledger_update(mapper, connection, target: StockTransaction) -> None:
    logger.error("Blocked UPDATE of stock transaction %s", target.id)
    raise ImmutableRecordError("StockTransaction", target.id, "modified")


def _reject_ledger_delete(mapper, connection, target: StockTransaction) -> None:
    logger.error("Blocked DELETE of stock transaction %s", target.id)
    raise ImmutableRecordError("StockTransaction", target.id, "deleted")


event.listen(StockTransaction, "before_update", _reject_ledger_update)
event.listen(StockTransaction, "before_delete", _reject_ledger_delete)


# Import at the end to avoid circular imports
from src.modules.drugs.models import Drug  # noqa: E402
from src.core.auth.models import User  # noqa: E402
