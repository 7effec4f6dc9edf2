"""Transfer requisition models."""

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
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.database.base import Base, BigIntPK
from src.shared.utils.dates import utcnow


class TransferStatus(StrEnum):
    """Transfer lifecycle status."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PREPARED = "PREPARED"  # Dispensed by the source, in transit
    DELIVERED = "DELIVERED"
    PARTIAL = "PARTIAL"  # Received, but less than approved
    CANCELLED = "CANCELLED"


class Transfer(Base):
    """Requisition moving stock from a source to a destination department."""

    __tablename__ = "transfers"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    requisition_number: Mapped[str] = mapped_column(
        String(50), nullable=False, unique=True, index=True
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    purpose: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_department: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    destination_department: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransferStatus.PENDING.value, index=True
    )

    requester_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=False
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    request_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    approver_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=True
    )
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approval_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    dispenser_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=True
    )
    dispensed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dispense_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    receiver_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=True
    )
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    receive_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    cancelled_by_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=True
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_value: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0.00")
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "source_department <> destination_department", name="distinct_departments"
        ),
    )
    __mapper_args__ = {"version_id_col": version}

    # Relationships
    items: Mapped[list["TransferItem"]] = relationship(
        "TransferItem",
        back_populates="transfer",
        cascade="all, delete-orphan",
        order_by="TransferItem.id",
        lazy="selectin",
    )
    requester: Mapped["User"] = relationship("User", foreign_keys=[requester_id], lazy="selectin")
    approver: Mapped["User | None"] = relationship(
        "User", foreign_keys=[approver_id], lazy="selectin"
    )
    dispenser: Mapped["User | None"] = relationship(
        "User", foreign_keys=[dispenser_id], lazy="selectin"
    )
    receiver: Mapped["User | None"] = relationship(
        "User", foreign_keys=[receiver_id], lazy="selectin"
    )
    cancelled_by: Mapped["User | None"] = relationship(
        "User", foreign_keys=[cancelled_by_id], lazy="selectin"
    )


class TransferItem(Base):
    """One drug on a transfer with its four quantities.

    0 <= received <= dispensed <= approved <= requested once each is set.
    """

    __tablename__ = "transfer_items"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    transfer_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("transfers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    drug_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("drugs.id"), nullable=False, index=True
    )
    requested_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    approved_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    dispensed_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    received_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    unit_price: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0.00")
    )  # Catalog price when requested
    total_value: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0.00")
    )
    lot_number: Mapped[str | None] = mapped_column(String(500), nullable=True)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    manufacturer: Mapped[str | None] = mapped_column(String(200), nullable=True)
    item_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("transfer_id", "drug_id", name="uq_transfer_items_transfer_drug"),
        CheckConstraint("requested_quantity > 0", name="requested_positive"),
        CheckConstraint(
            "approved_quantity IS NULL OR "
            "(approved_quantity >= 0 AND approved_quantity <= requested_quantity)",
            name="approved_within_requested",
        ),
        CheckConstraint(
            "dispensed_quantity IS NULL OR "
            "(dispensed_quantity >= 0 AND approved_quantity IS NOT NULL "
            "AND dispensed_quantity <= approved_quantity)",
            name="dispensed_within_approved",
        ),
        CheckConstraint(
            "received_quantity IS NULL OR "
            "(received_quantity >= 0 AND dispensed_quantity IS NOT NULL "
            "AND received_quantity <= dispensed_quantity)",
            name="received_within_dispensed",
        ),
    )

    # Relationships
    transfer: Mapped["Transfer"] = relationship("Transfer", back_populates="items")
    drug: Mapped["Drug"] = relationship("Drug", lazy="selectin")
    batches: Mapped[list["TransferItemBatch"]] = relationship(
        "TransferItemBatch",
        back_populates="item",
        cascade="all, delete-orphan",
        order_by="TransferItemBatch.id",
        lazy="selectin",
    )


class TransferItemBatch(Base):
    """Units of one source lot dispensed for a transfer item."""

    __tablename__ = "transfer_item_batches"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    transfer_item_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("transfer_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source_batch_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("drug_batches.id"), nullable=False
    )
    lot_number: Mapped[str] = mapped_column(String(100), nullable=False)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    manufacturer: Mapped[str | None] = mapped_column(String(200), nullable=True)
    unit_cost: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0.00")
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    received_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="quantity_positive"),
        CheckConstraint(
            "received_quantity IS NULL OR "
            "(received_quantity >= 0 AND received_quantity <= quantity)",
            name="received_within_quantity",
        ),
    )

    # Relationships
    item: Mapped["TransferItem"] = relationship("TransferItem", back_populates="batches")


# Import at the end to avoid circular imports
from src.modules.drugs.models import Drug  # noqa: E402
from src.core.auth.models import User  # noqa: E402
