"""Drug catalog model."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, DateTime, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import Base, BigIntPK
from src.shared.utils.dates import utcnow


class Drug(Base):
    """Catalog entry. Stock rows reference it per department."""

    __tablename__ = "drugs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    hospital_drug_code: Mapped[str] = mapped_column(
        String(50), nullable=False, unique=True, index=True
    )
    name: Mapped[str] = mapped_column(String(300), nullable=False, index=True)
    generic_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    dosage_form: Mapped[str] = mapped_column(String(50), nullable=False)  # TAB, CAP, INJ...
    strength: Mapped[str | None] = mapped_column(String(50), nullable=True)
    unit: Mapped[str] = mapped_column(String(30), nullable=False)
    package_size: Mapped[str | None] = mapped_column(String(50), nullable=True)
    # Catalog price per dispensing unit; stock value and transfer prices derive from it
    price_per_box: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0.00")
    )
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("price_per_box >= 0", name="price_non_negative"),
    )
