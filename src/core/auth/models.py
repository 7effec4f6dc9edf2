from enum import StrEnum

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import BaseModel


class UserRole(StrEnum):
    """User roles in the system."""

    SUPER_ADMIN = "SuperAdmin"
    ADMIN = "Admin"  # Pharmacy manager
    PHARMACIST = "Pharmacist"
    STAFF = "Staff"  # Ward / OPD staff


class User(BaseModel):
    """
    Hospital staff member acting on stock and transfers.

    Accounts are provisioned by the hospital identity service; this table only
    mirrors what the core needs to attribute ledger entries and transfer steps.
    """

    __tablename__ = "users"

    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    position: Mapped[str | None] = mapped_column(String(100), nullable=True)
    department: Mapped[str | None] = mapped_column(String(20), nullable=True)

    role: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def has_role(self, *roles: UserRole) -> bool:
        """Check if user has any of the specified roles."""
        return self.role in [r.value for r in roles]
