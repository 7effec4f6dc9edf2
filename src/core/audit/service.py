from enum import StrEnum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.models import AuditLog


class AuditAction(StrEnum):
    """Audit actions for events that are not already stock ledger entries."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"

    # Transfer workflow
    CREATE_TRANSFER = "CREATE_TRANSFER"
    APPROVE_TRANSFER = "APPROVE_TRANSFER"
    DISPENSE_TRANSFER = "DISPENSE_TRANSFER"
    RECEIVE_TRANSFER = "RECEIVE_TRANSFER"
    CANCEL_TRANSFER = "CANCEL_TRANSFER"

    # Catalog
    CHANGE_PRICE = "CHANGE_PRICE"


class AuditService:
    """Service for creating audit logs."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        action: str | AuditAction,
        entity_type: str,
        entity_id: int,
        user_id: int | None = None,
        entity_identifier: str | None = None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        comment: str | None = None,
    ) -> AuditLog:
        """Create an audit log entry inside the caller's unit of work."""
        audit_log = AuditLog(
            user_id=user_id,
            action=str(action),
            entity_type=entity_type,
            entity_id=entity_id,
            entity_identifier=entity_identifier,
            old_values=old_values,
            new_values=new_values,
            comment=comment,
        )

        self.db.add(audit_log)
        await self.db.flush()

        return audit_log
