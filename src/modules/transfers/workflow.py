"""Transfer state machine.

PENDING -> APPROVED -> PREPARED -> DELIVERED | PARTIAL, with CANCELLED
reachable from PENDING and APPROVED. Each transition is one unit of work:
stock, lots, ledger entries and the transfer row commit together.
"""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditAction, AuditService
from src.core.config import settings
from src.core.database.transaction import run_in_transaction
from src.core.documents.number_generator import get_document_number
from src.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from src.modules.drugs.models import Drug
from src.modules.inventory.batches import BatchAllocator
from src.modules.inventory.ledger import StockLedger
from src.modules.inventory.models import Department, TransactionType
from src.modules.transfers.models import (
    Transfer,
    TransferItem,
    TransferItemBatch,
    TransferStatus,
)
from src.modules.transfers.schemas import (
    TransferApproveRequest,
    TransferCancelRequest,
    TransferCreate,
    TransferDispenseRequest,
    TransferReceiveRequest,
)
from src.shared.utils.dates import today, utcnow
from src.shared.utils.money import line_value, round_money

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[TransferStatus, frozenset[TransferStatus]] = {
    TransferStatus.PENDING: frozenset({TransferStatus.APPROVED, TransferStatus.CANCELLED}),
    TransferStatus.APPROVED: frozenset({TransferStatus.PREPARED, TransferStatus.CANCELLED}),
    TransferStatus.PREPARED: frozenset({TransferStatus.DELIVERED, TransferStatus.PARTIAL}),
    TransferStatus.DELIVERED: frozenset(),
    TransferStatus.PARTIAL: frozenset(),
    TransferStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


def can_transition(current: str | TransferStatus, target: str | TransferStatus) -> bool:
    return TransferStatus(target) in ALLOWED_TRANSITIONS[TransferStatus(current)]


def effective_quantity(item: TransferItem) -> int:
    """Latest known quantity of an item: received, dispensed, approved, then requested."""
    for quantity in (
        item.received_quantity,
        item.dispensed_quantity,
        item.approved_quantity,
    ):
        if quantity is not None:
            return quantity
    return item.requested_quantity


def _append_note(existing: str | None, addition: str) -> str:
    return f"{existing}; {addition}" if existing else addition


class TransferWorkflow:
    """Creates transfers and moves them through their lifecycle."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = StockLedger(db)
        self.allocator = BatchAllocator(db)
        self.audit = AuditService(db)

    async def _get_for_update(self, transfer_id: int) -> Transfer:
        result = await self.db.execute(
            select(Transfer)
            .where(Transfer.id == transfer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        transfer = result.scalar_one_or_none()
        if not transfer:
            raise NotFoundError("Transfer", transfer_id)
        return transfer

    @staticmethod
    def _ensure_transition(transfer: Transfer, target: TransferStatus) -> None:
        if not can_transition(transfer.status, target):
            raise InvalidTransitionError(
                f"Transfer {transfer.requisition_number}", transfer.status, target.value
            )

    @staticmethod
    def _items_by_id(transfer: Transfer, item_ids: list[int]) -> dict[int, TransferItem]:
        items = {item.id: item for item in transfer.items}
        unknown = [item_id for item_id in item_ids if item_id not in items]
        if unknown:
            raise ValidationError(
                f"Items {unknown} do not belong to transfer {transfer.requisition_number}",
                field="items",
            )
        if len(set(item_ids)) != len(item_ids):
            raise ValidationError("Each item may be listed only once", field="items")
        return items

    @staticmethod
    def _in_lock_order(items: dict[int, TransferItem]) -> list[TransferItem]:
        # Stock and lot rows are locked in drug order across all transfers
        return sorted(items.values(), key=lambda item: (item.drug_id, item.id))

    @staticmethod
    def _refresh_totals(transfer: Transfer) -> None:
        total = Decimal("0.00")
        for item in transfer.items:
            item.total_value = line_value(effective_quantity(item), item.unit_price)
            total += item.total_value
        transfer.total_items = len(transfer.items)
        transfer.total_value = round_money(total)

    async def create(self, data: TransferCreate, requester_id: int) -> Transfer:
        """Open a PENDING requisition with unit prices taken from the catalog."""
        source = Department(data.source_department)
        destination = Department(data.destination_department)
        if source == destination:
            raise ValidationError(
                "Source and destination departments must differ",
                field="destination_department",
            )
        if not data.items:
            raise ValidationError("A transfer needs at least one item", field="items")
        drug_ids = [item.drug_id for item in data.items]
        if len(set(drug_ids)) != len(drug_ids):
            raise ValidationError("Each drug may appear only once per transfer", field="items")

        async def work() -> Transfer:
            result = await self.db.execute(select(Drug).where(Drug.id.in_(drug_ids)))
            drugs = {drug.id: drug for drug in result.scalars().all()}
            for drug_id in drug_ids:
                if drug_id not in drugs:
                    raise NotFoundError("Drug", drug_id)
                if not drugs[drug_id].is_active:
                    raise ValidationError(f"Drug {drug_id} is inactive", field="items")

            transfer = Transfer(
                requisition_number=await get_document_number(
                    self.db, settings.requisition_prefix
                ),
                title=data.title,
                purpose=data.purpose,
                source_department=source.value,
                destination_department=destination.value,
                status=TransferStatus.PENDING.value,
                requester_id=requester_id,
                requested_at=utcnow(),
                request_note=data.request_note,
            )
            for line in data.items:
                drug = drugs[line.drug_id]
                item = TransferItem(
                    drug_id=drug.id,
                    requested_quantity=line.requested_quantity,
                    unit_price=round_money(drug.price_per_box),
                    item_note=line.item_note,
                )
                item.drug = drug
                transfer.items.append(item)
            self._refresh_totals(transfer)
            self.db.add(transfer)
            await self.db.flush()

            await self.audit.log(
                action=AuditAction.CREATE_TRANSFER,
                entity_type="Transfer",
                entity_id=transfer.id,
                entity_identifier=transfer.requisition_number,
                user_id=requester_id,
                new_values={
                    "source_department": transfer.source_department,
                    "destination_department": transfer.destination_department,
                    "items": {str(i.drug_id): i.requested_quantity for i in transfer.items},
                },
            )
            return transfer

        transfer = await run_in_transaction(self.db, work)
        logger.info(
            "Transfer %s created: %s -> %s, %d items",
            transfer.requisition_number,
            transfer.source_department,
            transfer.destination_department,
            transfer.total_items,
        )
        return transfer

    async def approve(
        self, transfer_id: int, data: TransferApproveRequest, approver_id: int
    ) -> Transfer:
        """Set approved quantities; items not listed are approved as requested."""

        async def work() -> Transfer:
            transfer = await self._get_for_update(transfer_id)
            self._ensure_transition(transfer, TransferStatus.APPROVED)
            items = self._items_by_id(transfer, [line.item_id for line in data.items])
            overrides = {line.item_id: line for line in data.items}

            for item in items.values():
                line = overrides.get(item.id)
                approved = item.requested_quantity
                if line is not None and line.approved_quantity is not None:
                    approved = line.approved_quantity
                if approved < 0 or approved > item.requested_quantity:
                    raise ValidationError(
                        f"Approved quantity {approved} for item {item.id} must be between 0 "
                        f"and the requested {item.requested_quantity}",
                        field="approved_quantity",
                    )
                item.approved_quantity = approved
                if line is not None and line.item_note:
                    item.item_note = _append_note(item.item_note, line.item_note)

            transfer.status = TransferStatus.APPROVED.value
            transfer.approver_id = approver_id
            transfer.approved_at = utcnow()
            transfer.approval_note = data.note
            self._refresh_totals(transfer)
            await self.db.flush()

            await self.audit.log(
                action=AuditAction.APPROVE_TRANSFER,
                entity_type="Transfer",
                entity_id=transfer.id,
                entity_identifier=transfer.requisition_number,
                user_id=approver_id,
                old_values={"status": TransferStatus.PENDING.value},
                new_values={
                    "status": transfer.status,
                    "approved": {str(i.id): i.approved_quantity for i in transfer.items},
                },
                comment=data.note,
            )
            return transfer

        transfer = await run_in_transaction(self.db, work)
        logger.info("Transfer %s approved by user %s", transfer.requisition_number, approver_id)
        return transfer

    async def dispense(
        self, transfer_id: int, data: TransferDispenseRequest, dispenser_id: int
    ) -> Transfer:
        """Take approved quantities from the source department's lots.

        Dispensed quantity is capped by available stock and unexpired lots; a
        shortfall is noted on the item and is not an error.
        """

        async def work() -> Transfer:
            transfer = await self._get_for_update(transfer_id)
            self._ensure_transition(transfer, TransferStatus.PREPARED)
            items = self._items_by_id(transfer, [line.item_id for line in data.items])
            overrides = {line.item_id: line for line in data.items}
            dispense_date = today()

            for item in self._in_lock_order(items):
                approved = item.approved_quantity or 0
                target = approved
                line = overrides.get(item.id)
                if line is not None and line.quantity is not None:
                    if line.quantity > approved:
                        raise ValidationError(
                            f"Cannot dispense {line.quantity} of item {item.id}: "
                            f"only {approved} approved",
                            field="quantity",
                        )
                    target = line.quantity
                if line is not None and line.item_note:
                    item.item_note = _append_note(item.item_note, line.item_note)

                dispensed = 0
                if target > 0:
                    dispensed = await self._dispense_item(
                        transfer, item, target, dispenser_id, dispense_date
                    )
                item.dispensed_quantity = dispensed

                shortfall = approved - dispensed
                if shortfall > 0:
                    item.item_note = _append_note(item.item_note, f"unsatisfied: {shortfall}")
                    logger.info(
                        "Transfer %s item %s dispensed %d of %d approved",
                        transfer.requisition_number,
                        item.id,
                        dispensed,
                        approved,
                    )

            transfer.status = TransferStatus.PREPARED.value
            transfer.dispenser_id = dispenser_id
            transfer.dispensed_at = utcnow()
            transfer.dispense_note = data.note
            self._refresh_totals(transfer)
            await self.db.flush()

            await self.audit.log(
                action=AuditAction.DISPENSE_TRANSFER,
                entity_type="Transfer",
                entity_id=transfer.id,
                entity_identifier=transfer.requisition_number,
                user_id=dispenser_id,
                old_values={"status": TransferStatus.APPROVED.value},
                new_values={
                    "status": transfer.status,
                    "dispensed": {str(i.id): i.dispensed_quantity for i in transfer.items},
                },
                comment=data.note,
            )
            return transfer

        transfer = await run_in_transaction(self.db, work)
        logger.info("Transfer %s dispensed by user %s", transfer.requisition_number, dispenser_id)
        return transfer

    async def _dispense_item(
        self,
        transfer: Transfer,
        item: TransferItem,
        target: int,
        dispenser_id: int,
        dispense_date: date,
    ) -> int:
        stock = await self.ledger.find_stock_for_update(item.drug_id, transfer.source_department)
        if stock is None:
            return 0
        allocation = await self.allocator.allocate(
            item.drug_id,
            transfer.source_department,
            min(target, stock.available_quantity),
            exclude_expired_before=dispense_date,
        )
        for consumption in allocation.consumptions:
            await self.ledger.record_outflow(
                stock,
                TransactionType.TRANSFER_OUT,
                consumption.quantity,
                dispenser_id,
                unit_cost=item.unit_price,
                reference=transfer.requisition_number,
                note=f"Transfer to {transfer.destination_department}, lot {consumption.lot_number}",
                batch_id=consumption.batch_id,
                transfer_id=transfer.id,
            )
            item.batches.append(
                TransferItemBatch(
                    source_batch_id=consumption.batch_id,
                    lot_number=consumption.lot_number,
                    expiry_date=consumption.expiry_date,
                    manufacturer=consumption.manufacturer,
                    unit_cost=consumption.unit_cost,
                    quantity=consumption.quantity,
                )
            )

        if allocation.consumptions:
            item.lot_number = ", ".join(c.lot_number for c in allocation.consumptions)
            expiries = [c.expiry_date for c in allocation.consumptions if c.expiry_date]
            item.expiry_date = min(expiries) if expiries else None
            item.manufacturer = next(
                (c.manufacturer for c in allocation.consumptions if c.manufacturer), None
            )
        return allocation.allocated

    async def receive(
        self, transfer_id: int, data: TransferReceiveRequest, receiver_id: int
    ) -> Transfer:
        """Credit the destination with the received units, lot by lot.

        Ends DELIVERED when every item was received in full of its approved
        quantity, PARTIAL otherwise.
        """

        async def work() -> Transfer:
            transfer = await self._get_for_update(transfer_id)
            if TransferStatus(transfer.status) != TransferStatus.PREPARED:
                raise InvalidTransitionError(
                    f"Transfer {transfer.requisition_number}",
                    transfer.status,
                    TransferStatus.DELIVERED.value,
                )
            items = self._items_by_id(transfer, [line.item_id for line in data.items])
            overrides = {line.item_id: line for line in data.items}

            plan: list[tuple[TransferItem, int]] = []
            for item in self._in_lock_order(items):
                dispensed = item.dispensed_quantity or 0
                line = overrides.get(item.id)
                received = dispensed
                if line is not None and line.received_quantity is not None:
                    received = line.received_quantity
                if received < 0 or received > dispensed:
                    raise ValidationError(
                        f"Received quantity {received} for item {item.id} must be between 0 "
                        f"and the dispensed {dispensed}",
                        field="received_quantity",
                    )
                item_note = line.item_note if line is not None else None
                if received < dispensed and not (item_note or data.note):
                    raise ValidationError(
                        f"Item {item.id}: received {received} of {dispensed} dispensed; "
                        "a note explaining the difference is required",
                        field="note",
                    )
                if item_note:
                    item.item_note = _append_note(item.item_note, item_note)
                plan.append((item, received))

            for item, received in plan:
                item.received_quantity = received
                if received > 0:
                    await self._receive_item(transfer, item, received, receiver_id)

            final = (
                TransferStatus.DELIVERED
                if all(item.received_quantity == item.approved_quantity for item in items.values())
                else TransferStatus.PARTIAL
            )
            self._ensure_transition(transfer, final)
            transfer.status = final.value
            transfer.receiver_id = receiver_id
            transfer.received_at = utcnow()
            transfer.receive_note = data.note
            self._refresh_totals(transfer)
            await self.db.flush()

            await self.audit.log(
                action=AuditAction.RECEIVE_TRANSFER,
                entity_type="Transfer",
                entity_id=transfer.id,
                entity_identifier=transfer.requisition_number,
                user_id=receiver_id,
                old_values={"status": TransferStatus.PREPARED.value},
                new_values={
                    "status": transfer.status,
                    "received": {str(i.id): i.received_quantity for i in transfer.items},
                },
                comment=data.note,
            )
            return transfer

        transfer = await run_in_transaction(self.db, work)
        logger.info(
            "Transfer %s received by user %s: %s",
            transfer.requisition_number,
            receiver_id,
            transfer.status,
        )
        return transfer

    async def _receive_item(
        self, transfer: Transfer, item: TransferItem, received: int, receiver_id: int
    ) -> None:
        stock = await self.ledger.get_or_create_stock(item.drug_id, transfer.destination_department)
        remaining = received
        ordered = sorted(
            item.batches,
            key=lambda b: (b.expiry_date is None, b.expiry_date or date.max, b.id),
        )
        for batch in ordered:
            take = min(batch.quantity, remaining)
            batch.received_quantity = take
            remaining -= take
            if take == 0:
                continue
            lot = await self.allocator.credit(
                stock,
                batch.lot_number,
                take,
                expiry_date=batch.expiry_date,
                manufacturer=batch.manufacturer,
                unit_cost=batch.unit_cost,
                conflict_suffix=transfer.requisition_number,
            )
            await self.ledger.record_inflow(
                stock,
                TransactionType.TRANSFER_IN,
                take,
                receiver_id,
                unit_cost=item.unit_price,
                reference=transfer.requisition_number,
                note=f"Transfer from {transfer.source_department}, lot {lot.lot_number}",
                batch_id=lot.id,
                transfer_id=transfer.id,
            )

    async def cancel(
        self, transfer_id: int, data: TransferCancelRequest, user_id: int
    ) -> Transfer:
        """Cancel before dispensing. No stock moves."""

        async def work() -> Transfer:
            transfer = await self._get_for_update(transfer_id)
            self._ensure_transition(transfer, TransferStatus.CANCELLED)
            previous = transfer.status
            transfer.status = TransferStatus.CANCELLED.value
            transfer.cancelled_by_id = user_id
            transfer.cancelled_at = utcnow()
            transfer.cancellation_note = data.note
            await self.db.flush()

            await self.audit.log(
                action=AuditAction.CANCEL_TRANSFER,
                entity_type="Transfer",
                entity_id=transfer.id,
                entity_identifier=transfer.requisition_number,
                user_id=user_id,
                old_values={"status": previous},
                new_values={"status": transfer.status},
                comment=data.note,
            )
            return transfer

        transfer = await run_in_transaction(self.db, work)
        logger.info("Transfer %s cancelled by user %s", transfer.requisition_number, user_id)
        return transfer
