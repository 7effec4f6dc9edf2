"""Drug catalog, stock ledger, lots and transfers

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=None if nullable else sa.func.now(),
        nullable=nullable,
    )


def upgrade() -> None:
    # Users (mirrored from the hospital identity service)
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("username", sa.String(100), nullable=False),
        sa.Column("full_name", sa.String(200), nullable=False),
        sa.Column("position", sa.String(100), nullable=True),
        sa.Column("department", sa.String(20), nullable=True),
        sa.Column("role", sa.String(50), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)
    op.create_index("ix_users_role", "users", ["role"], unique=False)

    op.create_table(
        "document_sequences",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("prefix", sa.String(20), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("last_number", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id", name="pk_document_sequences"),
        sa.UniqueConstraint("prefix", "year", name="uq_document_sequence_prefix_year"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(100), nullable=False),
        sa.Column("entity_id", sa.BigInteger(), nullable=False),
        sa.Column("entity_identifier", sa.String(200), nullable=True),
        sa.Column("old_values", postgresql.JSONB(), nullable=True),
        sa.Column("new_values", postgresql.JSONB(), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id", name="pk_audit_logs"),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)
    op.create_index("ix_audit_logs_entity_type", "audit_logs", ["entity_type"], unique=False)
    op.create_index("ix_audit_logs_entity_id", "audit_logs", ["entity_id"], unique=False)
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"], unique=False)

    # Drug catalog
    op.create_table(
        "drugs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("hospital_drug_code", sa.String(50), nullable=False),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("generic_name", sa.String(300), nullable=True),
        sa.Column("dosage_form", sa.String(50), nullable=False),
        sa.Column("strength", sa.String(50), nullable=True),
        sa.Column("unit", sa.String(30), nullable=False),
        sa.Column("package_size", sa.String(50), nullable=True),
        sa.Column("price_per_box", sa.Numeric(15, 2), nullable=False, server_default="0.00"),
        sa.Column("category", sa.String(50), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id", name="pk_drugs"),
        sa.CheckConstraint("price_per_box >= 0", name="ck_drugs_price_non_negative"),
    )
    op.create_index("ix_drugs_hospital_drug_code", "drugs", ["hospital_drug_code"], unique=True)
    op.create_index("ix_drugs_name", "drugs", ["name"], unique=False)

    # Stock per drug and department
    op.create_table(
        "stock",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("drug_id", sa.BigInteger(), nullable=False),
        sa.Column("department", sa.String(20), nullable=False),
        sa.Column("total_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reserved_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("minimum_stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_value", sa.Numeric(15, 2), nullable=False, server_default="0.00"),
        _timestamp("last_updated"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id", name="pk_stock"),
        sa.ForeignKeyConstraint(["drug_id"], ["drugs.id"], name="fk_stock_drug_id_drugs"),
        sa.UniqueConstraint("drug_id", "department", name="uq_stock_drug_department"),
        sa.CheckConstraint("total_quantity >= 0", name="ck_stock_total_quantity_non_negative"),
        sa.CheckConstraint(
            "reserved_quantity >= 0 AND reserved_quantity <= total_quantity",
            name="ck_stock_reserved_within_total",
        ),
        sa.CheckConstraint("minimum_stock >= 0", name="ck_stock_minimum_stock_non_negative"),
    )
    op.create_index("ix_stock_drug_id", "stock", ["drug_id"], unique=False)
    op.create_index("ix_stock_department", "stock", ["department"], unique=False)

    # Lots
    op.create_table(
        "drug_batches",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("stock_id", sa.BigInteger(), nullable=False),
        sa.Column("drug_id", sa.BigInteger(), nullable=False),
        sa.Column("department", sa.String(20), nullable=False),
        sa.Column("lot_number", sa.String(100), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=True),
        sa.Column("manufacturer", sa.String(200), nullable=True),
        sa.Column("remaining_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unit_cost", sa.Numeric(15, 2), nullable=False, server_default="0.00"),
        _timestamp("received_date"),
        sa.PrimaryKeyConstraint("id", name="pk_drug_batches"),
        sa.ForeignKeyConstraint(["stock_id"], ["stock.id"], name="fk_drug_batches_stock_id_stock"),
        sa.ForeignKeyConstraint(["drug_id"], ["drugs.id"], name="fk_drug_batches_drug_id_drugs"),
        sa.UniqueConstraint(
            "drug_id", "department", "lot_number", name="uq_drug_batches_lot_number"
        ),
        sa.CheckConstraint(
            "remaining_quantity >= 0", name="ck_drug_batches_remaining_non_negative"
        ),
    )
    op.create_index("ix_drug_batches_stock_id", "drug_batches", ["stock_id"], unique=False)
    op.create_index("ix_drug_batches_drug_id", "drug_batches", ["drug_id"], unique=False)
    op.create_index("ix_drug_batches_expiry_date", "drug_batches", ["expiry_date"], unique=False)

    # Transfers
    op.create_table(
        "transfers",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("requisition_number", sa.String(50), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("purpose", sa.Text(), nullable=True),
        sa.Column("source_department", sa.String(20), nullable=False),
        sa.Column("destination_department", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("requester_id", sa.BigInteger(), nullable=False),
        _timestamp("requested_at"),
        sa.Column("request_note", sa.Text(), nullable=True),
        sa.Column("approver_id", sa.BigInteger(), nullable=True),
        _timestamp("approved_at", nullable=True),
        sa.Column("approval_note", sa.Text(), nullable=True),
        sa.Column("dispenser_id", sa.BigInteger(), nullable=True),
        _timestamp("dispensed_at", nullable=True),
        sa.Column("dispense_note", sa.Text(), nullable=True),
        sa.Column("receiver_id", sa.BigInteger(), nullable=True),
        _timestamp("received_at", nullable=True),
        sa.Column("receive_note", sa.Text(), nullable=True),
        sa.Column("cancelled_by_id", sa.BigInteger(), nullable=True),
        _timestamp("cancelled_at", nullable=True),
        sa.Column("cancellation_note", sa.Text(), nullable=True),
        sa.Column("total_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_value", sa.Numeric(15, 2), nullable=False, server_default="0.00"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id", name="pk_transfers"),
        sa.ForeignKeyConstraint(
            ["requester_id"], ["users.id"], name="fk_transfers_requester_id_users"
        ),
        sa.ForeignKeyConstraint(["approver_id"], ["users.id"], name="fk_transfers_approver_id_users"),
        sa.ForeignKeyConstraint(
            ["dispenser_id"], ["users.id"], name="fk_transfers_dispenser_id_users"
        ),
        sa.ForeignKeyConstraint(["receiver_id"], ["users.id"], name="fk_transfers_receiver_id_users"),
        sa.ForeignKeyConstraint(
            ["cancelled_by_id"], ["users.id"], name="fk_transfers_cancelled_by_id_users"
        ),
        sa.CheckConstraint(
            "source_department <> destination_department",
            name="ck_transfers_distinct_departments",
        ),
    )
    op.create_index(
        "ix_transfers_requisition_number", "transfers", ["requisition_number"], unique=True
    )
    op.create_index("ix_transfers_source_department", "transfers", ["source_department"])
    op.create_index(
        "ix_transfers_destination_department", "transfers", ["destination_department"]
    )
    op.create_index("ix_transfers_status", "transfers", ["status"])

    op.create_table(
        "transfer_items",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("transfer_id", sa.BigInteger(), nullable=False),
        sa.Column("drug_id", sa.BigInteger(), nullable=False),
        sa.Column("requested_quantity", sa.Integer(), nullable=False),
        sa.Column("approved_quantity", sa.Integer(), nullable=True),
        sa.Column("dispensed_quantity", sa.Integer(), nullable=True),
        sa.Column("received_quantity", sa.Integer(), nullable=True),
        sa.Column("unit_price", sa.Numeric(15, 2), nullable=False, server_default="0.00"),
        sa.Column("total_value", sa.Numeric(15, 2), nullable=False, server_default="0.00"),
        sa.Column("lot_number", sa.String(500), nullable=True),
        sa.Column("expiry_date", sa.Date(), nullable=True),
        sa.Column("manufacturer", sa.String(200), nullable=True),
        sa.Column("item_note", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_transfer_items"),
        sa.ForeignKeyConstraint(
            ["transfer_id"],
            ["transfers.id"],
            name="fk_transfer_items_transfer_id_transfers",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(["drug_id"], ["drugs.id"], name="fk_transfer_items_drug_id_drugs"),
        sa.UniqueConstraint("transfer_id", "drug_id", name="uq_transfer_items_transfer_drug"),
        sa.CheckConstraint(
            "requested_quantity > 0", name="ck_transfer_items_requested_positive"
        ),
        sa.CheckConstraint(
            "approved_quantity IS NULL OR "
            "(approved_quantity >= 0 AND approved_quantity <= requested_quantity)",
            name="ck_transfer_items_approved_within_requested",
        ),
        sa.CheckConstraint(
            "dispensed_quantity IS NULL OR "
            "(dispensed_quantity >= 0 AND approved_quantity IS NOT NULL "
            "AND dispensed_quantity <= approved_quantity)",
            name="ck_transfer_items_dispensed_within_approved",
        ),
        sa.CheckConstraint(
            "received_quantity IS NULL OR "
            "(received_quantity >= 0 AND dispensed_quantity IS NOT NULL "
            "AND received_quantity <= dispensed_quantity)",
            name="ck_transfer_items_received_within_dispensed",
        ),
    )
    op.create_index("ix_transfer_items_transfer_id", "transfer_items", ["transfer_id"])
    op.create_index("ix_transfer_items_drug_id", "transfer_items", ["drug_id"])

    op.create_table(
        "transfer_item_batches",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("transfer_item_id", sa.BigInteger(), nullable=False),
        sa.Column("source_batch_id", sa.BigInteger(), nullable=False),
        sa.Column("lot_number", sa.String(100), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=True),
        sa.Column("manufacturer", sa.String(200), nullable=True),
        sa.Column("unit_cost", sa.Numeric(15, 2), nullable=False, server_default="0.00"),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("received_quantity", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_transfer_item_batches"),
        sa.ForeignKeyConstraint(
            ["transfer_item_id"],
            ["transfer_items.id"],
            name="fk_transfer_item_batches_transfer_item_id_transfer_items",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["source_batch_id"],
            ["drug_batches.id"],
            name="fk_transfer_item_batches_source_batch_id_drug_batches",
        ),
        sa.CheckConstraint("quantity > 0", name="ck_transfer_item_batches_quantity_positive"),
        sa.CheckConstraint(
            "received_quantity IS NULL OR "
            "(received_quantity >= 0 AND received_quantity <= quantity)",
            name="ck_transfer_item_batches_received_within_quantity",
        ),
    )
    op.create_index(
        "ix_transfer_item_batches_transfer_item_id",
        "transfer_item_batches",
        ["transfer_item_id"],
    )

    # Stock ledger (append-only)
    op.create_table(
        "stock_transactions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("stock_id", sa.BigInteger(), nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("transaction_type", sa.String(30), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("before_quantity", sa.Integer(), nullable=False),
        sa.Column("after_quantity", sa.Integer(), nullable=False),
        sa.Column("before_min_stock", sa.Integer(), nullable=True),
        sa.Column("after_min_stock", sa.Integer(), nullable=True),
        sa.Column("min_stock_change", sa.Integer(), nullable=True),
        sa.Column("unit_cost", sa.Numeric(15, 2), nullable=False, server_default="0.00"),
        sa.Column("total_cost", sa.Numeric(15, 2), nullable=False, server_default="0.00"),
        sa.Column("reference", sa.String(100), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("batch_id", sa.BigInteger(), nullable=True),
        sa.Column("transfer_id", sa.BigInteger(), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id", name="pk_stock_transactions"),
        sa.ForeignKeyConstraint(
            ["stock_id"], ["stock.id"], name="fk_stock_transactions_stock_id_stock"
        ),
        sa.ForeignKeyConstraint(
            ["user_id"], ["users.id"], name="fk_stock_transactions_user_id_users"
        ),
        sa.ForeignKeyConstraint(
            ["batch_id"], ["drug_batches.id"], name="fk_stock_transactions_batch_id_drug_batches"
        ),
        sa.ForeignKeyConstraint(
            ["transfer_id"], ["transfers.id"], name="fk_stock_transactions_transfer_id_transfers"
        ),
    )
    op.create_index("ix_stock_transactions_stock_id", "stock_transactions", ["stock_id"])
    op.create_index("ix_stock_transactions_user_id", "stock_transactions", ["user_id"])
    op.create_index(
        "ix_stock_transactions_transaction_type", "stock_transactions", ["transaction_type"]
    )
    op.create_index("ix_stock_transactions_reference", "stock_transactions", ["reference"])
    op.create_index("ix_stock_transactions_transfer_id", "stock_transactions", ["transfer_id"])
    op.create_index("ix_stock_transactions_created_at", "stock_transactions", ["created_at"])


def downgrade() -> None:
    op.drop_table("stock_transactions")
    op.drop_table("transfer_item_batches")
    op.drop_table("transfer_items")
    op.drop_table("transfers")
    op.drop_table("drug_batches")
    op.drop_table("stock")
    op.drop_table("drugs")
    op.drop_table("audit_logs")
    op.drop_table("document_sequences")
    op.drop_table("users")
