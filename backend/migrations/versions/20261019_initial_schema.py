"""Initial EcoTrend schema

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "devices",
        sa.Column("device_id", sa.String(128), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("location", sa.String(255), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("device_id"),
    )

    op.create_table(
        "chemicals",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("device_id", sa.String(128), nullable=False),
        sa.Column("tank_number", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("price_per_liter", sa.Numeric(10, 2), nullable=False),
        sa.Column("batch_number", sa.String(64), nullable=True),
        sa.Column("manufacturing_date", sa.Date(), nullable=True),
        sa.Column("expiration_date", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["device_id"], ["devices.device_id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("device_id", "tank_number", name="uq_chemicals_device_tank"),
        sa.CheckConstraint("tank_number >= 1 AND tank_number <= 7", name="ck_chemicals_tank_number_range"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("chemicals", schema=None) as batch_op:
        batch_op.create_index("ix_chemicals_device_id", ["device_id"], unique=False)

    op.create_table(
        "balances",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("device_id", sa.String(128), nullable=False),
        sa.Column("balance", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["device_id"], ["devices.device_id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("device_id"),
        sa.CheckConstraint("balance >= 0", name="ck_balances_non_negative"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "flow_states",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(64), nullable=False),
        sa.Column("device_id", sa.String(128), nullable=False),
        sa.Column("stage", sa.String(32), nullable=False),
        sa.Column("chemical_id", sa.Integer(), nullable=True),
        sa.Column("tank_number", sa.Integer(), nullable=False),
        sa.Column("volume", sa.Numeric(10, 2), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("transaction_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["device_id"], ["devices.device_id"]),
        sa.ForeignKeyConstraint(["chemical_id"], ["chemicals.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("session_id"),
        sa.UniqueConstraint("transaction_id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("flow_states", schema=None) as batch_op:
        batch_op.create_index("ix_flow_states_device_id", ["device_id"], unique=False)
        batch_op.create_index("ix_flow_states_stage", ["stage"], unique=False)
        batch_op.create_index("ix_flow_states_created_at", ["created_at"], unique=False)
        batch_op.create_index("ix_flow_states_device_stage_created", ["device_id", "stage", "created_at"], unique=False)

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("txn_id", sa.String(64), nullable=False),
        sa.Column("prv_txn_id", sa.String(64), nullable=False),
        sa.Column("device_id", sa.String(128), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("txn_date", sa.DateTime(), nullable=False),
        sa.Column("status", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("dispensed", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["device_id"], ["devices.device_id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("txn_id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("transactions", schema=None) as batch_op:
        batch_op.create_index("ix_transactions_device_id", ["device_id"], unique=False)
        batch_op.create_index("ix_transactions_device_created", ["device_id", "created_at"], unique=False)

    op.create_table(
        "dispensing_operations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("transaction_id", sa.Integer(), nullable=True),
        sa.Column("device_id", sa.String(128), nullable=False),
        sa.Column("tank_number", sa.Integer(), nullable=False),
        sa.Column("chemical_name", sa.String(128), nullable=False),
        sa.Column("price_per_liter", sa.Numeric(10, 2), nullable=False),
        sa.Column("volume", sa.Numeric(10, 2), nullable=False),
        sa.Column("total_cost", sa.Numeric(10, 2), nullable=False),
        sa.Column("batch_number", sa.String(64), nullable=True),
        sa.Column("expiration_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="completed"),
        sa.Column("receipt_number", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"]),
        sa.ForeignKeyConstraint(["device_id"], ["devices.device_id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("transaction_id"),
        sa.UniqueConstraint("receipt_number"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("dispensing_operations", schema=None) as batch_op:
        batch_op.create_index("ix_dispensing_operations_device_id", ["device_id"], unique=False)
        batch_op.create_index("ix_dispensing_device_created", ["device_id", "created_at"], unique=False)


def downgrade():
    op.drop_table("dispensing_operations")
    op.drop_table("transactions")
    op.drop_table("flow_states")
    op.drop_table("balances")
    op.drop_table("chemicals")
    op.drop_table("devices")
