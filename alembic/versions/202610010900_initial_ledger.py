"""initial ledger schema

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255)),
        sa.Column(
            "current_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "last_allowance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("last_rollover_period", sa.String(length=7)),
        sa.Column(
            "period_opening_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "period_topup_floor_id", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "allowance_topups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "description",
            sa.String(length=200),
            nullable=False,
            server_default="Allowance top-up",
        ),
        sa.Column("received_at", sa.DateTime(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "original_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("carry_over_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("spent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("remaining_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("depleted_at", sa.DateTime()),
        sa.Column("days_lasted", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_topups_amount_positive"),
        sa.CheckConstraint("spent_cents >= 0", name="ck_topups_spent_positive"),
    )
    op.create_index(
        "ix_topups_user_remaining",
        "allowance_topups",
        ["user_id", "remaining_cents"],
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "category",
            sa.Enum("essentials", "allowance", "extra", name="expensecategory"),
            nullable=False,
        ),
        sa.Column("note", sa.Text()),
        sa.Column(
            "allowance_topup_id",
            sa.Integer(),
            sa.ForeignKey("allowance_topups.id"),
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
    )
    op.create_index("ix_expenses_user_date", "expenses", ["user_id", "date"])
    op.create_index("ix_expenses_topup", "expenses", ["allowance_topup_id"])


def downgrade():
    op.drop_index("ix_expenses_topup", table_name="expenses")
    op.drop_index("ix_expenses_user_date", table_name="expenses")
    op.drop_table("expenses")
    op.drop_index("ix_topups_user_remaining", table_name="allowance_topups")
    op.drop_table("allowance_topups")
    op.drop_table("users")
