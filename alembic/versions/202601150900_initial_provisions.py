"""initial provisions schema

Revision ID: 202601150900
Revises:
Create Date: 2026-01-15 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202601150900"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(14, 2)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "group_members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("group_id", "user_id", name="uq_group_member_user"),
    )
    op.create_index("ix_group_members_user_id", "group_members", ["user_id"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), nullable=False),
        sa.Column("parent_id", sa.Integer()),
        sa.Column("name", sa.String(length=191), nullable=False),
        sa.Column(
            "type", sa.Enum("expense", "income", name="categorytype"), nullable=False
        ),
        sa.Column(
            "color", sa.String(length=32), nullable=False, server_default="#cccccc"
        ),
        sa.Column("icon", sa.String(length=191), nullable=False, server_default=""),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_categories_group", "categories", ["group_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column(
            "type",
            sa.Enum("income", "expense", "transfer", name="transactiontype"),
            nullable=False,
        ),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("description", sa.Text()),
        *_timestamps(),
    )
    op.create_index("ix_transactions_group_date", "transactions", ["group_id", "date"])
    op.create_index(
        "ix_transactions_group_category_date",
        "transactions",
        ["group_id", "category_id", "date"],
    )

    op.create_table(
        "provisions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("planned_amount", MONEY, nullable=False),
        sa.Column("note", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint(
            "group_id",
            "category_id",
            "month",
            "year",
            name="uq_provision_group_category_period",
        ),
        sa.CheckConstraint("month >= 0 AND month <= 11", name="ck_provision_month"),
    )
    op.create_index(
        "ix_provisions_group_period", "provisions", ["group_id", "year", "month"]
    )

    op.create_table(
        "provision_audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer()),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("previous_amount", MONEY),
        sa.Column("new_amount", MONEY),
        sa.Column("context", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_provision_audit_group_period",
        "provision_audit_logs",
        ["group_id", "year", "month"],
    )

    op.create_table(
        "provision_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=191), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("source_month", sa.Integer(), nullable=False),
        sa.Column("source_year", sa.Integer(), nullable=False),
        sa.Column("created_by", sa.Integer()),
        *_timestamps(),
    )
    op.create_index(
        "ix_provision_templates_group", "provision_templates", ["group_id"]
    )

    op.create_table(
        "provision_template_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("provision_templates.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("planned_amount", MONEY, nullable=False),
    )

    op.create_table(
        "provision_recurring_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("planned_amount", MONEY, nullable=False),
        sa.Column("start_month", sa.Integer(), nullable=False),
        sa.Column("start_year", sa.Integer(), nullable=False),
        sa.Column("end_month", sa.Integer()),
        sa.Column("end_year", sa.Integer()),
        sa.Column(
            "apply_automatically",
            sa.Boolean(),
            nullable=False,
            server_default=sa.true(),
        ),
        sa.Column("notes", sa.Text()),
        sa.Column("created_by", sa.Integer()),
        *_timestamps(),
        sa.CheckConstraint("planned_amount >= 0", name="ck_recurring_amount_positive"),
    )
    op.create_index(
        "ix_provision_recurring_group", "provision_recurring_rules", ["group_id"]
    )


def downgrade():
    op.drop_index("ix_provision_recurring_group", table_name="provision_recurring_rules")
    op.drop_table("provision_recurring_rules")
    op.drop_table("provision_template_items")
    op.drop_index("ix_provision_templates_group", table_name="provision_templates")
    op.drop_table("provision_templates")
    op.drop_index("ix_provision_audit_group_period", table_name="provision_audit_logs")
    op.drop_table("provision_audit_logs")
    op.drop_index("ix_provisions_group_period", table_name="provisions")
    op.drop_table("provisions")
    op.drop_index("ix_transactions_group_category_date", table_name="transactions")
    op.drop_index("ix_transactions_group_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_categories_group", table_name="categories")
    op.drop_table("categories")
    op.drop_index("ix_group_members_user_id", table_name="group_members")
    op.drop_table("group_members")
