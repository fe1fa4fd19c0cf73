"""initial ledger and posting aggregates

Revision ID: 202610170900
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202610170900"
down_revision = None
branch_labels = None
depends_on = None

KIND = sa.Enum("bank", "contact", "savings_plan", "security", name="postingkind")
SUB_TYPE = sa.Enum(
    "buy", "sell", "dividend", "fee", "tax", name="securitypostingsubtype"
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
    ]


def _references() -> list[sa.Column]:
    return [
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=True
        ),
        sa.Column(
            "contact_id", sa.Integer(), sa.ForeignKey("contacts.id"), nullable=True
        ),
        sa.Column(
            "savings_plan_id",
            sa.Integer(),
            sa.ForeignKey("savings_plans.id"),
            nullable=True,
        ),
        sa.Column(
            "security_id", sa.Integer(), sa.ForeignKey("securities.id"), nullable=True
        ),
    ]


def upgrade() -> None:
    for table in ("contact_categories", "savings_plan_categories", "security_categories"):
        op.create_table(
            table,
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("name", sa.String(length=100), nullable=False),
            *_timestamps(),
        )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("iban", sa.String(length=34), nullable=True),
        sa.Column(
            "current_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        *_timestamps(),
    )
    op.create_index("ix_accounts_user", "accounts", ["user_id"])

    op.create_table(
        "contacts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("contact_categories.id"),
            nullable=True,
        ),
        *_timestamps(),
    )
    op.create_index("ix_contacts_user", "contacts", ["user_id"])

    op.create_table(
        "savings_plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=150), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("savings_plan_categories.id"),
            nullable=True,
        ),
        *_timestamps(),
    )
    op.create_index("ix_savings_plans_user", "savings_plans", ["user_id"])

    op.create_table(
        "securities",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("identifier", sa.String(length=50), nullable=True),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("security_categories.id"),
            nullable=True,
        ),
        *_timestamps(),
    )
    op.create_index("ix_securities_user", "securities", ["user_id"])

    op.create_table(
        "postings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("kind", KIND, nullable=False),
        *_references(),
        sa.Column("booking_date", sa.Date(), nullable=False),
        sa.Column("valuta_date", sa.Date(), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("security_sub_type", SUB_TYPE, nullable=True),
        sa.Column("group_id", sa.String(length=36), nullable=True),
        sa.Column("quantity", sa.Numeric(18, 6), nullable=True),
        sa.Column("subject", sa.String(length=200), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_postings_account_date", "postings", ["account_id", "booking_date"]
    )
    op.create_index(
        "ix_postings_contact_date", "postings", ["contact_id", "booking_date"]
    )
    op.create_index(
        "ix_postings_savings_plan_date",
        "postings",
        ["savings_plan_id", "booking_date"],
    )
    op.create_index(
        "ix_postings_security_date", "postings", ["security_id", "booking_date"]
    )
    op.create_index("ix_postings_group", "postings", ["group_id"])

    op.create_table(
        "posting_aggregates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("kind", KIND, nullable=False),
        *_references(),
        sa.Column("security_sub_type", SUB_TYPE, nullable=True),
        sa.Column(
            "period",
            sa.Enum("month", "quarter", "half_year", "year", name="aggregateperiod"),
            nullable=False,
        ),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column(
            "date_kind",
            sa.Enum("booking", "valuta", name="aggregatedatekind"),
            nullable=False,
            server_default="booking",
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index(
        "ix_posting_aggregates_kind_period",
        "posting_aggregates",
        ["kind", "period", "date_kind", "period_start"],
    )
    op.execute(
        "CREATE UNIQUE INDEX uq_posting_aggregate_key "
        "ON posting_aggregates(kind, COALESCE(account_id, -1), "
        "COALESCE(contact_id, -1), COALESCE(savings_plan_id, -1), "
        "COALESCE(security_id, -1), COALESCE(security_sub_type, ''), "
        "period, period_start, date_kind)"
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS uq_posting_aggregate_key")
    op.drop_index("ix_posting_aggregates_kind_period", table_name="posting_aggregates")
    op.drop_table("posting_aggregates")
    for name in (
        "ix_postings_group",
        "ix_postings_security_date",
        "ix_postings_savings_plan_date",
        "ix_postings_contact_date",
        "ix_postings_account_date",
    ):
        op.drop_index(name, table_name="postings")
    op.drop_table("postings")
    for table, index in (
        ("securities", "ix_securities_user"),
        ("savings_plans", "ix_savings_plans_user"),
        ("contacts", "ix_contacts_user"),
        ("accounts", "ix_accounts_user"),
    ):
        op.drop_index(index, table_name=table)
        op.drop_table(table)
    for table in ("security_categories", "savings_plan_categories", "contact_categories"):
        op.drop_table(table)
