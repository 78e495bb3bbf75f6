"""initial schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None

# One type object shared by both tables so the enum is only declared once.
FREQUENCY = sa.Enum(
    "once", "weekly", "biweekly", "monthly", "quarterly", "annual", name="frequency"
)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "spending_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("color", sa.String(length=7)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint(
            "family_id", "name", name="uq_spending_category_family_name"
        ),
    )
    op.create_index(
        "ix_spending_categories_family_active",
        "spending_categories",
        ["family_id", "is_active"],
    )

    op.create_table(
        "bank_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("institution_name", sa.String(length=120)),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("payee", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("attributed_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "scheduled",
                "paid",
                "partial",
                "overdue",
                "cancelled",
                name="paymentstatus",
            ),
            nullable=False,
        ),
        sa.Column("frequency", FREQUENCY, nullable=False),
        sa.Column(
            "spending_category_id",
            sa.Integer(),
            sa.ForeignKey("spending_categories.id"),
        ),
        sa.Column("paid_date", sa.Date()),
        sa.Column("paid_amount_cents", sa.Integer()),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_payments_amount_positive"),
        sa.CheckConstraint(
            "attributed_cents >= 0 AND attributed_cents <= amount_cents",
            name="ck_payments_attributed_within_amount",
        ),
    )
    op.create_index("ix_payments_family_due", "payments", ["family_id", "due_date"])
    op.create_index(
        "ix_payments_family_status_due",
        "payments",
        ["family_id", "status", "due_date"],
    )

    op.create_table(
        "income_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("expected_amount_cents", sa.Integer(), nullable=False),
        sa.Column("allocated_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("remaining_cents", sa.Integer(), nullable=False),
        sa.Column("scheduled_date", sa.Date(), nullable=False),
        sa.Column("actual_date", sa.Date()),
        sa.Column(
            "status",
            sa.Enum("scheduled", "received", "cancelled", name="incomestatus"),
            nullable=False,
        ),
        sa.Column("frequency", FREQUENCY, nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_income_amount_non_negative"),
        sa.CheckConstraint(
            "allocated_cents >= 0", name="ck_income_allocated_non_negative"
        ),
        sa.CheckConstraint(
            "remaining_cents >= 0", name="ck_income_remaining_non_negative"
        ),
        sa.CheckConstraint(
            "allocated_cents + remaining_cents = amount_cents",
            name="ck_income_aggregates_balance",
        ),
    )
    op.create_index(
        "ix_income_events_family_scheduled",
        "income_events",
        ["family_id", "scheduled_date"],
    )
    op.create_index(
        "ix_income_events_family_status_scheduled",
        "income_events",
        ["family_id", "status", "scheduled_date"],
    )

    op.create_table(
        "payment_attributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "payment_id",
            sa.Integer(),
            sa.ForeignKey("payments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "income_event_id",
            sa.Integer(),
            sa.ForeignKey("income_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "attribution_type",
            sa.Enum("manual", "automatic", name="attributiontype"),
            nullable=False,
        ),
        sa.Column("created_by", sa.String(length=120)),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_attribution_amount_positive"),
    )
    op.create_index(
        "ix_attributions_family_payment",
        "payment_attributions",
        ["family_id", "payment_id"],
    )
    op.create_index(
        "ix_attributions_family_income",
        "payment_attributions",
        ["family_id", "income_event_id"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "bank_account_id",
            sa.Integer(),
            sa.ForeignKey("bank_accounts.id"),
            nullable=False,
        ),
        sa.Column("external_id", sa.String(length=120)),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=False, server_default=""),
        sa.Column("merchant_name", sa.String(length=200)),
        sa.Column("pending", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("provider_category", sa.String(length=200)),
        sa.Column(
            "spending_category_id",
            sa.Integer(),
            sa.ForeignKey("spending_categories.id"),
        ),
        sa.Column("category_confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column(
            "user_categorized", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("payment_id", sa.Integer(), sa.ForeignKey("payments.id")),
        *_timestamps(),
        sa.UniqueConstraint(
            "bank_account_id", "external_id", name="uq_transactions_account_external"
        ),
        sa.CheckConstraint(
            "category_confidence >= 0 AND category_confidence <= 1",
            name="ck_transactions_confidence_range",
        ),
    )
    op.create_index(
        "ix_transactions_account_date", "transactions", ["bank_account_id", "date"]
    )
    op.create_index(
        "ix_transactions_category", "transactions", ["spending_category_id"]
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("family_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("actor", sa.String(length=120)),
        sa.Column(
            "action",
            sa.Enum("create", "update", "delete", name="auditaction"),
            nullable=False,
        ),
        sa.Column("entity_type", sa.String(length=60), nullable=False),
        sa.Column("entity_id", sa.String(length=60), nullable=False),
        sa.Column("old_values_json", sa.Text()),
        sa.Column("new_values_json", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_audit_logs_family_created", "audit_logs", ["family_id", "created_at"]
    )


def downgrade():
    op.drop_index("ix_audit_logs_family_created", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_transactions_category", table_name="transactions")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_attributions_family_income", table_name="payment_attributions")
    op.drop_index("ix_attributions_family_payment", table_name="payment_attributions")
    op.drop_table("payment_attributions")
    op.drop_index(
        "ix_income_events_family_status_scheduled", table_name="income_events"
    )
    op.drop_index("ix_income_events_family_scheduled", table_name="income_events")
    op.drop_table("income_events")
    op.drop_index("ix_payments_family_status_due", table_name="payments")
    op.drop_index("ix_payments_family_due", table_name="payments")
    op.drop_table("payments")
    op.drop_table("bank_accounts")
    op.drop_index(
        "ix_spending_categories_family_active", table_name="spending_categories"
    )
    op.drop_table("spending_categories")
