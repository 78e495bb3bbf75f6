"""add anchor_day to payments and income events

Revision ID: 202610191000
Revises: 202610180900
Create Date: 2026-10-19 10:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610191000"
down_revision = "202610180900"
branch_labels = None
depends_on = None

_DATE_COLUMNS = (("payments", "due_date"), ("income_events", "scheduled_date"))


def _day_of(column: str) -> str:
    if op.get_bind().dialect.name == "sqlite":
        return f"CAST(strftime('%d', {column}) AS INTEGER)"
    return f"CAST(EXTRACT(DAY FROM {column}) AS INTEGER)"


def upgrade() -> None:
    for table, date_column in _DATE_COLUMNS:
        with op.batch_alter_table(table) as batch_op:
            batch_op.add_column(sa.Column("anchor_day", sa.Integer(), nullable=True))
        # Existing rows anchor on the day they currently fall on.
        op.execute(
            f"UPDATE {table} SET anchor_day = {_day_of(date_column)} "
            "WHERE anchor_day IS NULL"
        )


def downgrade() -> None:
    for table, _ in _DATE_COLUMNS:
        with op.batch_alter_table(table) as batch_op:
            batch_op.drop_column("anchor_day")
