"""Initial schema: customers, recipients, message_logs.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

Startup also runs Base.metadata.create_all, so each table is only created
when it is missing.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(name: str) -> bool:
    return sa.inspect(op.get_bind()).has_table(name)


def upgrade() -> None:
    if not _has_table("customers"):
        op.create_table(
            "customers",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(), nullable=True),
            sa.Column("email", sa.String(), nullable=False),
            sa.Column("hashed_password", sa.String(), nullable=False),
            sa.Column("current_plan", sa.String(), nullable=False, server_default="none"),
            sa.Column("has_subscription", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("trial_active", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("trial_end", sa.DateTime(), nullable=True),
            sa.Column("trial_used", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("external_customer_id", sa.String(), nullable=True),
            sa.Column("external_subscription_id", sa.String(), nullable=True),
            sa.Column("subscription_end", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_customers_id", "customers", ["id"])
        op.create_index("ix_customers_email", "customers", ["email"], unique=True)
        op.create_index("ix_customers_external_customer_id", "customers", ["external_customer_id"], unique=True)
        op.create_index("ix_customers_external_subscription_id", "customers", ["external_subscription_id"])

    if not _has_table("recipients"):
        op.create_table(
            "recipients",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "customer_id", sa.Integer(),
                sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False,
            ),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("email", sa.String(), nullable=True),
            sa.Column("phone", sa.String(), nullable=True),
            sa.Column("delivery_method", sa.String(), nullable=False, server_default="email"),
            sa.Column("relationship", sa.String(), nullable=True),
            sa.Column("frequency", sa.String(), nullable=False, server_default="daily"),
            sa.Column("time_of_day", sa.String(), nullable=False, server_default="morning"),
            sa.Column("timezone", sa.String(), nullable=True),
            sa.Column("next_delivery", sa.DateTime(), nullable=True),
            sa.Column("last_sent", sa.DateTime(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("unsubscribe_token", sa.String(), nullable=False),
            sa.Column("unsubscribed_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_recipients_id", "recipients", ["id"])
        op.create_index("ix_recipients_customer_id", "recipients", ["customer_id"])
        op.create_index("ix_recipients_next_delivery", "recipients", ["next_delivery"])
        op.create_index("ix_recipients_is_active", "recipients", ["is_active"])
        op.create_index("ix_recipients_unsubscribe_token", "recipients", ["unsubscribe_token"], unique=True)

    if not _has_table("message_logs"):
        op.create_table(
            "message_logs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "customer_id", sa.Integer(),
                sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False,
            ),
            sa.Column(
                "recipient_id", sa.Integer(),
                sa.ForeignKey("recipients.id", ondelete="SET NULL"), nullable=True,
            ),
            sa.Column("channel", sa.String(), nullable=False),
            sa.Column("address", sa.String(), nullable=False),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("kind", sa.String(), nullable=False, server_default="scheduled"),
            sa.Column("delivered", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("sent_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_message_logs_id", "message_logs", ["id"])
        op.create_index("ix_message_logs_customer_id", "message_logs", ["customer_id"])
        op.create_index("ix_message_logs_recipient_id", "message_logs", ["recipient_id"])
        op.create_index("ix_message_logs_sent_at", "message_logs", ["sent_at"])


def downgrade() -> None:
    op.drop_table("message_logs")
    op.drop_table("recipients")
    op.drop_table("customers")
