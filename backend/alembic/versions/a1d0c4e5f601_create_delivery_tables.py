"""create job queue and webhook delivery tables

Revision ID: a1d0c4e5f601
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "a1d0c4e5f601"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "jobs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("company_id", sa.String(), nullable=True),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("state", sa.String(), nullable=False, server_default="waiting"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(), nullable=True),
        sa.Column("lease_owner", sa.String(), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("result_json", sa.JSON(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_jobs_id", "jobs", ["id"], unique=False)
    op.create_index("ix_jobs_queue_name", "jobs", ["queue_name"], unique=False)
    op.create_index("ix_jobs_company_id", "jobs", ["company_id"], unique=False)
    op.create_index("ix_jobs_queue_state_created", "jobs", ["queue_name", "state", "created_at"], unique=False)
    op.create_index(
        "ix_jobs_queue_state_next_attempt",
        "jobs",
        ["queue_name", "state", "next_attempt_at"],
        unique=False,
    )
    op.create_index("ix_jobs_state_lease_expires", "jobs", ["state", "lease_expires_at"], unique=False)

    op.create_table(
        "queue_controls",
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("is_paused", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("paused_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("queue_name"),
    )

    op.create_table(
        "webhook_subscriptions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("company_id", sa.String(), nullable=False),
        sa.Column("url", sa.String(), nullable=False),
        sa.Column("events", sa.JSON(), nullable=False),
        sa.Column("secret_enc", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("last_status", sa.String(), nullable=False, server_default="never"),
        sa.Column("last_attempt_at", sa.DateTime(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_webhook_subscriptions_id", "webhook_subscriptions", ["id"], unique=False)
    op.create_index("ix_webhook_subscriptions_company_id", "webhook_subscriptions", ["company_id"], unique=False)
    op.create_index(
        "ix_webhook_subscriptions_company_active",
        "webhook_subscriptions",
        ["company_id", "is_active"],
        unique=False,
    )

    op.create_table(
        "webhook_delivery_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("webhook_id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.Integer(), nullable=True),
        sa.Column("company_id", sa.String(), nullable=True),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_webhook_delivery_logs_id", "webhook_delivery_logs", ["id"], unique=False)
    op.create_index("ix_webhook_delivery_logs_webhook_id", "webhook_delivery_logs", ["webhook_id"], unique=False)
    op.create_index("ix_webhook_delivery_logs_job_id", "webhook_delivery_logs", ["job_id"], unique=False)
    op.create_index("ix_webhook_delivery_logs_company_id", "webhook_delivery_logs", ["company_id"], unique=False)
    op.create_index("ix_webhook_delivery_logs_created_at", "webhook_delivery_logs", ["created_at"], unique=False)
    op.create_index(
        "ix_webhook_delivery_logs_webhook_created",
        "webhook_delivery_logs",
        ["webhook_id", "created_at"],
        unique=False,
    )


def downgrade():
    op.drop_index("ix_webhook_delivery_logs_webhook_created", table_name="webhook_delivery_logs")
    op.drop_index("ix_webhook_delivery_logs_created_at", table_name="webhook_delivery_logs")
    op.drop_index("ix_webhook_delivery_logs_company_id", table_name="webhook_delivery_logs")
    op.drop_index("ix_webhook_delivery_logs_job_id", table_name="webhook_delivery_logs")
    op.drop_index("ix_webhook_delivery_logs_webhook_id", table_name="webhook_delivery_logs")
    op.drop_index("ix_webhook_delivery_logs_id", table_name="webhook_delivery_logs")
    op.drop_table("webhook_delivery_logs")

    op.drop_index("ix_webhook_subscriptions_company_active", table_name="webhook_subscriptions")
    op.drop_index("ix_webhook_subscriptions_company_id", table_name="webhook_subscriptions")
    op.drop_index("ix_webhook_subscriptions_id", table_name="webhook_subscriptions")
    op.drop_table("webhook_subscriptions")

    op.drop_table("queue_controls")

    op.drop_index("ix_jobs_state_lease_expires", table_name="jobs")
    op.drop_index("ix_jobs_queue_state_next_attempt", table_name="jobs")
    op.drop_index("ix_jobs_queue_state_created", table_name="jobs")
    op.drop_index("ix_jobs_company_id", table_name="jobs")
    op.drop_index("ix_jobs_queue_name", table_name="jobs")
    op.drop_index("ix_jobs_id", table_name="jobs")
    op.drop_table("jobs")
