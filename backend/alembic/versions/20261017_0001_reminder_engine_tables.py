"""Create client, package, template, tenant, campaign, trigger ledger, and dispatch result tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "clients",
        sa.Column("subject_id", sa.String(length=128), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("whatsapp_number", sa.String(length=64), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("email", sa.String(length=256), nullable=True),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("fields_json", sa.Text(), nullable=False, server_default="{}"),
        sa.PrimaryKeyConstraint("subject_id"),
    )
    op.create_index("ix_clients_organization_id", "clients", ["organization_id"], unique=False)
    op.create_index("ix_clients_date_of_birth", "clients", ["date_of_birth"], unique=False)

    op.create_table(
        "client_packages",
        sa.Column("assignment_id", sa.String(length=128), nullable=False),
        sa.Column("subject_id", sa.String(length=128), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=False),
        sa.Column("package_id", sa.String(length=128), nullable=False),
        sa.Column("package_name", sa.String(length=256), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.PrimaryKeyConstraint("assignment_id"),
    )
    op.create_index("ix_client_packages_subject_id", "client_packages", ["subject_id"], unique=False)
    op.create_index("ix_client_packages_organization_id", "client_packages", ["organization_id"], unique=False)
    op.create_index("ix_client_packages_end_date", "client_packages", ["end_date"], unique=False)

    op.create_table(
        "message_templates",
        sa.Column("template_id", sa.String(length=128), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=False),
        sa.Column("template_type", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("template_id"),
    )
    op.create_index("ix_message_templates_organization_id", "message_templates", ["organization_id"], unique=False)

    op.create_table(
        "tenant_settings",
        sa.Column("organization_id", sa.String(length=128), nullable=False),
        sa.Column("organization_name", sa.String(length=256), nullable=False),
        sa.Column("messaging_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("renewal_link", sa.String(length=512), nullable=False, server_default=""),
        sa.PrimaryKeyConstraint("organization_id"),
    )

    op.create_table(
        "scheduled_campaigns",
        sa.Column("campaign_id", sa.String(length=64), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=False),
        sa.Column("title", sa.String(length=256), nullable=False),
        sa.Column("message_text", sa.Text(), nullable=False),
        sa.Column("target_subject_ids_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("campaign_id"),
    )
    op.create_index("ix_scheduled_campaigns_organization_id", "scheduled_campaigns", ["organization_id"], unique=False)
    op.create_index("ix_scheduled_campaigns_scheduled_at", "scheduled_campaigns", ["scheduled_at"], unique=False)
    op.create_index("ix_scheduled_campaigns_is_sent", "scheduled_campaigns", ["is_sent"], unique=False)

    op.create_table(
        "sent_triggers",
        sa.Column("record_id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False, autoincrement=True),
        sa.Column("subject_id", sa.String(length=128), nullable=False),
        sa.Column("trigger_type", sa.String(length=32), nullable=False),
        sa.Column("trigger_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("record_id"),
        sa.UniqueConstraint("subject_id", "trigger_type", "trigger_date", name="uq_sent_triggers_key"),
    )
    op.create_index("ix_sent_triggers_trigger_date", "sent_triggers", ["trigger_date"], unique=False)

    op.create_table(
        "dispatch_results",
        sa.Column("row_id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False, autoincrement=True),
        sa.Column("result_id", sa.String(length=64), nullable=False),
        sa.Column("run_id", sa.String(length=64), nullable=True),
        sa.Column("campaign_id", sa.String(length=64), nullable=True),
        sa.Column("subject_id", sa.String(length=128), nullable=True),
        sa.Column("subject_name", sa.String(length=256), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=True),
        sa.Column("address", sa.String(length=64), nullable=True),
        sa.Column("trigger_type", sa.String(length=32), nullable=False),
        sa.Column("outcome", sa.String(length=16), nullable=False),
        sa.Column("message_body", sa.Text(), nullable=True),
        sa.Column("template_name", sa.String(length=128), nullable=True),
        sa.Column("provider_message_id", sa.String(length=256), nullable=True),
        sa.Column("error_code", sa.String(length=128), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("row_id"),
        sa.UniqueConstraint("result_id"),
    )
    op.create_index("ix_dispatch_results_run_id", "dispatch_results", ["run_id"], unique=False)
    op.create_index("ix_dispatch_results_campaign_id", "dispatch_results", ["campaign_id"], unique=False)
    op.create_index("ix_dispatch_results_subject_id", "dispatch_results", ["subject_id"], unique=False)
    op.create_index("ix_dispatch_results_organization_id", "dispatch_results", ["organization_id"], unique=False)
    op.create_index("ix_dispatch_results_outcome", "dispatch_results", ["outcome"], unique=False)
    op.create_index("ix_dispatch_results_created_at", "dispatch_results", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_dispatch_results_created_at", table_name="dispatch_results")
    op.drop_index("ix_dispatch_results_outcome", table_name="dispatch_results")
    op.drop_index("ix_dispatch_results_organization_id", table_name="dispatch_results")
    op.drop_index("ix_dispatch_results_subject_id", table_name="dispatch_results")
    op.drop_index("ix_dispatch_results_campaign_id", table_name="dispatch_results")
    op.drop_index("ix_dispatch_results_run_id", table_name="dispatch_results")
    op.drop_table("dispatch_results")

    op.drop_index("ix_sent_triggers_trigger_date", table_name="sent_triggers")
    op.drop_table("sent_triggers")

    op.drop_index("ix_scheduled_campaigns_is_sent", table_name="scheduled_campaigns")
    op.drop_index("ix_scheduled_campaigns_scheduled_at", table_name="scheduled_campaigns")
    op.drop_index("ix_scheduled_campaigns_organization_id", table_name="scheduled_campaigns")
    op.drop_table("scheduled_campaigns")

    op.drop_table("tenant_settings")

    op.drop_index("ix_message_templates_organization_id", table_name="message_templates")
    op.drop_table("message_templates")

    op.drop_index("ix_client_packages_end_date", table_name="client_packages")
    op.drop_index("ix_client_packages_organization_id", table_name="client_packages")
    op.drop_index("ix_client_packages_subject_id", table_name="client_packages")
    op.drop_table("client_packages")

    op.drop_index("ix_clients_date_of_birth", table_name="clients")
    op.drop_index("ix_clients_organization_id", table_name="clients")
    op.drop_table("clients")
