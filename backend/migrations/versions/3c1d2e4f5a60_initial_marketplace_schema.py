"""initial marketplace schema

Revision ID: 3c1d2e4f5a60
Revises:
Create Date: 2026-10-01 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "3c1d2e4f5a60"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except sa.exc.SQLAlchemyError:
        return False


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    bind = op.get_bind()

    if not _table_exists(bind, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("profile_image_url", sa.String(length=1024), nullable=True),
            sa.Column("password_hash", sa.String(length=255), nullable=False),
            sa.Column("user_type", sa.String(length=32), nullable=False, server_default="property_seeker"),
            sa.Column("slug", sa.String(length=160), nullable=True),
            sa.Column("company_locations", sa.Text(), nullable=True),
            sa.Column("default_currency", sa.String(length=8), nullable=True),
            sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_users_email", "users", ["email"], unique=True)
        op.create_index("ix_users_user_type", "users", ["user_type"], unique=False)
        op.create_index("ix_users_slug", "users", ["slug"], unique=True)

    for table in ("property_purposes", "property_types"):
        if not _table_exists(bind, table):
            op.create_table(
                table,
                sa.Column("id", sa.Integer(), nullable=False),
                sa.Column("name", sa.String(length=80), nullable=False),
                sa.Column("slug", sa.String(length=96), nullable=False),
                sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
                sa.Column("created_at", sa.DateTime(), nullable=False),
                sa.PrimaryKeyConstraint("id"),
                sa.UniqueConstraint("name", name=f"uq_{table}_name"),
            )
            op.create_index(f"ix_{table}_slug", table, ["slug"], unique=True)

    if not _table_exists(bind, "listings"):
        op.create_table(
            "listings",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("account_type", sa.String(length=32), nullable=False, server_default="developer"),
            sa.Column("development_id", sa.Integer(), nullable=True),
            sa.Column("title", sa.String(length=200), nullable=False, server_default=""),
            sa.Column("slug", sa.String(length=240), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("size", sa.String(length=64), nullable=True),
            sa.Column("status", sa.String(length=64), nullable=True),
            sa.Column("listing_type", sa.String(length=16), nullable=False, server_default="property"),
            sa.Column("listing_status", sa.String(length=16), nullable=False, server_default="draft"),
            sa.Column("upload_status", sa.String(length=16), nullable=False, server_default="incomplete"),
            sa.Column("purposes", sa.JSON(), nullable=True),
            sa.Column("types", sa.JSON(), nullable=True),
            sa.Column("categories", sa.JSON(), nullable=True),
            sa.Column("listing_types", sa.JSON(), nullable=True),
            sa.Column("specifications", sa.JSON(), nullable=True),
            sa.Column("country", sa.String(length=80), nullable=True),
            sa.Column("state", sa.String(length=80), nullable=True),
            sa.Column("city", sa.String(length=80), nullable=True),
            sa.Column("town", sa.String(length=80), nullable=True),
            sa.Column("full_address", sa.String(length=400), nullable=True),
            sa.Column("latitude", sa.Float(), nullable=True),
            sa.Column("longitude", sa.Float(), nullable=True),
            sa.Column("price", sa.Float(), nullable=True),
            sa.Column("currency", sa.String(length=8), nullable=True),
            sa.Column("price_type", sa.String(length=16), nullable=True),
            sa.Column("duration", sa.String(length=32), nullable=True),
            sa.Column("ideal_duration", sa.Integer(), nullable=True),
            sa.Column("time_span", sa.String(length=32), nullable=True),
            sa.Column("amenities", sa.JSON(), nullable=True),
            sa.Column("media", sa.JSON(), nullable=True),
            sa.Column("model_3d", sa.JSON(), nullable=True),
            sa.Column("virtual_tour_link", sa.String(length=1024), nullable=True),
            sa.Column("floor_plan", sa.JSON(), nullable=True),
            sa.Column("additional_files", sa.JSON(), nullable=True),
            sa.Column("additional_information", sa.Text(), nullable=True),
            sa.Column("estimated_revenue", sa.Float(), nullable=True),
            sa.Column("views_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_modified_by", sa.Integer(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_listings_user_id", "listings", ["user_id"], unique=False)
        op.create_index("ix_listings_development_id", "listings", ["development_id"], unique=False)
        op.create_index("ix_listings_slug", "listings", ["slug"], unique=True)
        op.create_index("ix_listings_listing_type", "listings", ["listing_type"], unique=False)
        op.create_index("ix_listings_listing_status", "listings", ["listing_status"], unique=False)
        op.create_index("ix_listings_upload_status", "listings", ["upload_status"], unique=False)
        op.create_index("ix_listings_price", "listings", ["price"], unique=False)
        op.create_index("ix_listings_price_type", "listings", ["price_type"], unique=False)
        op.create_index("ix_listings_created_at", "listings", ["created_at"], unique=False)

    if not _table_exists(bind, "commission_rates"):
        op.create_table(
            "commission_rates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("agency_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("purpose_id", sa.Integer(), nullable=False),
            sa.Column("purpose_name", sa.String(length=80), nullable=True),
            sa.Column("type_id", sa.Integer(), nullable=True),
            sa.Column("type_name", sa.String(length=80), nullable=True),
            sa.Column("commission_rate", sa.Float(), nullable=False, server_default="0"),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("agency_id", "purpose_id", "type_id", name="uq_commission_rates_scope"),
        )
        op.create_index("ix_commission_rates_agency_id", "commission_rates", ["agency_id"], unique=False)

    if not _table_exists(bind, "conversations"):
        op.create_table(
            "conversations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user1_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("user1_type", sa.String(length=32), nullable=False, server_default="property_seeker"),
            sa.Column("user2_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("user2_type", sa.String(length=32), nullable=False, server_default="property_seeker"),
            sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id", ondelete="SET NULL"), nullable=True),
            sa.Column("development_id", sa.Integer(), nullable=True),
            sa.Column("conversation_type", sa.String(length=32), nullable=False, server_default="general_inquiry"),
            sa.Column("subject", sa.String(length=255), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
            sa.Column("last_message_at", sa.DateTime(), nullable=True),
            sa.Column("last_message_text", sa.Text(), nullable=True),
            sa.Column("last_message_sender_id", sa.Integer(), nullable=True),
            sa.Column("last_message_sender_type", sa.String(length=32), nullable=True),
            sa.Column("user1_unread_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("user2_unread_count", sa.Integer(), nullable=False, server_default="0"),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_conversations_user1_id", "conversations", ["user1_id"], unique=False)
        op.create_index("ix_conversations_user2_id", "conversations", ["user2_id"], unique=False)
        op.create_index("ix_conversations_listing_id", "conversations", ["listing_id"], unique=False)
        op.create_index("ix_conversations_development_id", "conversations", ["development_id"], unique=False)
        op.create_index("ix_conversations_status", "conversations", ["status"], unique=False)
        op.create_index("ix_conversations_last_message_at", "conversations", ["last_message_at"], unique=False)

    if not _table_exists(bind, "messages"):
        op.create_table(
            "messages",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("conversation_id", sa.Integer(), sa.ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False),
            sa.Column("sender_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("sender_type", sa.String(length=32), nullable=False),
            sa.Column("receiver_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("receiver_type", sa.String(length=32), nullable=False),
            sa.Column("message_text", sa.Text(), nullable=False),
            sa.Column("message_type", sa.String(length=16), nullable=False, server_default="text"),
            sa.Column("attachments", sa.JSON(), nullable=True),
            sa.Column("reply_to_message_id", sa.Integer(), sa.ForeignKey("messages.id", ondelete="SET NULL"), nullable=True),
            sa.Column("client_ref", sa.String(length=64), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("read_at", sa.DateTime(), nullable=True),
            sa.Column("is_edited", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("sender_id", "client_ref", name="uq_messages_sender_client_ref"),
        )
        op.create_index("ix_messages_conversation_id", "messages", ["conversation_id"], unique=False)
        op.create_index("ix_messages_sender_id", "messages", ["sender_id"], unique=False)
        op.create_index("ix_messages_receiver_id", "messages", ["receiver_id"], unique=False)
        op.create_index("ix_messages_is_deleted", "messages", ["is_deleted"], unique=False)
        op.create_index("ix_messages_created_at", "messages", ["created_at"], unique=False)
        op.create_index("ix_messages_updated_at", "messages", ["updated_at"], unique=False)

    if not _table_exists(bind, "leads"):
        op.create_table(
            "leads",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("seeker_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("lister_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("lister_type", sa.String(length=32), nullable=False),
            sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id", ondelete="SET NULL"), nullable=True),
            sa.Column("context_type", sa.String(length=16), nullable=False, server_default="listing"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="new"),
            sa.Column("message", sa.Text(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_leads_seeker_id", "leads", ["seeker_id"], unique=False)
        op.create_index("ix_leads_lister_id", "leads", ["lister_id"], unique=False)
        op.create_index("ix_leads_listing_id", "leads", ["listing_id"], unique=False)
        op.create_index("ix_leads_status", "leads", ["status"], unique=False)

    if not _table_exists(bind, "subscription_packages"):
        op.create_table(
            "subscription_packages",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("features", sa.JSON(), nullable=True),
            sa.Column("user_type", sa.String(length=32), nullable=True),
            sa.Column("local_currency_price", sa.Float(), nullable=False, server_default="0"),
            sa.Column("international_currency_price", sa.Float(), nullable=False, server_default="0"),
            sa.Column("duration", sa.Integer(), nullable=True),
            sa.Column("span", sa.String(length=16), nullable=True),
            sa.Column("ideal_duration", sa.Integer(), nullable=True),
            sa.Column("total_amount_ghs", sa.Float(), nullable=True),
            sa.Column("total_amount_usd", sa.Float(), nullable=True),
            sa.Column("display_text", sa.String(length=200), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_subscription_packages_user_type", "subscription_packages", ["user_type"], unique=False)
        op.create_index("ix_subscription_packages_is_active", "subscription_packages", ["is_active"], unique=False)

    if not _table_exists(bind, "subscriptions"):
        op.create_table(
            "subscriptions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("user_type", sa.String(length=32), nullable=False),
            sa.Column("package_id", sa.Integer(), sa.ForeignKey("subscription_packages.id"), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("paid_status", sa.String(length=16), nullable=False, server_default="unpaid"),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default="USD"),
            sa.Column("amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("duration_months", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("start_date", sa.DateTime(), nullable=True),
            sa.Column("end_date", sa.DateTime(), nullable=True),
            sa.Column("grace_period_end_date", sa.DateTime(), nullable=True),
            sa.Column("activated_at", sa.DateTime(), nullable=True),
            sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.false()),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"], unique=False)
        op.create_index("ix_subscriptions_package_id", "subscriptions", ["package_id"], unique=False)
        op.create_index("ix_subscriptions_status", "subscriptions", ["status"], unique=False)
        op.create_index("ix_subscriptions_end_date", "subscriptions", ["end_date"], unique=False)
        op.create_index("ix_subscriptions_grace_period_end_date", "subscriptions", ["grace_period_end_date"], unique=False)
        op.create_index("ix_subscriptions_created_at", "subscriptions", ["created_at"], unique=False)

    if not _table_exists(bind, "subscription_history"):
        op.create_table(
            "subscription_history",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("subscription_id", sa.Integer(), sa.ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("user_type", sa.String(length=32), nullable=True),
            sa.Column("event_type", sa.String(length=24), nullable=False),
            sa.Column("from_package_id", sa.Integer(), nullable=True),
            sa.Column("to_package_id", sa.Integer(), nullable=True),
            sa.Column("from_status", sa.String(length=16), nullable=True),
            sa.Column("to_status", sa.String(length=16), nullable=True),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("changed_by", sa.String(length=16), nullable=False, server_default="user"),
            sa.Column("changed_by_user_id", sa.Integer(), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("event_date", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_subscription_history_subscription_id", "subscription_history", ["subscription_id"], unique=False)
        op.create_index("ix_subscription_history_user_id", "subscription_history", ["user_id"], unique=False)
        op.create_index("ix_subscription_history_event_type", "subscription_history", ["event_type"], unique=False)
        op.create_index("ix_subscription_history_event_date", "subscription_history", ["event_date"], unique=False)

    if not _table_exists(bind, "invoices"):
        op.create_table(
            "invoices",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("invoice_number", sa.String(length=32), nullable=False),
            sa.Column("subscription_id", sa.Integer(), sa.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("user_type", sa.String(length=32), nullable=True),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default="USD"),
            sa.Column("amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("tax_amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("total_amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("payment_status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("billing_period_start", sa.DateTime(), nullable=True),
            sa.Column("billing_period_end", sa.DateTime(), nullable=True),
            sa.Column("invoice_date", sa.DateTime(), nullable=False),
            sa.Column("due_date", sa.DateTime(), nullable=True),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_invoices_invoice_number", "invoices", ["invoice_number"], unique=True)
        op.create_index("ix_invoices_subscription_id", "invoices", ["subscription_id"], unique=False)
        op.create_index("ix_invoices_user_id", "invoices", ["user_id"], unique=False)

    if not _table_exists(bind, "billing_information"):
        op.create_table(
            "billing_information",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("user_type", sa.String(length=32), nullable=True),
            sa.Column("billing_name", sa.String(length=160), nullable=False),
            sa.Column("billing_email", sa.String(length=255), nullable=True),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("address", sa.Text(), nullable=True),
            sa.Column("preferred_payment_method", sa.String(length=32), nullable=True),
            sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_billing_information_user_id", "billing_information", ["user_id"], unique=False)

    if not _table_exists(bind, "subscription_requests"):
        op.create_table(
            "subscription_requests",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("subscription_id", sa.Integer(), sa.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True),
            sa.Column("invoice_id", sa.Integer(), sa.ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True),
            sa.Column("previous_subscription_id", sa.Integer(), nullable=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("user_type", sa.String(length=32), nullable=True),
            sa.Column("package_id", sa.Integer(), sa.ForeignKey("subscription_packages.id"), nullable=False),
            sa.Column("billing_information_id", sa.Integer(), sa.ForeignKey("billing_information.id", ondelete="SET NULL"), nullable=True),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default="USD"),
            sa.Column("amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("payment_method", sa.String(length=32), nullable=True),
            sa.Column("request_type", sa.String(length=16), nullable=False, server_default="subscribe"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("requested_at", sa.DateTime(), nullable=False),
            sa.Column("approved_at", sa.DateTime(), nullable=True),
            sa.Column("approved_by", sa.Integer(), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("admin_notes", sa.Text(), nullable=True),
            sa.Column("cancellation_reason", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_subscription_requests_user_id", "subscription_requests", ["user_id"], unique=False)
        op.create_index("ix_subscription_requests_status", "subscription_requests", ["status"], unique=False)
        op.create_index("ix_subscription_requests_requested_at", "subscription_requests", ["requested_at"], unique=False)

    if not _table_exists(bind, "platform_events"):
        op.create_table(
            "platform_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("subject_type", sa.String(length=80), nullable=True),
            sa.Column("subject_id", sa.String(length=120), nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("idempotency_key", sa.String(length=180), nullable=True),
            sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_platform_events_created_at", "platform_events", ["created_at"], unique=False)
        op.create_index("ix_platform_events_event_type", "platform_events", ["event_type"], unique=False)
        op.create_index("ix_platform_events_actor_user_id", "platform_events", ["actor_user_id"], unique=False)
        op.create_index("ix_platform_events_subject_type", "platform_events", ["subject_type"], unique=False)
        op.create_index("ix_platform_events_subject_id", "platform_events", ["subject_id"], unique=False)
        op.create_index("ix_platform_events_idempotency_key", "platform_events", ["idempotency_key"], unique=True)

    if not _table_exists(bind, "job_runs"):
        op.create_table(
            "job_runs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=64), nullable=False),
            sa.Column("ran_at", sa.DateTime(), nullable=False),
            sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_job_runs_job_name", "job_runs", ["job_name"], unique=False)
        op.create_index("ix_job_runs_ran_at", "job_runs", ["ran_at"], unique=False)


def downgrade():
    bind = op.get_bind()
    for table in (
        "job_runs",
        "platform_events",
        "subscription_requests",
        "billing_information",
        "invoices",
        "subscription_history",
        "subscriptions",
        "subscription_packages",
        "leads",
        "messages",
        "conversations",
        "commission_rates",
        "listings",
        "property_types",
        "property_purposes",
        "users",
    ):
        if _table_exists(bind, table):
            op.drop_table(table)
