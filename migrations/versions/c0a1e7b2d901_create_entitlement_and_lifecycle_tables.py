"""Create users, clubs, entitlement, billing audit, email and sequence tables"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "c0a1e7b2d901"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    ]


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("display_name", sa.String(length=120), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("email_notifications_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("email_unsubscribed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_active_at", sa.DateTime(), nullable=True),
        sa.Column("current_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_activity_date", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"])
    op.create_index("ix_users_last_active_at", "users", ["last_active_at"])

    op.create_table(
        "clubs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("subscription_status", sa.String(length=32), nullable=False, server_default=sa.text("'inactive'")),
        sa.Column("current_period_end", sa.DateTime(), nullable=True),
        sa.Column("stripe_customer_id", sa.String(length=64), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=64), nullable=True, unique=True),
        sa.Column("seat_limit", sa.Integer(), nullable=False, server_default=sa.text("5")),
        *_timestamps(),
    )
    op.create_index("ix_clubs_stripe_customer_id", "clubs", ["stripe_customer_id"])

    op.create_table(
        "club_memberships",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("club_id", sa.Integer(), sa.ForeignKey("clubs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="member"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        *_timestamps(),
        sa.UniqueConstraint("club_id", "user_id", name="uq_club_memberships_club_user"),
        sa.CheckConstraint("role IN ('owner','admin','member')", name="ck_club_memberships_role_valid"),
        sa.CheckConstraint("status IN ('active','removed')", name="ck_club_memberships_status_valid"),
    )
    op.create_index("ix_club_memberships_club_id", "club_memberships", ["club_id"])
    op.create_index("ix_club_memberships_user_id", "club_memberships", ["user_id"])

    op.create_table(
        "entitlement_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("source", sa.String(length=16), nullable=False, server_default=sa.text("'individual'")),
        sa.Column("tier", sa.String(length=16), nullable=False, server_default=sa.text("'free'")),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'inactive'")),
        sa.Column("period_end", sa.DateTime(), nullable=True),
        sa.Column("billing_store", sa.String(length=16), nullable=True),
        sa.Column("product_id", sa.String(length=128), nullable=True),
        sa.Column("provider_customer_id", sa.String(length=128), nullable=True),
        sa.Column("welcome_sent_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "source", name="uq_entitlement_records_user_source"),
        sa.CheckConstraint("tier IN ('free','pro','pro_plus')", name="ck_entitlement_records_tier_valid"),
        sa.CheckConstraint(
            "status IN ('active','trialing','canceled','past_due','inactive')",
            name="ck_entitlement_records_status_valid",
        ),
    )
    op.create_index("ix_entitlement_records_user_id", "entitlement_records", ["user_id"])
    op.create_index("ix_entitlement_records_status", "entitlement_records", ["status"])
    op.create_index("ix_entitlement_records_period_end", "entitlement_records", ["period_end"])
    op.create_index("ix_entitlement_records_provider_customer_id", "entitlement_records", ["provider_customer_id"])

    op.create_table(
        "billing_event_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("type", sa.String(length=80), nullable=False),
        sa.Column("subject", sa.String(length=128), nullable=True),
        sa.Column("signature_valid", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("outcome", sa.String(length=32), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("notes", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    for col in ("event_id", "provider", "type", "subject", "outcome"):
        op.create_index(f"ix_billing_event_logs_{col}", "billing_event_logs", [col])

    op.create_table(
        "email_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("to_email", sa.String(length=320), nullable=False),
        sa.Column("template", sa.String(length=64), nullable=False),
        sa.Column("subject", sa.String(length=200), nullable=False),
        sa.Column("sequence_name", sa.String(length=32), nullable=True),
        sa.Column("step", sa.Integer(), nullable=True),
        sa.Column("provider_msg_id", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("error", sa.String(length=500), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    for col in ("user_id", "to_email", "sequence_name", "provider_msg_id", "status"):
        op.create_index(f"ix_email_logs_{col}", "email_logs", [col])

    op.create_table(
        "email_sequences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sequence_name", sa.String(length=32), nullable=False),
        sa.Column("current_step", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("next_send_at", sa.DateTime(), nullable=True),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("paused", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("claimed_until", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_email_sequences_user_id", "email_sequences", ["user_id"])
    op.create_index("ix_email_sequences_due", "email_sequences", ["completed", "paused", "next_send_at"])
    op.create_index(
        "ix_email_sequences_user_name_started", "email_sequences", ["user_id", "sequence_name", "started_at"],
    )

    op.create_table(
        "usage_counters",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", sa.String(length=20), nullable=False),
        sa.Column("daily_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_count_date", sa.String(length=10), nullable=True),
        sa.Column("monthly_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_count_month", sa.String(length=7), nullable=True),
        sa.Column("lifetime_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "kind", name="uq_usage_counters_user_kind"),
    )
    op.create_index("ix_usage_counters_user_id", "usage_counters", ["user_id"])


def downgrade():
    op.drop_table("usage_counters")
    op.drop_table("email_sequences")
    op.drop_table("email_logs")
    op.drop_table("billing_event_logs")
    op.drop_table("entitlement_records")
    op.drop_table("club_memberships")
    op.drop_table("clubs")
    op.drop_table("users")
