"""init routing engine

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _json() -> sa.types.TypeEngine:
  return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
  op.create_table(
    "notifications",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("organization_id", sa.String(64), nullable=True),
    sa.Column("recipient_id", sa.String(64), nullable=False),
    sa.Column("category", sa.String(), nullable=False),
    sa.Column("priority", sa.String(), nullable=False),
    sa.Column("routing_context", sa.String(), nullable=False),
    sa.Column("payload", _json(), nullable=False),
    sa.Column("idempotency_key", sa.String(), nullable=True),
    sa.Column("state", sa.String(), nullable=False, server_default="planned"),
    sa.Column("escalated_from_id", sa.String(36), sa.ForeignKey("notifications.id"), nullable=True),
    sa.Column("escalation_depth", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("escalation_pending", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("escalation_retry_count", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("escalation_retry_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("acknowledged_by", sa.String(64), nullable=True),
    sa.Column("action_taken", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint("idempotency_key", name="ux_notifications_idempotency_key"),
  )
  op.create_index("ix_notifications_organization_id", "notifications", ["organization_id"], unique=False)
  op.create_index("ix_notifications_escalated_from_id", "notifications", ["escalated_from_id"], unique=False)
  op.create_index("ix_notifications_recipient_created", "notifications", ["recipient_id", "created_at"], unique=False)

  op.create_table(
    "push_devices",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("user_id", sa.String(64), nullable=False),
    sa.Column("platform", sa.String(), nullable=False),
    sa.Column("device_token", sa.Text(), nullable=False),
    sa.Column("device_name", sa.String(), nullable=True),
    sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.Column("last_active", sa.DateTime(timezone=True), nullable=False),
    sa.Column("preferences", _json(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint("user_id", "device_token", "platform", name="ux_push_devices_user_token_platform"),
  )
  op.create_index("ix_push_devices_user_id", "push_devices", ["user_id"], unique=False)

  op.create_table(
    "notification_routing_rules",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("name", sa.String(255), nullable=False),
    sa.Column("description", sa.Text(), nullable=True),
    sa.Column("organization_id", sa.String(64), nullable=True),
    sa.Column("category", sa.String(), nullable=False),
    sa.Column("priority", sa.String(), nullable=False),
    sa.Column("priority_mode", sa.String(), nullable=False, server_default="exact"),
    sa.Column("routing_context", sa.String(), nullable=False),
    sa.Column("primary_channels", _json(), nullable=False),
    sa.Column("fallback_channels", _json(), nullable=False),
    sa.Column("immediate_delivery", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("respect_dnd", sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.Column("business_hours_only", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("dnd_override_channels", _json(), nullable=False),
    sa.Column("escalation_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("escalation_delay_minutes", sa.Integer(), nullable=False, server_default="15"),
    sa.Column("escalation_trigger", sa.String(), nullable=False, server_default="unread"),
    sa.Column("escalation_channels", _json(), nullable=False),
    sa.Column("escalation_recipients", _json(), nullable=False),
    sa.Column("conditions", _json(), nullable=False),
    sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.Column("rule_priority", sa.Integer(), nullable=False, server_default="100"),
    sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("last_used", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_notification_routing_rules_organization_id", "notification_routing_rules", ["organization_id"], unique=False)
  op.create_index("ix_routing_rules_category_priority", "notification_routing_rules", ["category", "priority", "is_active"], unique=False)

  op.create_table(
    "user_routing_profiles",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("user_id", sa.String(64), nullable=True),
    sa.Column("organization_id", sa.String(64), nullable=True),
    sa.Column("timezone", sa.String(), nullable=False, server_default="UTC"),
    sa.Column("business_hours_start", sa.String(5), nullable=False, server_default="09:00"),
    sa.Column("business_hours_end", sa.String(5), nullable=False, server_default="17:00"),
    sa.Column("business_days", _json(), nullable=False),
    sa.Column("dnd_windows", _json(), nullable=False),
    sa.Column("channel_preferences", _json(), nullable=False),
    sa.Column("category_routing", _json(), nullable=False),
    sa.Column("context_settings", _json(), nullable=False),
    sa.Column("email", sa.String(320), nullable=True),
    sa.Column("phone", sa.String(32), nullable=True),
    sa.Column("webhook_url", sa.Text(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint("user_id", "organization_id", name="ux_user_routing_profiles_user_org"),
  )
  op.create_index("ix_user_routing_profiles_user_id", "user_routing_profiles", ["user_id"], unique=False)

  op.create_table(
    "notification_deliveries",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("notification_id", sa.String(36), sa.ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False),
    sa.Column("user_id", sa.String(64), nullable=False),
    sa.Column("channel", sa.String(), nullable=False),
    sa.Column("target", sa.Text(), nullable=False),
    sa.Column("device_id", sa.String(36), nullable=True),
    sa.Column("sequence", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("fallback", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("status", sa.String(), nullable=False, server_default="pending"),
    sa.Column("deferred_reason", sa.String(), nullable=True),
    sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
    sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("latency_ms", sa.Integer(), nullable=True),
    sa.Column("error", sa.Text(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_notification_deliveries_notification_id", "notification_deliveries", ["notification_id"], unique=False)
  op.create_index("ix_notification_deliveries_due", "notification_deliveries", ["status", "scheduled_for"], unique=False)

  op.create_table(
    "notification_escalations",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("notification_id", sa.String(36), sa.ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False),
    sa.Column("user_id", sa.String(64), nullable=False),
    sa.Column("organization_id", sa.String(64), nullable=True),
    sa.Column("rule_id", sa.String(36), nullable=True),
    sa.Column("trigger", sa.String(), nullable=False),
    sa.Column("delay_minutes", sa.Integer(), nullable=False),
    sa.Column("channels", _json(), nullable=False),
    sa.Column("recipients", _json(), nullable=False),
    sa.Column("status", sa.String(), nullable=False, server_default="scheduled"),
    sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
    sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("results", _json(), nullable=False),
    sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("last_error", sa.Text(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint("notification_id", "trigger", name="ux_notification_escalations_notification_trigger"),
  )
  op.create_index("ix_notification_escalations_scheduled", "notification_escalations", ["status", "scheduled_for"], unique=False)

  op.create_table(
    "routing_decisions",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("notification_id", sa.String(36), sa.ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False, unique=True),
    sa.Column("user_id", sa.String(64), nullable=False),
    sa.Column("organization_id", sa.String(64), nullable=True),
    sa.Column("should_deliver", sa.Boolean(), nullable=False),
    sa.Column("reason", sa.String(), nullable=True),
    sa.Column("delivery_channels", _json(), nullable=False),
    sa.Column("delivery_time", sa.DateTime(timezone=True), nullable=False),
    sa.Column("escalation_scheduled", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("matched_rules", _json(), nullable=False),
    sa.Column("applied_rules", _json(), nullable=False),
    sa.Column("routing_context", sa.String(), nullable=True),
    sa.Column("plan", _json(), nullable=False),
    sa.Column("decision_factors", _json(), nullable=False),
    sa.Column("decision_time_ms", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_routing_decisions_user_id", "routing_decisions", ["user_id"], unique=False)

  op.create_table(
    "organization_members",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("organization_id", sa.String(64), nullable=False),
    sa.Column("user_id", sa.String(64), nullable=False),
    sa.Column("role", sa.String(), nullable=False, server_default="member"),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint("organization_id", "user_id", name="ux_organization_members_org_user"),
  )
  op.create_index("ix_organization_members_organization_id", "organization_members", ["organization_id"], unique=False)


def downgrade() -> None:
  op.drop_table("organization_members")
  op.drop_table("routing_decisions")
  op.drop_table("notification_escalations")
  op.drop_table("notification_deliveries")
  op.drop_table("user_routing_profiles")
  op.drop_table("notification_routing_rules")
  op.drop_table("push_devices")
  op.drop_table("notifications")
