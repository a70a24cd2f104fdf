"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
  op.create_table(
    "users",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("email", sa.String(), nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("password_hash", sa.String(), nullable=False),
    sa.Column("role", sa.String(), nullable=False, server_default="team_member"),
    sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    sa.Column("notification_prefs", JSON, nullable=False, server_default=sa.text("'{}'")),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_users_email", "users", ["email"], unique=True)

  op.create_table(
    "sessions",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
    sa.Column("created_ip", sa.String(), nullable=True),
    sa.Column("user_agent", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_sessions_user_id", "sessions", ["user_id"], unique=False)

  op.create_table(
    "tasks",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("description", sa.Text(), nullable=False, server_default=""),
    sa.Column("status", sa.String(), nullable=False, server_default="pending"),
    sa.Column("priority", sa.String(), nullable=False, server_default="medium"),
    sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_by", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
    sa.Column("assigned_to", sa.String(36), sa.ForeignKey("users.id"), nullable=True),
    sa.Column("tags", JSON, nullable=False, server_default=sa.text("'[]'")),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("due_soon_notified_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("overdue_notified_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_tasks_due_date", "tasks", ["due_date"], unique=False)
  op.create_index("ix_tasks_assigned_to", "tasks", ["assigned_to"], unique=False)

  op.create_table(
    "notifications",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
    sa.Column("type", sa.String(), nullable=False),
    sa.Column("priority", sa.String(), nullable=False, server_default="normal"),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("message", sa.Text(), nullable=False),
    sa.Column("reference_type", sa.String(), nullable=True),
    sa.Column("reference_id", sa.String(), nullable=True),
    sa.Column("related_refs", JSON, nullable=False, server_default=sa.text("'[]'")),
    sa.Column("data", JSON, nullable=False, server_default=sa.text("'{}'")),
    sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("email_sent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    sa.Column("email_sent_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_notifications_user_id", "notifications", ["user_id"], unique=False)
  op.create_index("ix_notifications_user_read", "notifications", ["user_id", "read"], unique=False)

  op.create_table(
    "chat_history",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
    sa.Column("title", sa.String(), nullable=False, server_default="New Chat"),
    sa.Column("messages", JSON, nullable=False, server_default=sa.text("'[]'")),
    sa.Column("last_active", sa.DateTime(timezone=True), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_chat_history_user_id", "chat_history", ["user_id"], unique=False)

  op.create_table(
    "audit_events",
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("actor_id", sa.String(36), sa.ForeignKey("users.id"), nullable=True),
    sa.Column("event_type", sa.String(), nullable=False),
    sa.Column("entity_type", sa.String(), nullable=False),
    sa.Column("entity_id", sa.String(), nullable=True),
    sa.Column("payload", JSON, nullable=False, server_default=sa.text("'{}'")),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
  )
  op.create_index("ix_audit_events_entity", "audit_events", ["entity_type", "entity_id"], unique=False)


def downgrade() -> None:
  op.drop_index("ix_audit_events_entity", table_name="audit_events")
  op.drop_table("audit_events")
  op.drop_index("ix_chat_history_user_id", table_name="chat_history")
  op.drop_table("chat_history")
  op.drop_index("ix_notifications_user_read", table_name="notifications")
  op.drop_index("ix_notifications_user_id", table_name="notifications")
  op.drop_table("notifications")
  op.drop_index("ix_tasks_assigned_to", table_name="tasks")
  op.drop_index("ix_tasks_due_date", table_name="tasks")
  op.drop_table("tasks")
  op.drop_index("ix_sessions_user_id", table_name="sessions")
  op.drop_table("sessions")
  op.drop_index("ix_users_email", table_name="users")
  op.drop_table("users")
