"""Notifications table, written by the fanout service."""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    String,
    Table,
    Text,
    Uuid,
    func,
    text,
)

from clinicflow.models.base import JSONType, metadata

notifications = Table(
    "notifications",
    metadata,
    # Deterministic per (appointment, event type, recipient, version)
    Column("id", Uuid, primary_key=True),
    Column("user_id", Uuid, nullable=False),
    Column("type", String(20), nullable=False, server_default="IN_APP"),
    Column("title", String(255), nullable=False),
    Column("message", Text, nullable=False),
    Column("status", String(20), nullable=False, server_default="PENDING"),
    Column("read", Boolean, nullable=False, server_default=text("false")),
    Column("metadata", JSONType, nullable=True),
    Column("sent_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint("type IN ('IN_APP', 'EMAIL', 'SMS')", name="notifications_type_check"),
    CheckConstraint(
        "status IN ('PENDING', 'SENT', 'FAILED')",
        name="notifications_status_check",
    ),
    Index("idx_notifications_user_id", "user_id"),
    Index("idx_notifications_status", "status"),
    Index("idx_notifications_read", "read"),
    Index("idx_notifications_created_at", "created_at"),
    Index(
        "idx_notifications_user_unread",
        "user_id",
        "read",
        postgresql_where=text("read = false"),
    ),
)
