"""User directory table (owned by the auth service, read here for display data)."""

from sqlalchemy import CheckConstraint, Column, DateTime, String, Table, Text, Uuid, func

from clinicflow.models.base import metadata

users = Table(
    "users",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("email", Text, nullable=False, unique=True, index=True),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("role", String(20), nullable=False, server_default="PATIENT"),
    Column("specialization", String(255), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint("role IN ('PATIENT', 'DOCTOR', 'ADMIN')", name="users_role_check"),
)
