"""Appointments table model using SQLAlchemy Core."""

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Table,
    Text,
    Uuid,
    func,
    text,
)

from clinicflow.models.base import metadata

# Slot-holding statuses, kept in sync with ACTIVE_STATUSES in the schemas
ACTIVE_SLOT_CONDITION = text("status IN ('PENDING', 'APPROVED')")

appointments = Table(
    "appointments",
    metadata,
    Column("id", Uuid, primary_key=True),
    # Ownership / references
    Column("patient_id", Uuid, nullable=False),
    Column("doctor_id", Uuid, nullable=False),
    # Slot
    Column("date", Date, nullable=False),
    Column("time", String(5), nullable=False),
    # Appointment details
    Column("reason", Text, nullable=False),
    # Status management
    Column("status", String(20), nullable=False, server_default="PENDING"),
    Column("notes", Text, nullable=True),
    Column("cancelled_by_role", String(20), nullable=True),
    Column("cancelled_by_user_id", Uuid, nullable=True),
    # Incremented by every transition, carried on emitted events
    Column("version", Integer, nullable=False, server_default="1"),
    # Audit fields
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    # Constraints
    CheckConstraint(
        "status IN ('PENDING', 'APPROVED', 'COMPLETED', 'CANCELLED', 'REJECTED')",
        name="appointments_status_check",
    ),
    CheckConstraint(
        "cancelled_by_role IS NULL OR cancelled_by_role IN ('PATIENT', 'DOCTOR', 'ADMIN')",
        name="appointments_cancelled_by_role_check",
    ),
    Index("idx_appointments_patient_id", "patient_id"),
    Index("idx_appointments_doctor_id", "doctor_id"),
    Index("idx_appointments_date", "date"),
    Index("idx_appointments_status", "status"),
    Index("idx_appointments_doctor_date", "doctor_id", "date"),
    # At most one active booking per doctor slot
    Index(
        "uq_appointments_active_slot",
        "doctor_id",
        "date",
        "time",
        unique=True,
        postgresql_where=ACTIVE_SLOT_CONDITION,
        sqlite_where=ACTIVE_SLOT_CONDITION,
    ),
)
