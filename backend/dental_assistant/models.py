import uuid
from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from .db import Base

SCHEDULED = "scheduled"
CANCELLED = "cancelled"
COMPLETED = "completed"

EMERGENCY_TYPE_NAME = "emergency"


def _uuid() -> str:
    return str(uuid.uuid4())


class Patient(Base):
    __tablename__ = "patients"
    __table_args__ = (
        UniqueConstraint("phone_number", "date_of_birth", name="uq_patients_phone_dob"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str | None] = mapped_column(String(200), nullable=True, index=True)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    insurance_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    appointments = relationship("Appointment", back_populates="patient")


class FamilyRelationship(Base):
    __tablename__ = "family_relationships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    primary_patient_id: Mapped[str] = mapped_column(
        ForeignKey("patients.id"), nullable=False, index=True
    )
    # A member belongs to exactly one primary patient group.
    family_member_id: Mapped[str] = mapped_column(
        ForeignKey("patients.id"), nullable=False, unique=True
    )
    relationship_type: Mapped[str] = mapped_column("relationship", String(50), nullable=False)

    primary_patient = relationship("Patient", foreign_keys=[primary_patient_id])
    family_member = relationship("Patient", foreign_keys=[family_member_id])


class AppointmentType(Base):
    __tablename__ = "appointment_types"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30)

    @property
    def is_emergency(self) -> bool:
        return self.name.strip().lower() == EMERGENCY_TYPE_NAME


class Slot(Base):
    __tablename__ = "available_slots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    patient_id: Mapped[str] = mapped_column(ForeignKey("patients.id"), nullable=False, index=True)
    appointment_type_id: Mapped[str] = mapped_column(
        ForeignKey("appointment_types.id"), nullable=False
    )
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    emergency_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    family_group_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=SCHEDULED)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    patient = relationship("Patient", back_populates="appointments")
    appointment_type = relationship("AppointmentType")
