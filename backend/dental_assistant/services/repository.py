import logging
from collections.abc import Sequence
from datetime import date, datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..models import SCHEDULED, Appointment, AppointmentType, FamilyRelationship, Patient, Slot

logger = logging.getLogger(__name__)


def slots_between(db: Session, start: datetime, end: datetime, after: datetime) -> list[Slot]:
    stmt = (
        select(Slot)
        .where(
            Slot.is_available.is_(True),
            Slot.start_time >= start,
            Slot.start_time < end,
            Slot.start_time > after,
        )
        .order_by(Slot.start_time)
    )
    return list(db.scalars(stmt).all())


def reserve_slot(db: Session, slot_id: str, now: datetime) -> Slot | None:
    """Flip a slot to unavailable if, and only if, it is still free.

    The check and the flip are one conditional UPDATE, so of two sessions racing
    for the same slot exactly one gets a row back.
    """
    result = db.execute(
        update(Slot)
        .where(Slot.id == slot_id, Slot.is_available.is_(True), Slot.start_time > now)
        .values(is_available=False)
        .returning(Slot)
    )
    slot = result.scalar_one_or_none()
    if slot is None:
        logger.info("slot_reserve_failed slot_id=%s", slot_id)
    else:
        logger.info("slot_reserved slot_id=%s start=%s", slot_id, slot.start_time.isoformat())
    return slot


def release_slot(db: Session, start_time: datetime, end_time: datetime) -> int:
    result = db.execute(
        update(Slot)
        .where(Slot.start_time == start_time, Slot.end_time == end_time)
        .values(is_available=True)
    )
    logger.info(
        "slot_released start=%s end=%s rows=%s",
        start_time.isoformat(),
        end_time.isoformat(),
        result.rowcount,
    )
    return result.rowcount


def find_primary_patient(db: Session, phone_number: str, date_of_birth: date) -> Patient | None:
    stmt = select(Patient).where(
        Patient.phone_number == phone_number,
        Patient.date_of_birth == date_of_birth,
        Patient.is_primary.is_(True),
    )
    return db.scalars(stmt).first()


def find_patient_by_identity(db: Session, phone_number: str, date_of_birth: date) -> Patient | None:
    stmt = select(Patient).where(
        Patient.phone_number == phone_number,
        Patient.date_of_birth == date_of_birth,
    )
    return db.scalars(stmt).first()


def primary_patient_for_user(db: Session, user_id: str) -> Patient | None:
    stmt = select(Patient).where(Patient.user_id == user_id, Patient.is_primary.is_(True))
    return db.scalars(stmt.order_by(Patient.created_at)).first()


def family_relationships(db: Session, primary_patient_id: str) -> list[FamilyRelationship]:
    stmt = select(FamilyRelationship).where(
        FamilyRelationship.primary_patient_id == primary_patient_id
    )
    return list(db.scalars(stmt).all())


def family_member_ids(db: Session, primary_patient_id: str) -> list[str]:
    stmt = select(FamilyRelationship.family_member_id).where(
        FamilyRelationship.primary_patient_id == primary_patient_id
    )
    return list(db.scalars(stmt).all())


def scheduled_appointments(
    db: Session,
    patient_ids: Sequence[str],
    after: datetime | None = None,
    limit: int | None = None,
) -> list[Appointment]:
    if not patient_ids:
        return []
    stmt = select(Appointment).where(
        Appointment.patient_id.in_(patient_ids),
        Appointment.status == SCHEDULED,
    )
    if after is not None:
        stmt = stmt.where(Appointment.start_time >= after)
    stmt = stmt.order_by(Appointment.start_time)
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.scalars(stmt).all())


def group_appointments(db: Session, family_group_id: str) -> list[Appointment]:
    stmt = (
        select(Appointment)
        .where(
            Appointment.family_group_id == family_group_id,
            Appointment.status == SCHEDULED,
        )
        .order_by(Appointment.start_time)
    )
    return list(db.scalars(stmt).all())


def appointment_types(db: Session) -> list[AppointmentType]:
    return list(db.scalars(select(AppointmentType).order_by(AppointmentType.name)).all())
