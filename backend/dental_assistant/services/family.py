import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy.orm import Session

from ..models import Appointment, Slot
from . import repository
from .errors import AppointmentNotFound, SchedulingError, SlotUnavailable, ValidationError
from .scheduler import book_appointment, find_consecutive_slots

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FamilyBookingEntry:
    patient_id: str
    slot_id: str
    appointment_type_id: str
    emergency_description: str | None = None


def plan_family_slots(
    db: Session, day: date, start_slot_id: str, count: int, now: datetime | None = None
) -> list[Slot]:
    """The back-to-back window of ``count`` slots that begins at ``start_slot_id``."""
    result = find_consecutive_slots(db, day, count, now)
    if result is not None:
        for window in result.windows:
            if window[0].id == start_slot_id:
                return window
    raise SlotUnavailable(
        "Not enough consecutive slots available for all selected family members"
    )


def book_family(
    db: Session, entries: Sequence[FamilyBookingEntry], now: datetime | None = None
) -> list[Appointment]:
    """Book every entry under one family group id, all or nothing.

    All reservations share the session's transaction. On any failure the
    transaction is rolled back, releasing every slot reserved so far; the
    caller commits on success.
    """
    if not entries:
        raise ValidationError("Please select at least one family member")
    slot_ids = [entry.slot_id for entry in entries]
    if len(set(slot_ids)) != len(slot_ids):
        raise ValidationError("Each family member needs a different time slot")

    family_group_id = str(uuid.uuid4())
    booked: list[Appointment] = []
    try:
        for entry in entries:
            booked.append(
                book_appointment(
                    db,
                    patient_id=entry.patient_id,
                    slot_id=entry.slot_id,
                    appointment_type_id=entry.appointment_type_id,
                    emergency_description=entry.emergency_description,
                    family_group_id=family_group_id,
                    now=now,
                )
            )
    except SchedulingError as exc:
        db.rollback()
        logger.warning(
            "family_booking_rolled_back group=%s booked=%s total=%s error=%s",
            family_group_id,
            len(booked),
            len(entries),
            exc,
        )
        raise

    logger.info("family_booked group=%s size=%s", family_group_id, len(booked))
    return booked


def family_group_appointments(db: Session, appointment_id: str) -> list[Appointment]:
    """The other scheduled appointments booked together with ``appointment_id``."""
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise AppointmentNotFound("Appointment not found")
    if not appointment.family_group_id:
        return []
    return [
        other
        for other in repository.group_appointments(db, appointment.family_group_id)
        if other.id != appointment.id
    ]
