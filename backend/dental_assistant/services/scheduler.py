import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..models import CANCELLED, COMPLETED, SCHEDULED, Appointment, AppointmentType, Patient, Slot
from . import repository
from .errors import AppointmentNotFound, NoAvailableSlots, PatientNotFound, SlotUnavailable, ValidationError

logger = logging.getLogger(__name__)

CLOCK_TIME_PATTERN = re.compile(r"(\d{1,2})(?::(\d{2}))?\s*(am|pm)", re.IGNORECASE)


@dataclass
class ConsecutiveSlots:
    """First back-to-back window plus every slot that can start such a window."""

    slots: list[Slot]
    valid_start_slots: list[Slot]
    windows: list[list[Slot]] = field(default_factory=list)


@dataclass
class RescheduleOutcome:
    appointment: Appointment
    slot: Slot
    exact: bool


def _now(now: datetime | None) -> datetime:
    return now or datetime.now()


def format_slot_time(start_time: datetime) -> str:
    return start_time.strftime("%I:%M %p").lstrip("0")


def format_slot_date(start_time: datetime) -> str:
    return f"{start_time:%B} {start_time.day}, {start_time.year}"


def available_slots(db: Session, day: date, now: datetime | None = None) -> list[Slot]:
    """Free slots on ``day`` that start strictly after now, earliest first."""
    start_of_day = datetime.combine(day, time.min)
    end_of_day = start_of_day + timedelta(days=1)
    return repository.slots_between(db, start_of_day, end_of_day, after=_now(now))


def consecutive_windows(slots: Sequence[Slot], count: int) -> ConsecutiveSlots | None:
    if count < 1:
        raise ValidationError("At least one slot is required")
    if len(slots) < count:
        return None

    windows: list[list[Slot]] = []
    for start in range(len(slots) - count + 1):
        window = [slots[start]]
        for offset in range(1, count):
            previous, current = slots[start + offset - 1], slots[start + offset]
            if previous.end_time != current.start_time:
                break
            window.append(current)
        if len(window) == count:
            windows.append(window)

    if not windows:
        return None
    return ConsecutiveSlots(
        slots=windows[0],
        valid_start_slots=[window[0] for window in windows],
        windows=windows,
    )


def find_consecutive_slots(
    db: Session, day: date, count: int, now: datetime | None = None
) -> ConsecutiveSlots | None:
    return consecutive_windows(available_slots(db, day, now), count)


def parse_clock_time(text: str) -> time | None:
    """Read the first ``H[:MM] am|pm`` in ``text`` as a 24-hour time."""
    match = CLOCK_TIME_PATTERN.search(text)
    if not match:
        return None
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    meridiem = match.group(3).lower()
    if not 1 <= hour <= 12 or minute > 59:
        return None
    if meridiem == "pm" and hour < 12:
        hour += 12
    if meridiem == "am" and hour == 12:
        hour = 0
    return time(hour, minute)


def nearest_slot(slots: Sequence[Slot], target: datetime) -> Slot | None:
    """Slot starting at ``target``, else the one closest to it.

    ``min`` keeps the first of equally distant slots, so on a time-ordered
    sequence the earlier slot wins a tie.
    """
    if not slots:
        return None
    for slot in slots:
        if slot.start_time == target:
            return slot
    return min(slots, key=lambda slot: abs(slot.start_time - target))


def book_appointment(
    db: Session,
    patient_id: str,
    slot_id: str,
    appointment_type_id: str,
    emergency_description: str | None = None,
    family_group_id: str | None = None,
    now: datetime | None = None,
) -> Appointment:
    appointment_type = db.get(AppointmentType, appointment_type_id)
    if appointment_type is None:
        raise ValidationError("Please choose a valid appointment type")

    description = (emergency_description or "").strip() or None
    if appointment_type.is_emergency and not description:
        raise ValidationError("Please provide a description of your emergency")

    if db.get(Patient, patient_id) is None:
        raise PatientNotFound("Patient not found")

    slot = repository.reserve_slot(db, slot_id, _now(now))
    if slot is None:
        logger.info("booking_race_lost patient_id=%s slot_id=%s", patient_id, slot_id)
        raise SlotUnavailable()

    appointment = Appointment(
        patient_id=patient_id,
        appointment_type_id=appointment_type_id,
        start_time=slot.start_time,
        end_time=slot.end_time,
        emergency_description=description if appointment_type.is_emergency else None,
        family_group_id=family_group_id,
        status=SCHEDULED,
    )
    db.add(appointment)
    db.flush()
    db.refresh(appointment)
    logger.info(
        "appointment_booked appointment_id=%s patient_id=%s slot_id=%s group=%s",
        appointment.id,
        patient_id,
        slot_id,
        family_group_id,
    )
    return appointment


def cancel_appointment(db: Session, appointment_id: str) -> Appointment:
    """Cancel and free the slot; cancelling an already cancelled appointment is a no-op."""
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise AppointmentNotFound("Appointment not found")
    if appointment.status == CANCELLED:
        logger.info("appointment_cancel_noop appointment_id=%s", appointment_id)
        return appointment
    if appointment.status == COMPLETED:
        raise ValidationError("Completed appointments cannot be cancelled")

    # The slot to free is the one the row holds now, not the one read above.
    cancelled = db.execute(
        update(Appointment)
        .where(Appointment.id == appointment_id, Appointment.status == SCHEDULED)
        .values(status=CANCELLED)
        .returning(Appointment.start_time, Appointment.end_time)
        .execution_options(synchronize_session=False)
    ).one_or_none()
    if cancelled is not None:
        repository.release_slot(db, cancelled.start_time, cancelled.end_time)
        logger.info("appointment_cancelled appointment_id=%s", appointment_id)
    db.flush()
    db.refresh(appointment)
    return appointment


def reschedule_appointment(
    db: Session, appointment_id: str, new_slot_id: str, now: datetime | None = None
) -> Appointment:
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise AppointmentNotFound("Appointment not found")
    if appointment.status != SCHEDULED:
        raise ValidationError("Only scheduled appointments can be rescheduled")
    old_start, old_end = appointment.start_time, appointment.end_time

    new_slot = repository.reserve_slot(db, new_slot_id, _now(now))
    if new_slot is None:
        logger.info("reschedule_race_lost appointment_id=%s slot_id=%s", appointment_id, new_slot_id)
        raise SlotUnavailable()

    # Only move a row that is still scheduled in the slot we are about to free.
    moved = db.execute(
        update(Appointment)
        .where(
            Appointment.id == appointment_id,
            Appointment.status == SCHEDULED,
            Appointment.start_time == old_start,
        )
        .values(start_time=new_slot.start_time, end_time=new_slot.end_time)
        .returning(Appointment.id)
        .execution_options(synchronize_session=False)
    ).scalar_one_or_none()
    if moved is None:
        repository.release_slot(db, new_slot.start_time, new_slot.end_time)
        logger.info(
            "reschedule_conflict appointment_id=%s slot_id=%s", appointment_id, new_slot_id
        )
        db.flush()
        db.refresh(appointment)
        raise ValidationError("Only scheduled appointments can be rescheduled")

    repository.release_slot(db, old_start, old_end)
    db.flush()
    db.refresh(appointment)
    logger.info(
        "appointment_rescheduled appointment_id=%s slot_id=%s", appointment_id, new_slot_id
    )
    return appointment


def reschedule_to_clock_time(
    db: Session, appointment: Appointment, text: str, now: datetime | None = None
) -> RescheduleOutcome:
    """Move ``appointment`` to the requested clock time on the same day, or the nearest free slot."""
    requested = parse_clock_time(text)
    if requested is None:
        raise ValidationError("Please tell me a time such as 3pm or 10:30 am")

    target = datetime.combine(appointment.start_time.date(), requested)
    slots = available_slots(db, target.date(), now)
    slot = nearest_slot(slots, target)
    if slot is None:
        raise NoAvailableSlots("No available slots found for the requested date")

    updated = reschedule_appointment(db, appointment.id, slot.id, now=now)
    return RescheduleOutcome(appointment=updated, slot=slot, exact=slot.start_time == target)
