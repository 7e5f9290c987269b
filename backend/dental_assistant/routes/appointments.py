from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import require_auth
from ..db import get_session
from ..models import Slot
from ..schemas import (
    AppointmentCreate,
    AppointmentOut,
    AppointmentReschedule,
    FamilyBookingCreate,
    SlotOut,
)
from ..services.errors import SchedulingError, SlotUnavailable
from ..services.family import FamilyBookingEntry, book_family, family_group_appointments
from ..services.scheduler import (
    available_slots,
    book_appointment,
    cancel_appointment,
    reschedule_appointment,
)
from .access import require_appointment_access, require_patient_access

router = APIRouter()


def _slot_conflict(db: Session, exc: SlotUnavailable, slot_id: str) -> HTTPException:
    """409 carrying a fresh slot list for the day the caller was looking at."""
    slot = db.get(Slot, slot_id)
    refreshed = available_slots(db, slot.start_time.date()) if slot else []
    return HTTPException(
        status_code=exc.status_code,
        detail={
            "message": str(exc),
            "available_slots": [
                SlotOut.model_validate(item).model_dump(mode="json") for item in refreshed
            ],
        },
    )


@router.post("/appointments/book", response_model=AppointmentOut)
def book(
    payload: AppointmentCreate,
    db: Session = Depends(get_session),
    claims: dict = Depends(require_auth),
) -> AppointmentOut:
    require_patient_access(db, claims, payload.patient_id)
    try:
        appointment = book_appointment(
            db,
            patient_id=payload.patient_id,
            slot_id=payload.slot_id,
            appointment_type_id=payload.appointment_type_id,
            emergency_description=payload.emergency_description,
        )
        db.commit()
    except SlotUnavailable as exc:
        db.rollback()
        raise _slot_conflict(db, exc, payload.slot_id) from exc
    except SchedulingError as exc:
        db.rollback()
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return appointment


@router.post("/appointments/family", response_model=list[AppointmentOut])
def book_family_appointments(
    payload: FamilyBookingCreate,
    db: Session = Depends(get_session),
    claims: dict = Depends(require_auth),
) -> list[AppointmentOut]:
    for item in payload.appointments:
        require_patient_access(db, claims, item.patient_id)
    entries = [
        FamilyBookingEntry(
            patient_id=item.patient_id,
            slot_id=item.slot_id,
            appointment_type_id=item.appointment_type_id,
            emergency_description=item.emergency_description,
        )
        for item in payload.appointments
    ]
    try:
        appointments = book_family(db, entries)
        db.commit()
    except SlotUnavailable as exc:
        db.rollback()
        raise _slot_conflict(db, exc, entries[0].slot_id) from exc
    except SchedulingError as exc:
        db.rollback()
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return appointments


@router.post("/appointments/{appointment_id}/cancel", response_model=AppointmentOut)
def cancel(
    appointment_id: str,
    db: Session = Depends(get_session),
    claims: dict = Depends(require_auth),
) -> AppointmentOut:
    require_appointment_access(db, claims, appointment_id)
    try:
        appointment = cancel_appointment(db, appointment_id)
        db.commit()
    except SchedulingError as exc:
        db.rollback()
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return appointment


@router.post("/appointments/{appointment_id}/reschedule", response_model=AppointmentOut)
def reschedule(
    appointment_id: str,
    payload: AppointmentReschedule,
    db: Session = Depends(get_session),
    claims: dict = Depends(require_auth),
) -> AppointmentOut:
    require_appointment_access(db, claims, appointment_id)
    try:
        appointment = reschedule_appointment(db, appointment_id, payload.slot_id)
        db.commit()
    except SlotUnavailable as exc:
        db.rollback()
        raise _slot_conflict(db, exc, payload.slot_id) from exc
    except SchedulingError as exc:
        db.rollback()
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return appointment


@router.get("/appointments/{appointment_id}/family", response_model=list[AppointmentOut])
def family_appointments(
    appointment_id: str,
    db: Session = Depends(get_session),
    claims: dict = Depends(require_auth),
) -> list[AppointmentOut]:
    require_appointment_access(db, claims, appointment_id)
    try:
        return family_group_appointments(db, appointment_id)
    except SchedulingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
