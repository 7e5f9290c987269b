from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import get_session
from ..schemas import AppointmentTypeOut, ConsecutiveSlotsOut, SlotOut
from ..services import repository
from ..services.errors import SchedulingError
from ..services.family import plan_family_slots
from ..services.scheduler import available_slots, find_consecutive_slots

router = APIRouter()


@router.get("/slots", response_model=list[SlotOut])
def list_slots(day: date = Query(alias="date"), db: Session = Depends(get_session)) -> list[SlotOut]:
    return available_slots(db, day)


@router.get("/slots/consecutive", response_model=ConsecutiveSlotsOut)
def consecutive_slots(
    day: date = Query(alias="date"),
    count: int = Query(ge=1),
    db: Session = Depends(get_session),
) -> ConsecutiveSlotsOut:
    result = find_consecutive_slots(db, day, count)
    if result is None:
        return ConsecutiveSlotsOut()
    return ConsecutiveSlotsOut(
        slots=[SlotOut.model_validate(slot) for slot in result.slots],
        valid_start_slots=[SlotOut.model_validate(slot) for slot in result.valid_start_slots],
    )


@router.get("/slots/family-window", response_model=list[SlotOut])
def family_window(
    start_slot_id: str,
    day: date = Query(alias="date"),
    count: int = Query(ge=1),
    db: Session = Depends(get_session),
) -> list[SlotOut]:
    try:
        return plan_family_slots(db, day, start_slot_id, count)
    except SchedulingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.get("/appointment-types", response_model=list[AppointmentTypeOut])
def list_appointment_types(db: Session = Depends(get_session)) -> list[AppointmentTypeOut]:
    return repository.appointment_types(db)
