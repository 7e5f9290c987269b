"""Ownership checks shared by the booking and patient routes.

The logged-in account acts through its primary patient, who may act for
themselves and for the family members linked to them.
"""

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ..models import Appointment, Patient
from ..services import repository
from ..services.verification import can_manage, can_manage_patient

FORBIDDEN = "You can only manage your own or your family's appointments"


def _account_patient(db: Session, claims: dict) -> Patient:
    patient = repository.primary_patient_for_user(db, claims.get("sub", ""))
    if patient is None:
        raise HTTPException(status_code=403, detail=FORBIDDEN)
    return patient


def require_patient_access(db: Session, claims: dict, patient_id: str) -> None:
    if not can_manage_patient(db, _account_patient(db, claims), patient_id):
        raise HTTPException(status_code=403, detail=FORBIDDEN)


def require_appointment_access(db: Session, claims: dict, appointment_id: str) -> Appointment:
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise HTTPException(status_code=404, detail="Appointment not found")
    if not can_manage(db, _account_patient(db, claims), appointment):
        raise HTTPException(status_code=403, detail=FORBIDDEN)
    return appointment
