from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ..auth import require_auth
from ..db import get_session
from ..models import Patient
from ..schemas import (
    AppointmentOut,
    FamilyMemberCreate,
    FamilyMemberOut,
    PatientCreate,
    PatientOut,
    PatientVerifyRequest,
)
from ..services import repository
from ..services.errors import SchedulingError, VerificationFailed
from ..services.patients import add_family_member, list_family_members, register_patient
from ..services.verification import verify_patient
from .access import require_patient_access

router = APIRouter()


def _family_member_out(member: Patient, relationship: str) -> FamilyMemberOut:
    return FamilyMemberOut(**PatientOut.model_validate(member).model_dump(), relationship=relationship)


@router.post("/patients", response_model=PatientOut, status_code=status.HTTP_201_CREATED)
def register(
    payload: PatientCreate,
    db: Session = Depends(get_session),
    claims: dict = Depends(require_auth),
) -> PatientOut:
    try:
        patient = register_patient(
            db,
            user_id=claims.get("sub"),
            full_name=payload.full_name,
            phone_number=payload.phone_number,
            date_of_birth=payload.date_of_birth,
            insurance_name=payload.insurance_name,
        )
        db.commit()
    except SchedulingError as exc:
        db.rollback()
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return patient


@router.post("/patients/verify", response_model=PatientOut)
def verify(
    payload: PatientVerifyRequest,
    db: Session = Depends(get_session),
    _auth: dict = Depends(require_auth),
) -> PatientOut:
    try:
        result = verify_patient(db, payload.full_name, payload.phone_number, payload.date_of_birth)
        if not result.verified:
            raise VerificationFailed(result.reason)
    except SchedulingError as exc:
        # Not found and name mismatch read the same to the caller.
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return result.patient


@router.get("/patients/{patient_id}/family", response_model=list[FamilyMemberOut])
def family_members(
    patient_id: str,
    db: Session = Depends(get_session),
    claims: dict = Depends(require_auth),
) -> list[FamilyMemberOut]:
    if db.get(Patient, patient_id) is None:
        raise HTTPException(status_code=404, detail="Patient not found")
    require_patient_access(db, claims, patient_id)
    return [
        _family_member_out(member, relationship)
        for member, relationship in list_family_members(db, patient_id)
    ]


@router.post(
    "/patients/{patient_id}/family",
    response_model=FamilyMemberOut,
    status_code=status.HTTP_201_CREATED,
)
def add_family(
    patient_id: str,
    payload: FamilyMemberCreate,
    db: Session = Depends(get_session),
    claims: dict = Depends(require_auth),
) -> FamilyMemberOut:
    if db.get(Patient, patient_id) is None:
        raise HTTPException(status_code=404, detail="Patient not found")
    require_patient_access(db, claims, patient_id)
    try:
        member, link = add_family_member(
            db,
            primary_patient_id=patient_id,
            full_name=payload.full_name,
            relationship=payload.relationship,
            date_of_birth=payload.date_of_birth,
        )
        db.commit()
    except SchedulingError as exc:
        db.rollback()
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return _family_member_out(member, link.relationship_type)


@router.get("/patients/{patient_id}/appointments", response_model=list[AppointmentOut])
def patient_appointments(
    patient_id: str,
    db: Session = Depends(get_session),
    claims: dict = Depends(require_auth),
) -> list[AppointmentOut]:
    if db.get(Patient, patient_id) is None:
        raise HTTPException(status_code=404, detail="Patient not found")
    require_patient_access(db, claims, patient_id)
    return repository.scheduled_appointments(db, [patient_id])
