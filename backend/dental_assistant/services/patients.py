import logging
from datetime import date

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import FamilyRelationship, Patient
from . import repository
from .errors import DuplicatePatient, PatientNotFound, ValidationError
from .verification import format_phone

logger = logging.getLogger(__name__)

RELATIONSHIPS = {"spouse", "child", "parent", "sibling", "other"}
MAX_AGE_YEARS = 120


def _check_date_of_birth(date_of_birth: date, today: date) -> None:
    try:
        oldest = today.replace(year=today.year - MAX_AGE_YEARS)
    except ValueError:
        # Feb 29
        oldest = today.replace(year=today.year - MAX_AGE_YEARS, day=28)
    if date_of_birth > today or date_of_birth < oldest:
        raise ValidationError("Please enter a valid date of birth")


def register_patient(
    db: Session,
    user_id: str | None,
    full_name: str,
    phone_number: str,
    date_of_birth: date,
    insurance_name: str | None = None,
    today: date | None = None,
) -> Patient:
    full_name = full_name.strip()
    if not full_name:
        raise ValidationError("Please enter your full name")
    phone = format_phone(phone_number)
    _check_date_of_birth(date_of_birth, today or date.today())

    if repository.find_patient_by_identity(db, phone, date_of_birth) is not None:
        logger.info("registration_duplicate phone=%s", phone)
        raise DuplicatePatient()

    patient = Patient(
        user_id=user_id,
        full_name=full_name,
        phone_number=phone,
        date_of_birth=date_of_birth,
        insurance_name=(insurance_name or "").strip() or None,
        is_primary=True,
    )
    db.add(patient)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        logger.info("registration_duplicate phone=%s constraint=true", phone)
        raise DuplicatePatient() from exc
    db.refresh(patient)
    logger.info("patient_registered patient_id=%s", patient.id)
    return patient


def add_family_member(
    db: Session,
    primary_patient_id: str,
    full_name: str,
    relationship: str,
    date_of_birth: date | None = None,
) -> tuple[Patient, FamilyRelationship]:
    primary = db.get(Patient, primary_patient_id)
    if primary is None:
        raise PatientNotFound("Patient not found")
    if not primary.is_primary:
        raise ValidationError("Only the account holder can add family members")

    full_name = full_name.strip()
    if not full_name:
        raise ValidationError("Please enter the family member's full name")
    relationship = relationship.strip().lower()
    if relationship not in RELATIONSHIPS:
        raise ValidationError(
            f"Relationship must be one of: {', '.join(sorted(RELATIONSHIPS))}"
        )

    member = Patient(
        user_id=primary.user_id,
        full_name=full_name,
        date_of_birth=date_of_birth,
        is_primary=False,
    )
    db.add(member)
    db.flush()
    link = FamilyRelationship(
        primary_patient_id=primary.id,
        family_member_id=member.id,
        relationship_type=relationship,
    )
    db.add(link)
    db.flush()
    db.refresh(member)
    logger.info(
        "family_member_added primary_id=%s member_id=%s relationship=%s",
        primary.id,
        member.id,
        relationship,
    )
    return member, link


def list_family_members(db: Session, primary_patient_id: str) -> list[tuple[Patient, str]]:
    return [
        (link.family_member, link.relationship_type)
        for link in repository.family_relationships(db, primary_patient_id)
    ]
