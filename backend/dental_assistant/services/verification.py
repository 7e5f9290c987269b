"""Identity verification against stored primary patients.

Patients prove who they are with a ``Name, 10-digit phone, YYYY-MM-DD``
utterance. Verification only reads; it is safe to repeat.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy.orm import Session

from ..models import Appointment, Patient
from . import repository
from .errors import ValidationError

logger = logging.getLogger(__name__)

VERIFICATION_PATTERN = re.compile(r"([^,]+),\s*(\d{10}),\s*(\d{4}-\d{2}-\d{2})")
VERIFICATION_FORMAT_MESSAGE = (
    "Please provide your information in the correct format: "
    "[Full Name], [10-digit phone], [YYYY-MM-DD]"
)

NOT_FOUND = "not_found"
NAME_MISMATCH = "name_mismatch"


@dataclass(frozen=True)
class VerificationRequest:
    full_name: str
    phone_number: str
    date_of_birth: date


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    patient: Patient | None = None
    reason: str | None = None


def format_phone(phone: str) -> str:
    digits = re.sub(r"\D", "", phone)
    if len(digits) != 10:
        raise ValidationError("Please enter a valid 10-digit phone number")
    return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"


def parse_verification(text: str) -> VerificationRequest | None:
    match = VERIFICATION_PATTERN.search(text)
    if not match:
        return None
    full_name, phone_number, raw_dob = (part.strip() for part in match.groups())
    try:
        date_of_birth = date.fromisoformat(raw_dob)
    except ValueError as exc:
        raise ValidationError(VERIFICATION_FORMAT_MESSAGE) from exc
    return VerificationRequest(full_name, phone_number, date_of_birth)


def verify_patient(
    db: Session, full_name: str, phone_number: str, date_of_birth: date
) -> VerificationResult:
    patient = repository.find_primary_patient(db, format_phone(phone_number), date_of_birth)
    if patient is None:
        logger.info("verification_failed reason=%s", NOT_FOUND)
        return VerificationResult(verified=False, reason=NOT_FOUND)

    if full_name.strip().lower() != patient.full_name.strip().lower():
        logger.info("verification_failed reason=%s patient_id=%s", NAME_MISMATCH, patient.id)
        return VerificationResult(verified=False, reason=NAME_MISMATCH)

    logger.info("verification_succeeded patient_id=%s", patient.id)
    return VerificationResult(verified=True, patient=patient)


def verify_utterance(db: Session, text: str) -> VerificationResult | None:
    request = parse_verification(text)
    if request is None:
        return None
    return verify_patient(db, request.full_name, request.phone_number, request.date_of_birth)


def latest_appointment(
    db: Session, patient: Patient, now: datetime | None = None
) -> Appointment | None:
    """Earliest upcoming scheduled appointment the patient may manage.

    The patient's own appointment wins. Only a primary account holder falls
    back to the earliest appointment among their family members.
    """
    now = now or datetime.now()
    own = repository.scheduled_appointments(db, [patient.id], after=now, limit=1)
    if own:
        return own[0]
    if not patient.is_primary:
        return None

    member_ids = repository.family_member_ids(db, patient.id)
    family = repository.scheduled_appointments(db, member_ids, after=now, limit=1)
    return family[0] if family else None


def can_manage_patient(db: Session, patient: Patient, patient_id: str) -> bool:
    """A patient acts for themselves; a primary also acts for their family."""
    if patient_id == patient.id:
        return True
    if not patient.is_primary:
        return False
    return patient_id in repository.family_member_ids(db, patient.id)


def can_manage(db: Session, patient: Patient, appointment: Appointment) -> bool:
    return can_manage_patient(db, patient, appointment.patient_id)
