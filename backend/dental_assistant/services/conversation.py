"""Conversation routing for the booking assistant.

Every call re-derives the decision from the transcript and the caller-held
``RouteContext``; nothing is kept between calls. Classification is an ordered
rule table (first match wins) and each intent has exactly one handler, which
produces one bot message and at most one form to open.
"""

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import Patient
from ..schemas import FormName, RouteContext, UIAction
from . import repository
from .assistant import generate_reply
from .errors import NoAvailableSlots, SchedulingError
from .family import family_group_appointments
from .scheduler import (
    CLOCK_TIME_PATTERN,
    format_slot_date,
    format_slot_time,
    reschedule_to_clock_time,
)
from .verification import (
    VERIFICATION_PATTERN,
    latest_appointment,
    parse_verification,
    verify_utterance,
)

logger = logging.getLogger(__name__)

Fallback = Callable[[list[dict[str, str]], dict[str, Any]], Awaitable[str]]

BOOKING_KEYWORDS = ("schedule", "book", "make", "set up", "yes")
RESCHEDULE_KEYWORDS = ("reschedule", "change", "move", "switch", "different time", "another time")
CANCEL_KEYWORDS = ("cancel", "remove", "delete")
EMERGENCY_KEYWORDS = ("emergency", "urgent", "pain", "severe")
APPOINTMENT_KEYWORDS = ("appointment", "booking", "slot", "time", "schedule")
NEW_PATIENT_KEYWORDS = ("new patient", "first time", "register", "sign up")
FAMILY_KEYWORDS = (
    "family", "together", "kids", "children", "child", "spouse", "wife",
    "husband", "daughter", "son", "back-to-back", "consecutive",
)

# Phrases our own replies use to offer a follow-up; matched lowercase.
ADD_FAMILY_PROMPT = "would you like to add family members first"
REGISTER_PROMPT = "like to register"
SCHEDULE_PROMPT = "like to schedule"
SCHEDULE_OFFERS = (
    "would you like to schedule one?",
    "would you like to schedule a new appointment?",
)
FAMILY_FLOW_PHRASES = (
    "schedule appointments for your family",
    "family visit",
    "family appointment",
)
RESCHEDULE_OFFER = "would you like to reschedule"

VERIFY_FORMAT = (
    "Please provide your information in this format:\n"
    "[Full Name], [10-digit phone], [YYYY-MM-DD]\n\n"
    "For example: John Smith, 1234567890, 1990-01-01"
)
VERIFY_PROMPT = "To protect your privacy, I'll need to verify your identity first. " + VERIFY_FORMAT
FAMILY_VERIFY_PROMPT = (
    "I'll help you schedule appointments for your family. "
    "First, I'll need to verify your identity. " + VERIFY_FORMAT
)
VERIFICATION_FAILED = (
    "I couldn't find any records matching your information. If you're a new patient, "
    "would you like to register? Otherwise, please verify your information and try again."
)
REGISTRATION_OPENED = (
    "I'll help you register as a new patient. "
    "Please complete the registration form that has appeared."
)
REGISTER_BEFORE_SCHEDULING = (
    "Before we schedule an appointment, I'll need to collect some information from you. "
    "Please complete the registration form that has appeared."
)
FAMILY_REGISTRATION_OPENED = (
    "I'll help you add your family members. "
    "Please use the form that has appeared to add your family members."
)
NO_FAMILY_YET = (
    "I notice you don't have any family members registered yet. "
    "Please use the form that has appeared to add your family members."
)
FAMILY_SCHEDULER_OPENED = (
    "I've opened the family scheduling form where you can select "
    "appointments for your family members."
)
MANAGER_OPENED = (
    "I've found your latest scheduled appointment. "
    "You can {action} it using the form that has appeared."
)
NO_UPCOMING = (
    "I don't see any upcoming appointments scheduled for you. "
    "Would you like to schedule a new appointment?"
)
NO_SLOTS_THAT_DAY = (
    "I apologize, but there are no available slots on that date. "
    "Would you like to try a different day?"
)
ANYTHING_ELSE = "Is there anything else I can help you with?"
GENERIC_APOLOGY = "I apologize, but I encountered an error. Please try again."


class Intent(str, Enum):
    CONFIRM_FAMILY_REGISTRATION = "confirm_family_registration"
    CONFIRM_REGISTRATION = "confirm_registration"
    CONFIRM_SCHEDULING = "confirm_scheduling"
    NEW_PATIENT = "new_patient"
    VERIFICATION = "verification"
    VERIFICATION_REQUIRED = "verification_required"
    FAMILY = "family"
    MANAGE = "manage"
    BOOK = "book"
    RESCHEDULE_TIME = "reschedule_time"
    FALLBACK = "fallback"


@dataclass
class RouteResult:
    bot_message: str
    intent: Intent
    ui_action: UIAction = field(default_factory=UIAction)
    verified_patient_id: str | None = None


def _contains_any(lowered: str, keywords: Sequence[str]) -> bool:
    return any(keyword in lowered for keyword in keywords)


@dataclass(frozen=True)
class MessageFeatures:
    text: str
    last_assistant: str
    prior_assistant: tuple[str, ...]
    is_yes: bool
    mentions_appointment: bool
    is_booking: bool
    is_rescheduling: bool
    is_cancelling: bool
    is_family_appointment: bool
    is_new_patient: bool
    is_emergency: bool
    has_verification: bool
    has_clock_time: bool

    def assistant_said(self, phrases: Sequence[str]) -> bool:
        return any(_contains_any(message, phrases) for message in self.prior_assistant)


def extract_features(history: Sequence[Mapping[str, str]]) -> MessageFeatures:
    text = history[-1]["content"] if history else ""
    lowered = text.lower()
    earlier = history[:-1]
    prior_assistant = tuple(
        item["content"].lower() for item in earlier if item["role"] == "assistant"
    )
    last_assistant = ""
    if earlier and earlier[-1]["role"] == "assistant":
        last_assistant = earlier[-1]["content"].lower()

    mentions_appointment = _contains_any(lowered, APPOINTMENT_KEYWORDS)
    return MessageFeatures(
        text=text,
        last_assistant=last_assistant,
        prior_assistant=prior_assistant,
        is_yes=lowered.strip() == "yes",
        mentions_appointment=mentions_appointment,
        is_booking=mentions_appointment and _contains_any(lowered, BOOKING_KEYWORDS),
        is_rescheduling=mentions_appointment and _contains_any(lowered, RESCHEDULE_KEYWORDS),
        is_cancelling=mentions_appointment and _contains_any(lowered, CANCEL_KEYWORDS),
        is_family_appointment=mentions_appointment and _contains_any(lowered, FAMILY_KEYWORDS),
        is_new_patient=_contains_any(lowered, NEW_PATIENT_KEYWORDS),
        is_emergency=_contains_any(lowered, EMERGENCY_KEYWORDS),
        has_verification=VERIFICATION_PATTERN.search(text) is not None,
        has_clock_time=CLOCK_TIME_PATTERN.search(text) is not None,
    )


Rule = Callable[[MessageFeatures, RouteContext], bool]

# Categories overlap, so the order of this table is part of the contract.
RULES: list[tuple[Intent, Rule]] = [
    (
        Intent.CONFIRM_FAMILY_REGISTRATION,
        lambda f, c: f.is_yes and ADD_FAMILY_PROMPT in f.last_assistant and c.verified,
    ),
    (
        Intent.CONFIRM_REGISTRATION,
        lambda f, c: f.is_yes and REGISTER_PROMPT in f.last_assistant and c.authenticated,
    ),
    (
        Intent.CONFIRM_SCHEDULING,
        lambda f, c: f.is_yes and SCHEDULE_PROMPT in f.last_assistant,
    ),
    (
        Intent.NEW_PATIENT,
        lambda f, c: f.is_new_patient and c.authenticated and not c.registered,
    ),
    (Intent.VERIFICATION, lambda f, c: f.has_verification),
    (
        Intent.VERIFICATION_REQUIRED,
        lambda f, c: not c.verified
        and (f.is_booking or f.is_rescheduling or f.is_cancelling or f.is_family_appointment),
    ),
    (Intent.FAMILY, lambda f, c: f.is_family_appointment and c.verified),
    (
        Intent.MANAGE,
        # "Book an appointment" mentions an appointment too; it belongs to BOOK.
        lambda f, c: c.verified
        and (f.is_rescheduling or f.is_cancelling or (f.mentions_appointment and not f.is_booking)),
    ),
    (Intent.BOOK, lambda f, c: f.is_booking and (c.verified or c.registered)),
    (
        Intent.RESCHEDULE_TIME,
        lambda f, c: f.has_clock_time and f.assistant_said((RESCHEDULE_OFFER,)),
    ),
]


def classify(features: MessageFeatures, context: RouteContext) -> Intent:
    for intent, rule in RULES:
        if rule(features, context):
            return intent
    return Intent.FALLBACK


@dataclass
class RouteRequest:
    db: Session
    history: list[dict[str, str]]
    context: RouteContext
    features: MessageFeatures
    fallback: Fallback
    now: datetime | None

    def result(self, message: str, intent: Intent, form: FormName | None = None, **args: Any) -> RouteResult:
        return RouteResult(
            bot_message=message,
            intent=intent,
            ui_action=UIAction(form=form, args=args),
            verified_patient_id=self.context.verified_patient_id,
        )


def _upcoming_summary(name: str, appointment) -> str:
    type_name = appointment.appointment_type.name if appointment.appointment_type else "Appointment"
    return (
        f"Thank you for verifying your information, {name}. "
        "I can see your upcoming appointment:\n\n"
        f"Type: {type_name}\n"
        f"Date: {format_slot_date(appointment.start_time)}\n"
        f"Time: {format_slot_time(appointment.start_time)}\n\n"
        "Would you like to reschedule or cancel this appointment?"
    )


def _scheduler(request: RouteRequest, intent: Intent) -> RouteResult:
    context = request.context
    if not context.registered:
        return request.result(REGISTER_BEFORE_SCHEDULING, intent, FormName.REGISTRATION)
    emergency = request.features.is_emergency
    message = (
        "I'll help you schedule an appointment"
        f"{' - I understand this is an emergency' if emergency else ''}. "
        "Please use the scheduling form that has appeared."
    )
    return request.result(
        message,
        intent,
        FormName.SCHEDULER,
        patient_id=context.verified_patient_id or context.patient_id,
        emergency=emergency,
    )


async def _confirm_family_registration(request: RouteRequest) -> RouteResult:
    return request.result(
        FAMILY_REGISTRATION_OPENED,
        Intent.CONFIRM_FAMILY_REGISTRATION,
        FormName.FAMILY_REGISTRATION,
        primary_patient_id=request.context.verified_patient_id,
    )


async def _confirm_registration(request: RouteRequest) -> RouteResult:
    return request.result(REGISTRATION_OPENED, Intent.CONFIRM_REGISTRATION, FormName.REGISTRATION)


async def _confirm_scheduling(request: RouteRequest) -> RouteResult:
    if not request.context.verified:
        return request.result(VERIFY_PROMPT, Intent.CONFIRM_SCHEDULING)
    return _scheduler(request, Intent.CONFIRM_SCHEDULING)


async def _new_patient(request: RouteRequest) -> RouteResult:
    return request.result(REGISTRATION_OPENED, Intent.NEW_PATIENT, FormName.REGISTRATION)


async def _verification(request: RouteRequest) -> RouteResult:
    db, features = request.db, request.features
    outcome = verify_utterance(db, features.text)
    if outcome is None or not outcome.verified:
        # Same reply whichever field was wrong.
        return request.result(VERIFICATION_FAILED, Intent.VERIFICATION)

    patient = outcome.patient
    intent = Intent.VERIFICATION

    def verified(message: str, form: FormName | None = None, **args: Any) -> RouteResult:
        return RouteResult(
            bot_message=message,
            intent=intent,
            ui_action=UIAction(form=form, args=args),
            verified_patient_id=patient.id,
        )

    if features.assistant_said(SCHEDULE_OFFERS):
        return verified(
            "Thank you for verifying your information. "
            "I've opened the scheduling form for you to book your appointment.",
            FormName.SCHEDULER,
            patient_id=patient.id,
            emergency=False,
        )

    if features.assistant_said(FAMILY_FLOW_PHRASES) or features.is_family_appointment:
        if not repository.family_member_ids(db, patient.id):
            return verified(
                FAMILY_REGISTRATION_OPENED,
                FormName.FAMILY_REGISTRATION,
                primary_patient_id=patient.id,
            )
        return verified(
            "Thank you for verifying your information. " + FAMILY_SCHEDULER_OPENED,
            FormName.FAMILY_SCHEDULER,
            primary_patient_id=patient.id,
        )

    appointment = latest_appointment(db, patient, request.now)
    if appointment is None:
        return verified(
            f"Thank you for verifying your information, {patient.full_name}. "
            "I don't see any upcoming appointments scheduled for you. "
            "Would you like to schedule one?"
        )
    return verified(_upcoming_summary(patient.full_name, appointment))


async def _verification_required(request: RouteRequest) -> RouteResult:
    if request.features.is_family_appointment:
        return request.result(FAMILY_VERIFY_PROMPT, Intent.VERIFICATION_REQUIRED)
    return request.result(VERIFY_PROMPT, Intent.VERIFICATION_REQUIRED)


async def _family(request: RouteRequest) -> RouteResult:
    primary_id = request.context.verified_patient_id
    if not request.context.has_family_members:
        return request.result(
            NO_FAMILY_YET, Intent.FAMILY, FormName.FAMILY_REGISTRATION, primary_patient_id=primary_id
        )
    return request.result(
        FAMILY_SCHEDULER_OPENED, Intent.FAMILY, FormName.FAMILY_SCHEDULER, primary_patient_id=primary_id
    )


async def _manage(request: RouteRequest) -> RouteResult:
    db = request.db
    patient = db.get(Patient, request.context.verified_patient_id)
    if patient is None:
        return request.result(VERIFY_PROMPT, Intent.MANAGE)

    appointment = latest_appointment(db, patient, request.now)
    if appointment is None:
        return request.result(NO_UPCOMING, Intent.MANAGE)

    action = "reschedule" if request.features.is_rescheduling else "cancel"
    return request.result(
        MANAGER_OPENED.format(action=action),
        Intent.MANAGE,
        FormName.MANAGER,
        appointment_id=appointment.id,
        patient_id=appointment.patient_id,
        action=action,
        family_appointment_ids=[other.id for other in family_group_appointments(db, appointment.id)],
    )


async def _book(request: RouteRequest) -> RouteResult:
    return _scheduler(request, Intent.BOOK)


def _reverified_patient(request: RouteRequest) -> Patient | None:
    """Re-check the latest verification utterance the caller sent earlier."""
    for item in reversed(request.history[:-1]):
        if item["role"] != "user" or parse_verification(item["content"]) is None:
            continue
        outcome = verify_utterance(request.db, item["content"])
        return outcome.patient if outcome and outcome.verified else None
    return None


async def _reschedule_time(request: RouteRequest) -> RouteResult:
    intent = Intent.RESCHEDULE_TIME
    patient = _reverified_patient(request)
    if patient is None:
        return request.result(VERIFY_PROMPT, intent)

    appointment = latest_appointment(request.db, patient, request.now)
    if appointment is None:
        result = request.result(NO_UPCOMING, intent)
    else:
        try:
            outcome = reschedule_to_clock_time(
                request.db, appointment, request.features.text, request.now
            )
        except NoAvailableSlots:
            result = request.result(NO_SLOTS_THAT_DAY, intent)
        else:
            new_time = format_slot_time(outcome.slot.start_time)
            if outcome.exact:
                message = f"I've successfully rescheduled your appointment to {new_time}."
            else:
                message = (
                    "The requested time wasn't available, but I've rescheduled your "
                    f"appointment to the nearest available time at {new_time}."
                )
            result = request.result(f"{message} {ANYTHING_ELSE}", intent)
    result.verified_patient_id = patient.id
    return result


async def _fallback(request: RouteRequest) -> RouteResult:
    context = request.context
    hints = {
        "authenticated": context.authenticated,
        "patient_name": context.patient_name,
        "has_appointments": context.has_appointments,
        "is_rescheduling": context.is_rescheduling,
        "is_verified": context.verified,
        "has_family_members": context.has_family_members,
    }
    text = await request.fallback(request.history, hints)
    return request.result(text, Intent.FALLBACK)


HANDLERS: dict[Intent, Callable[[RouteRequest], Awaitable[RouteResult]]] = {
    Intent.CONFIRM_FAMILY_REGISTRATION: _confirm_family_registration,
    Intent.CONFIRM_REGISTRATION: _confirm_registration,
    Intent.CONFIRM_SCHEDULING: _confirm_scheduling,
    Intent.NEW_PATIENT: _new_patient,
    Intent.VERIFICATION: _verification,
    Intent.VERIFICATION_REQUIRED: _verification_required,
    Intent.FAMILY: _family,
    Intent.MANAGE: _manage,
    Intent.BOOK: _book,
    Intent.RESCHEDULE_TIME: _reschedule_time,
    Intent.FALLBACK: _fallback,
}


async def route_message(
    db: Session,
    history: Sequence[Mapping[str, str]],
    context: RouteContext,
    fallback: Fallback = generate_reply,
    now: datetime | None = None,
) -> RouteResult:
    """Decide the reply and the form to show for the last message in ``history``.

    The router owns its transaction: it commits what a handler changed and
    rolls back on failure. It never raises; failures become a bot message.
    """
    transcript = [{"role": item["role"], "content": item["content"]} for item in history]
    features = extract_features(transcript)
    intent = classify(features, context)
    logger.info(
        "route_decision intent=%s authenticated=%s verified=%s",
        intent.value,
        context.authenticated,
        context.verified,
    )
    request = RouteRequest(db, transcript, context, features, fallback, now)
    try:
        result = await HANDLERS[intent](request)
        db.commit()
        return result
    except SchedulingError as exc:
        db.rollback()
        logger.info("route_rejected intent=%s error=%s", intent.value, exc)
        return request.result(str(exc), intent)
    except (SQLAlchemyError, httpx.HTTPError):
        db.rollback()
        logger.exception("route_failed intent=%s", intent.value)
        return request.result(GENERIC_APOLOGY, intent)
    except Exception:
        db.rollback()
        logger.exception("route_crashed intent=%s", intent.value)
        return request.result(GENERIC_APOLOGY, intent)
