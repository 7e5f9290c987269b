import httpx
import pytest
from sqlalchemy.exc import SQLAlchemyError

from conftest import DAY, NOW
from dental_assistant.models import Slot
from dental_assistant.schemas import FormName, RouteContext
from dental_assistant.services import conversation
from dental_assistant.services.conversation import (
    FAMILY_REGISTRATION_OPENED,
    FAMILY_VERIFY_PROMPT,
    GENERIC_APOLOGY,
    NO_FAMILY_YET,
    NO_UPCOMING,
    REGISTRATION_OPENED,
    VERIFICATION_FAILED,
    VERIFY_PROMPT,
    Intent,
    classify,
    extract_features,
    route_message,
)
from dental_assistant.services.verification import VERIFICATION_FORMAT_MESSAGE

JOHN = "John Smith, 1234567890, 1990-01-01"


class FakeFallback:
    def __init__(self, reply: str = "We're open 8 to 6 on weekdays.", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def __call__(self, history, hints):
        self.calls.append((history, hints))
        if self.error is not None:
            raise self.error
        return self.reply


def _user(content: str) -> dict:
    return {"role": "user", "content": content}


def _assistant(content: str) -> dict:
    return {"role": "assistant", "content": content}


async def _route(db, *history, context=None, fallback=None):
    return await route_message(
        db,
        list(history),
        context or RouteContext(),
        fallback=fallback or FakeFallback(),
        now=NOW,
    )


async def test_unverified_reschedule_asks_for_identity(db):
    result = await _route(db, _user("I need to reschedule my appointment"))

    assert result.intent is Intent.VERIFICATION_REQUIRED
    assert result.bot_message == VERIFY_PROMPT
    assert result.ui_action.form is None
    assert result.verified_patient_id is None


async def test_verification_without_appointments_offers_to_schedule(db, john):
    result = await _route(db, _assistant(VERIFY_PROMPT), _user(JOHN))

    assert result.intent is Intent.VERIFICATION
    assert result.verified_patient_id == john.id
    assert result.bot_message.endswith("Would you like to schedule one?")
    assert result.ui_action.form is None


async def test_verification_summarises_upcoming_appointment(db, john, add_slots, appointment_types, scheduled):
    (slot,) = add_slots(DAY, "09:00")
    scheduled(john, slot, appointment_types.cleaning)

    result = await _route(db, _user(JOHN))

    assert "Type: Cleaning" in result.bot_message
    assert "Date: June 3, 2030" in result.bot_message
    assert "Time: 9:00 AM" in result.bot_message
    assert "Would you like to reschedule or cancel" in result.bot_message


async def test_failed_verification_does_not_say_which_field(db, john):
    wrong_name = await _route(db, _user("Jane Smith, 1234567890, 1990-01-01"))
    wrong_phone = await _route(db, _user("John Smith, 9999999999, 1990-01-01"))

    assert wrong_name.bot_message == wrong_phone.bot_message == VERIFICATION_FAILED
    assert wrong_name.verified_patient_id is None


async def test_malformed_birthday_explains_format(db, john):
    result = await _route(db, _user("John Smith, 1234567890, 1990-13-45"))

    assert result.intent is Intent.VERIFICATION
    assert result.bot_message == VERIFICATION_FORMAT_MESSAGE


async def test_verification_after_schedule_offer_opens_scheduler(db, john):
    result = await _route(
        db,
        _assistant("I don't see any upcoming appointments. Would you like to schedule one?"),
        _user(JOHN),
    )

    assert result.ui_action.form is FormName.SCHEDULER
    assert result.ui_action.args == {"patient_id": john.id, "emergency": False}


async def test_yes_to_schedule_opens_scheduler_for_verified_patient(db, john):
    context = RouteContext(verified_patient_id=john.id)

    result = await _route(
        db, _assistant("Would you like to schedule one?"), _user("Yes"), context=context
    )

    assert result.intent is Intent.CONFIRM_SCHEDULING
    assert result.ui_action.form is FormName.SCHEDULER
    assert result.ui_action.args["patient_id"] == john.id


async def test_yes_to_schedule_needs_verification(db):
    result = await _route(db, _assistant("Would you like to schedule one?"), _user("yes"))

    assert result.intent is Intent.CONFIRM_SCHEDULING
    assert result.bot_message == VERIFY_PROMPT
    assert result.ui_action.form is None


async def test_yes_to_register_opens_registration(db):
    context = RouteContext(authenticated=True)

    result = await _route(db, _assistant(VERIFICATION_FAILED), _user("yes"), context=context)

    assert result.intent is Intent.CONFIRM_REGISTRATION
    assert result.bot_message == REGISTRATION_OPENED
    assert result.ui_action.form is FormName.REGISTRATION


async def test_new_patient_needs_login(db):
    signed_in = await _route(db, _user("I'm a new patient"), context=RouteContext(authenticated=True))
    anonymous = await _route(db, _user("I'm a new patient"))

    assert signed_in.intent is Intent.NEW_PATIENT
    assert signed_in.ui_action.form is FormName.REGISTRATION
    assert anonymous.intent is Intent.FALLBACK


async def test_unverified_family_request_leads_to_family_forms(db, john, family_member):
    first = await _route(db, _user("I want to schedule a family appointment"))
    assert first.bot_message == FAMILY_VERIFY_PROMPT

    history = [_user("I want to schedule a family appointment"), _assistant(first.bot_message), _user(JOHN)]
    without_members = await _route(db, *history)
    assert without_members.bot_message == FAMILY_REGISTRATION_OPENED
    assert without_members.ui_action.form is FormName.FAMILY_REGISTRATION
    assert without_members.ui_action.args == {"primary_patient_id": john.id}

    family_member(john, "Amy Smith")
    with_members = await _route(db, *history)
    assert with_members.ui_action.form is FormName.FAMILY_SCHEDULER


@pytest.mark.parametrize(
    "has_family, form",
    [(False, FormName.FAMILY_REGISTRATION), (True, FormName.FAMILY_SCHEDULER)],
)
async def test_verified_family_request(db, john, has_family, form):
    context = RouteContext(verified_patient_id=john.id, has_family_members=has_family)

    result = await _route(db, _user("Can I book appointments for my kids?"), context=context)

    assert result.intent is Intent.FAMILY
    assert result.ui_action.form is form
    if not has_family:
        assert result.bot_message == NO_FAMILY_YET


async def test_yes_to_adding_family_opens_family_registration(db, john):
    context = RouteContext(verified_patient_id=john.id)

    result = await _route(
        db,
        _assistant("Would you like to add family members first?"),
        _user("yes"),
        context=context,
    )

    assert result.intent is Intent.CONFIRM_FAMILY_REGISTRATION
    assert result.ui_action.form is FormName.FAMILY_REGISTRATION


async def test_manage_opens_manager_with_group(db, john, family_member, add_slots, appointment_types, scheduled):
    child = family_member(john, "Amy Smith")
    first, second = add_slots(DAY, "09:00", "09:30")
    own = scheduled(john, first, appointment_types.cleaning, family_group_id="group-1")
    childs = scheduled(child, second, appointment_types.cleaning, family_group_id="group-1")
    context = RouteContext(verified_patient_id=john.id)

    result = await _route(db, _user("I want to cancel my appointment"), context=context)

    assert result.intent is Intent.MANAGE
    assert result.ui_action.form is FormName.MANAGER
    assert result.ui_action.args == {
        "appointment_id": own.id,
        "patient_id": john.id,
        "action": "cancel",
        "family_appointment_ids": [childs.id],
    }


async def test_manage_without_appointments(db, john):
    context = RouteContext(verified_patient_id=john.id)

    result = await _route(db, _user("Please move my appointment"), context=context)

    assert result.intent is Intent.MANAGE
    assert result.bot_message == NO_UPCOMING
    assert result.ui_action.form is None


async def test_emergency_booking_flags_scheduler(db, john):
    context = RouteContext(verified_patient_id=john.id)

    result = await _route(
        db, _user("I need to book an emergency appointment, severe pain"), context=context
    )

    assert result.intent is Intent.BOOK
    assert result.ui_action.form is FormName.SCHEDULER
    assert result.ui_action.args == {"patient_id": john.id, "emergency": True}
    assert "emergency" in result.bot_message


async def test_fallback_gets_history_and_hints(db):
    fallback = FakeFallback(reply="We're open 8 to 6 on weekdays.")
    context = RouteContext(authenticated=True, patient_name="John Smith")

    result = await _route(db, _user("What are your hours?"), context=context, fallback=fallback)

    assert result.intent is Intent.FALLBACK
    assert result.bot_message == "We're open 8 to 6 on weekdays."
    ((history, hints),) = fallback.calls
    assert history == [_user("What are your hours?")]
    assert hints["authenticated"] is True
    assert hints["patient_name"] == "John Smith"
    assert hints["is_verified"] is False


async def test_routing_is_deterministic(db, john):
    history = [_user("I need to reschedule my appointment")]

    first = await _route(db, *history)
    second = await _route(db, *history)

    assert first == second


async def test_clock_time_reschedules_to_nearest_slot(db, john, add_slots, appointment_types, scheduled):
    (current,) = add_slots(DAY, "10:00", minutes=15)
    add_slots(DAY, "14:30", "14:45", "15:15", minutes=15)
    scheduled(john, current, appointment_types.cleaning)

    result = await _route(
        db,
        _user(JOHN),
        _assistant("Would you like to reschedule or cancel this appointment?"),
        _user("3pm"),
    )

    assert result.intent is Intent.RESCHEDULE_TIME
    assert "nearest available time at 2:45 PM" in result.bot_message
    assert result.verified_patient_id == john.id
    db.expire_all()
    assert db.get(Slot, current.id).is_available is True


async def test_clock_time_with_no_free_slots(db, john, add_slots, appointment_types, scheduled):
    (current,) = add_slots(DAY, "10:00")
    scheduled(john, current, appointment_types.cleaning)
    context = RouteContext(verified_patient_id=john.id)

    result = await _route(
        db,
        _user(JOHN),
        _assistant("Would you like to reschedule or cancel this appointment?"),
        _user("3pm"),
        context=context,
    )

    assert result.bot_message.startswith("I apologize, but there are no available slots")


async def test_clock_time_needs_identity_in_transcript(db, john, add_slots, appointment_types, scheduled):
    current, other = add_slots(DAY, "10:00", "15:00")
    appointment = scheduled(john, current, appointment_types.cleaning)
    context = RouteContext(verified_patient_id=john.id)

    result = await _route(
        db,
        _assistant("Would you like to reschedule or cancel this appointment?"),
        _user("3pm"),
        context=context,
    )

    assert result.intent is Intent.RESCHEDULE_TIME
    assert result.bot_message == VERIFY_PROMPT
    db.expire_all()
    assert appointment.start_time == current.start_time
    assert db.get(Slot, other.id).is_available is True


async def test_clock_time_with_wrong_identity_changes_nothing(db, john, add_slots, appointment_types, scheduled):
    current, other = add_slots(DAY, "10:00", "15:00")
    appointment = scheduled(john, current, appointment_types.cleaning)

    result = await _route(
        db,
        _user("John Smith, 1234567890, 1985-05-05"),
        _assistant("Would you like to reschedule or cancel this appointment?"),
        _user("3pm"),
    )

    assert result.bot_message == VERIFY_PROMPT
    assert result.verified_patient_id is None
    db.expire_all()
    assert appointment.start_time == current.start_time
    assert db.get(Slot, other.id).is_available is True


async def test_registered_caller_asking_to_register_kids_gets_family_forms(db, john, family_member):
    family_member(john, "Amy Smith")
    context = RouteContext(
        authenticated=True,
        patient_id=john.id,
        verified_patient_id=john.id,
        has_family_members=True,
    )

    result = await _route(db, _user("I want to register my kids for a family appointment"), context=context)

    assert result.intent is Intent.FAMILY
    assert result.ui_action.form is FormName.FAMILY_SCHEDULER


async def test_unexpected_fallback_error_becomes_apology(db):
    fallback = FakeFallback(error=ValueError("Expecting value: line 1 column 1"))

    result = await _route(db, _user("Tell me a joke"), fallback=fallback)

    assert result.intent is Intent.FALLBACK
    assert result.bot_message == GENERIC_APOLOGY


async def test_fallback_transport_error_becomes_apology(db):
    fallback = FakeFallback(error=httpx.ConnectError("down"))

    result = await _route(db, _user("Tell me a joke"), fallback=fallback)

    assert result.bot_message == GENERIC_APOLOGY


async def test_database_error_becomes_apology(db, john, monkeypatch):
    def broken(*args, **kwargs):
        raise SQLAlchemyError("connection lost")

    monkeypatch.setattr(conversation, "latest_appointment", broken)
    context = RouteContext(verified_patient_id=john.id)

    result = await _route(db, _user("I want to cancel my appointment"), context=context)

    assert result.intent is Intent.MANAGE
    assert result.bot_message == GENERIC_APOLOGY


def test_rule_order_prefers_confirmations():
    features = extract_features([_assistant("Would you like to register?"), _user("yes")])

    assert classify(features, RouteContext(authenticated=True)) is Intent.CONFIRM_REGISTRATION
    assert classify(features, RouteContext()) is Intent.FALLBACK


def test_keywords_need_an_appointment_mention():
    features = extract_features([_user("Can you change the music?")])

    assert not features.is_rescheduling
    assert classify(features, RouteContext()) is Intent.FALLBACK
