import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["SEED_DEMO_DATA"] = "false"

from datetime import date, datetime, timedelta  # noqa: E402
from types import SimpleNamespace  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from dental_assistant import models  # noqa: E402
from dental_assistant.db import Base  # noqa: E402

DAY = date(2030, 6, 3)
NOW = datetime(2030, 6, 3, 8, 0)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    yield session
    session.close()


@pytest.fixture
def add_slots(db):
    """Insert slots starting at each ``HH:MM`` on ``day`` and return them in order."""

    def _add(day: date, *starts: str, minutes: int = 30, available: bool = True) -> list[models.Slot]:
        slots = []
        for start in starts:
            hour, minute = (int(part) for part in start.split(":"))
            begin = datetime(day.year, day.month, day.day, hour, minute)
            slots.append(
                models.Slot(
                    start_time=begin,
                    end_time=begin + timedelta(minutes=minutes),
                    is_available=available,
                )
            )
        db.add_all(slots)
        db.commit()
        return slots

    return _add


@pytest.fixture
def appointment_types(db):
    cleaning = models.AppointmentType(name="Cleaning", duration_minutes=60)
    emergency = models.AppointmentType(name="Emergency", duration_minutes=30)
    db.add_all([cleaning, emergency])
    db.commit()
    return SimpleNamespace(cleaning=cleaning, emergency=emergency)


@pytest.fixture
def john(db):
    patient = models.Patient(
        user_id="auth0|john",
        full_name="John Smith",
        phone_number="(123) 456-7890",
        date_of_birth=date(1990, 1, 1),
        is_primary=True,
    )
    db.add(patient)
    db.commit()
    return patient


@pytest.fixture
def family_member(db):
    """Add a non-primary patient linked to ``primary`` and return it."""

    def _add(primary: models.Patient, name: str, relationship: str = "child") -> models.Patient:
        member = models.Patient(user_id=primary.user_id, full_name=name, is_primary=False)
        db.add(member)
        db.flush()
        db.add(
            models.FamilyRelationship(
                primary_patient_id=primary.id,
                family_member_id=member.id,
                relationship_type=relationship,
            )
        )
        db.commit()
        return member

    return _add


@pytest.fixture
def scheduled(db):
    """Insert a scheduled appointment occupying ``slot``."""

    def _add(patient: models.Patient, slot: models.Slot, appointment_type: models.AppointmentType, **extra):
        slot.is_available = False
        appointment = models.Appointment(
            patient_id=patient.id,
            appointment_type_id=appointment_type.id,
            start_time=slot.start_time,
            end_time=slot.end_time,
            **{"status": models.SCHEDULED, **extra},
        )
        db.add(appointment)
        db.commit()
        return appointment

    return _add
