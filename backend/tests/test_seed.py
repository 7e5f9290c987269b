from datetime import date

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from dental_assistant import seed
from dental_assistant.config import settings
from dental_assistant.models import AppointmentType, Patient, Slot


def test_build_day_slots_cover_business_hours():
    slots = seed.build_day_slots(date(2030, 6, 3), 30, 8, 18)

    assert len(slots) == 20
    assert slots[0].start_time.hour == 8
    assert slots[-1].end_time.hour == 18
    assert all(a.end_time == b.start_time for a, b in zip(slots, slots[1:]))


def test_seed_data_is_idempotent(engine, monkeypatch):
    monkeypatch.setattr(seed, "SessionLocal", sessionmaker(bind=engine))
    monkeypatch.setattr(settings, "seed_days", 7)
    monkeypatch.setattr(settings, "seed_demo_data", True)

    seed.seed_data()
    seed.seed_data()

    with sessionmaker(bind=engine)() as db:
        names = set(db.scalars(select(AppointmentType.name)).all())
        slot_days = {start.date() for start in db.scalars(select(Slot.start_time)).all()}
        patients = db.scalars(select(Patient)).all()

    assert names == {"Cleaning", "General Checkup", "Emergency"}
    # One Sunday in any seven-day run.
    assert len(slot_days) == 6
    assert all(day.weekday() != 6 for day in slot_days)
    assert len(patients) == 10
    assert all(patient.phone_number.startswith("(") for patient in patients)
