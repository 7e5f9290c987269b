import logging
from datetime import date, datetime, time, timedelta

from faker import Faker
from sqlalchemy import func, select

from .config import settings
from .db import SessionLocal
from .models import AppointmentType, Patient, Slot
from .services.verification import format_phone

logger = logging.getLogger(__name__)

APPOINTMENT_TYPES = [
    ("Cleaning", 60),
    ("General Checkup", 30),
    ("Emergency", 30),
]


def build_day_slots(day: date, minutes: int, open_hour: int, close_hour: int) -> list[Slot]:
    """Back-to-back slots covering business hours on ``day``."""
    slots = []
    current = datetime.combine(day, time(open_hour, 0))
    closing = datetime.combine(day, time(close_hour, 0))
    step = timedelta(minutes=minutes)
    while current + step <= closing:
        slots.append(Slot(start_time=current, end_time=current + step, is_available=True))
        current += step
    return slots


def seed_data() -> None:
    db = SessionLocal()
    try:
        if not db.scalar(select(func.count()).select_from(AppointmentType)):
            db.add_all(
                AppointmentType(name=name, duration_minutes=minutes)
                for name, minutes in APPOINTMENT_TYPES
            )

        if not db.scalar(select(func.count()).select_from(Slot)):
            today = datetime.now().date()
            slots = []
            for day_offset in range(settings.seed_days):
                day = today + timedelta(days=day_offset)
                # Closed on Sundays.
                if day.weekday() == 6:
                    continue
                slots.extend(
                    build_day_slots(
                        day,
                        settings.slot_minutes,
                        settings.business_open_hour,
                        settings.business_close_hour,
                    )
                )
            db.add_all(slots)
            logger.info("seeded_slots count=%s days=%s", len(slots), settings.seed_days)

        if settings.seed_demo_data and not db.scalar(select(func.count()).select_from(Patient)):
            fake = Faker()
            patients = [
                Patient(
                    full_name=fake.name(),
                    phone_number=format_phone(fake.numerify("##########")),
                    date_of_birth=fake.date_of_birth(minimum_age=18, maximum_age=80),
                    is_primary=True,
                )
                for _ in range(10)
            ]
            db.add_all(patients)
            logger.info("seeded_patients count=%s", len(patients))

        db.commit()
    finally:
        db.close()
