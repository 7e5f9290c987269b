"""Scheduling error hierarchy.

Every error carries the HTTP status the API layer answers with and a message
that is safe to show to the patient.
"""


class SchedulingError(ValueError):
    status_code = 400


class ValidationError(SchedulingError):
    status_code = 400


class PatientNotFound(SchedulingError):
    status_code = 404


class AppointmentNotFound(SchedulingError):
    status_code = 404


class SlotUnavailable(SchedulingError):
    status_code = 409

    def __init__(self, message: str = "That time is no longer available, please choose another.") -> None:
        super().__init__(message)


class NoAvailableSlots(SchedulingError):
    status_code = 409


class DuplicatePatient(SchedulingError):
    status_code = 409

    def __init__(
        self,
        message: str = (
            "A patient with this phone number and date of birth already exists. "
            "If this is you, please use the verification process instead."
        ),
    ) -> None:
        super().__init__(message)


class VerificationFailed(SchedulingError):
    status_code = 401

    def __init__(self, reason: str) -> None:
        super().__init__("Verification failed")
        self.reason = reason
