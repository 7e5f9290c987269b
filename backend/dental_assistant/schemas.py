from datetime import date, datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant"]
AppointmentStatus = Literal["scheduled", "cancelled", "completed"]
Relationship = Literal["spouse", "child", "parent", "sibling", "other"]


class FormName(str, Enum):
    REGISTRATION = "registration"
    SCHEDULER = "scheduler"
    MANAGER = "manager"
    FAMILY_REGISTRATION = "family-registration"
    FAMILY_SCHEDULER = "family-scheduler"


class UIAction(BaseModel):
    form: Optional[FormName] = None
    args: dict[str, Any] = {}


class RouteContext(BaseModel):
    """Caller-held conversation state, passed in with every message."""

    authenticated: bool = False
    verified_patient_id: Optional[str] = None
    verification_token: Optional[str] = None
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    has_appointments: bool = False
    has_family_members: bool = False
    is_rescheduling: bool = False

    @property
    def verified(self) -> bool:
        return self.verified_patient_id is not None

    @property
    def registered(self) -> bool:
        return self.patient_id is not None or self.verified


class ChatMessage(BaseModel):
    role: Role
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatMessage] = []
    message: str
    context: RouteContext = Field(default_factory=RouteContext)


class ChatResponse(BaseModel):
    messages: list[ChatMessage]
    ui_action: UIAction
    intent: str
    verified_patient_id: Optional[str] = None
    verification_token: Optional[str] = None


class SlotOut(BaseModel):
    id: str
    start_time: datetime
    end_time: datetime
    is_available: bool

    model_config = ConfigDict(from_attributes=True)


class ConsecutiveSlotsOut(BaseModel):
    slots: list[SlotOut] = []
    valid_start_slots: list[SlotOut] = []


class AppointmentTypeOut(BaseModel):
    id: str
    name: str
    duration_minutes: int
    is_emergency: bool

    model_config = ConfigDict(from_attributes=True)


class AppointmentCreate(BaseModel):
    patient_id: str
    slot_id: str
    appointment_type_id: str
    emergency_description: Optional[str] = None


class AppointmentReschedule(BaseModel):
    slot_id: str


class AppointmentOut(BaseModel):
    id: str
    patient_id: str
    appointment_type_id: str
    start_time: datetime
    end_time: datetime
    emergency_description: Optional[str] = None
    family_group_id: Optional[str] = None
    status: AppointmentStatus
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class FamilyBookingCreate(BaseModel):
    appointments: list[AppointmentCreate] = Field(min_length=1)


class PatientCreate(BaseModel):
    full_name: str
    phone_number: str
    date_of_birth: date
    insurance_name: Optional[str] = None


class PatientOut(BaseModel):
    id: str
    user_id: Optional[str] = None
    full_name: str
    phone_number: Optional[str] = None
    date_of_birth: Optional[date] = None
    insurance_name: Optional[str] = None
    is_primary: bool

    model_config = ConfigDict(from_attributes=True)


class PatientVerifyRequest(BaseModel):
    full_name: str
    phone_number: str
    date_of_birth: date


class FamilyMemberCreate(BaseModel):
    full_name: str
    relationship: Relationship
    date_of_birth: Optional[date] = None


class FamilyMemberOut(PatientOut):
    relationship: str
