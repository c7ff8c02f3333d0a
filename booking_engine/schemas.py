import datetime as dt
from datetime import date, datetime, time

from pydantic import BaseModel, Field, field_validator, model_validator

from booking_engine.core import config
from booking_engine.models.appointment import APPOINTMENT_STATUSES
from booking_engine.models.availability import WEEKDAYS

MAX_NOTES_LENGTH = 1000
MAX_PURPOSE_LENGTH = 500
MAX_REASON_LENGTH = 500


def _normalize_optional_text(value: str | None, max_length: int, label: str) -> str | None:
    if value is None:
        return None

    normalized = value.strip()
    if not normalized:
        return None

    if len(normalized) > max_length:
        raise ValueError(f'{label} must be {max_length} characters or fewer.')

    return normalized


def _normalize_status(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in APPOINTMENT_STATUSES:
        raise ValueError('Invalid appointment status.')
    return normalized


class BookingDetails(BaseModel):
    service_id: int | None = None
    staff_id: int | None = None
    purpose: str | None = None
    notes: str | None = None

    @field_validator('purpose')
    @classmethod
    def validate_purpose(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value, MAX_PURPOSE_LENGTH, 'Purpose')

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value, MAX_NOTES_LENGTH, 'Notes')


class CreateAppointmentRequest(BookingDetails):
    date: date
    start_time: time
    end_time: time

    @model_validator(mode='after')
    def validate_time_range(self):
        if self.end_time <= self.start_time:
            raise ValueError('End time must be after start time.')
        return self


class AppointmentResponse(BaseModel):
    id: int
    user_id: int
    staff_id: int | None = None
    service_id: int | None = None
    date: date
    start_time: time
    end_time: time
    status: str
    purpose: str | None = None
    notes: str | None = None
    staff_notes: str | None = None
    status_reason: str | None = None
    completed_at: datetime | None = None
    completion_notes: str | None = None
    completed_by: int | None = None

    class Config:
        from_attributes = True


class AvailabilityDecision(BaseModel):
    allowed: bool
    reason: str | None = None
    message: str | None = None


class AdmissionResult(BaseModel):
    admitted: bool
    appointment: AppointmentResponse | None = None
    reason: str | None = None
    message: str | None = None


class DailyUsage(BaseModel):
    date: date
    limit: int | None
    used: int
    remaining: int | None
    has_reached_limit: bool
    bookings: list[AppointmentResponse] = Field(default_factory=list)
    message: str | None = None


class TransitionRequest(BaseModel):
    target_status: str
    reason: str | None = None

    @field_validator('target_status')
    @classmethod
    def validate_target_status(cls, value: str) -> str:
        return _normalize_status(value)

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value, MAX_REASON_LENGTH, 'Reason')


class CompleteAppointmentRequest(BaseModel):
    completion_notes: str | None = None

    @field_validator('completion_notes')
    @classmethod
    def validate_completion_notes(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value, MAX_NOTES_LENGTH, 'Completion notes')


class TransitionResult(BaseModel):
    ok: bool
    appointment: AppointmentResponse | None = None
    reason: str | None = None
    message: str | None = None


class BatchOptions(BaseModel):
    notify: bool = False
    include_reason: bool = False


class BatchTransitionRequest(TransitionRequest):
    appointment_ids: list[int]
    send_notification: bool = False
    include_reason: bool = False

    @field_validator('appointment_ids')
    @classmethod
    def validate_appointment_ids(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError('At least one appointment ID is required.')
        return value

    def options(self) -> BatchOptions:
        return BatchOptions(notify=self.send_notification, include_reason=self.include_reason)


class BatchFailure(BaseModel):
    appointment_id: int
    reason: str
    message: str


class BatchResult(BaseModel):
    target_status: str
    succeeded: list[int] = Field(default_factory=list)
    failed: list[BatchFailure] = Field(default_factory=list)


class StatusEventResponse(BaseModel):
    from_status: str | None = None
    to_status: str
    actor_id: int | None = None
    reason: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class PolicySnapshot(BaseModel):
    """Immutable view of the capacity policy handed to the admission controller."""

    policy_id: int | None = None
    daily_limit_per_user: int = config.DEFAULT_DAILY_LIMIT
    is_active: bool = True

    class Config:
        frozen = True


class PolicyResponse(BaseModel):
    id: int
    daily_limit_per_user: int
    is_active: bool
    description: str | None = None
    last_updated_by: int | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class UpdatePolicyRequest(BaseModel):
    daily_limit_per_user: int
    is_active: bool = True
    description: str | None = None

    @field_validator('description')
    @classmethod
    def validate_description(cls, value: str | None) -> str | None:
        return _normalize_optional_text(value, MAX_REASON_LENGTH, 'Description')


class PolicyUpdateResult(BaseModel):
    old_limit: int
    policy: PolicyResponse


class PolicyChangeResponse(BaseModel):
    id: int
    policy_id: int
    old_limit: int
    new_limit: int
    is_active: bool
    description: str | None = None
    updated_by: int | None = None
    changed_at: datetime

    class Config:
        from_attributes = True


class CreateSlotCapacityRequest(BaseModel):
    day_of_week: str | None = None
    start_time: time
    end_time: time
    max_appointments_per_slot: int = Field(ge=1, le=20)
    description: str | None = None

    @field_validator('day_of_week')
    @classmethod
    def validate_day_of_week(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in WEEKDAYS:
            raise ValueError('Invalid day of week.')
        return normalized

    @model_validator(mode='after')
    def validate_time_range(self):
        if self.end_time <= self.start_time:
            raise ValueError('End time must be after start time.')
        return self


class UpdateSlotCapacityRequest(CreateSlotCapacityRequest):
    is_active: bool = True


class SlotCapacityResponse(BaseModel):
    id: int
    day_of_week: str | None = None
    start_time: time
    end_time: time
    max_appointments_per_slot: int
    is_active: bool
    description: str | None = None

    class Config:
        from_attributes = True


class CreateBlackoutRequest(BaseModel):
    date: dt.date | None = None
    reason: str
    start_time: time | None = None
    end_time: time | None = None
    is_recurring: bool = False
    recurring_days: list[str] | None = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Reason is required.')
        if len(normalized) > 255:
            raise ValueError('Reason must be 255 characters or fewer.')
        return normalized

    @field_validator('recurring_days')
    @classmethod
    def validate_recurring_days(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        normalized = [day.strip().lower() for day in value]
        if any(day not in WEEKDAYS for day in normalized):
            raise ValueError('Invalid recurring day.')
        return normalized

    @model_validator(mode='after')
    def validate_shape(self):
        if self.is_recurring and not self.recurring_days:
            raise ValueError('Recurring blackouts need at least one recurring day.')
        if not self.is_recurring and self.date is None:
            raise ValueError('A date is required for non-recurring blackouts.')
        if self.start_time and self.end_time and self.end_time <= self.start_time:
            raise ValueError('End time must be after start time.')
        return self


class UpdateBlackoutRequest(CreateBlackoutRequest):
    is_active: bool = True


class BlackoutResponse(BaseModel):
    id: int
    date: dt.date | None = None
    reason: str | None = None
    start_time: time | None = None
    end_time: time | None = None
    is_recurring: bool
    recurring_days: list[str] | None = None
    is_active: bool

    class Config:
        from_attributes = True


class BlackedOutDay(BaseModel):
    date: date
    reason: str | None = None
    start_time: time | None = None
    end_time: time | None = None
    all_day: bool
