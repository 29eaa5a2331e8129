"""Pydantic v2 schemas for API request/response validation and JSON column shapes."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from fixera_platform.domain.enums import (
    AvailabilityPreference,
    BookingStatus,
    BookingType,
    DurationUnit,
    GatewayCallbackStatus,
    PricingType,
    QuestionType,
    TimeMode,
)


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------


class DaySchedule(BaseModel):
    """One weekday of a weekly pattern. Times are "HH:MM"; "24:00" means end of day."""

    available: bool = False
    start_time: Optional[str] = None
    end_time: Optional[str] = None


class WeeklyAvailability(BaseModel):
    monday: DaySchedule = Field(default_factory=DaySchedule)
    tuesday: DaySchedule = Field(default_factory=DaySchedule)
    wednesday: DaySchedule = Field(default_factory=DaySchedule)
    thursday: DaySchedule = Field(default_factory=DaySchedule)
    friday: DaySchedule = Field(default_factory=DaySchedule)
    saturday: DaySchedule = Field(default_factory=DaySchedule)
    sunday: DaySchedule = Field(default_factory=DaySchedule)


class BlockedRange(BaseModel):
    """Manually blocked closed interval of absolute time."""

    start: datetime
    end: datetime
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _end_not_before_start(self) -> "BlockedRange":
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self


class BlockedDate(BaseModel):
    """A whole civil day blocked in the resource's own time zone."""

    day: date
    reason: Optional[str] = None
    is_holiday: bool = False


class AvailabilityUpdate(BaseModel):
    """Partial update of the caller's own availability profile."""

    timezone: Optional[str] = None
    availability: Optional[WeeklyAvailability] = None
    availability_preference: Optional[AvailabilityPreference] = None
    blocked_ranges: Optional[list[BlockedRange]] = None
    blocked_dates: Optional[list[BlockedDate]] = None


class AvailabilityProfileResponse(BaseModel):
    user_id: str
    timezone: str
    availability_preference: AvailabilityPreference
    availability: Optional[dict[str, DaySchedule]] = None
    blocked_ranges: list[BlockedRange] = []
    blocked_dates: list[BlockedDate] = []


class EffectiveAvailabilityResponse(BaseModel):
    """Resolved pattern, every manual block that applies (own and company) and booking blocks."""

    user_id: str
    timezone: str
    source: Literal["personal", "company", "default"]
    availability: dict[str, DaySchedule]
    blocked_ranges: list[BlockedRange]
    booking_blocked_ranges: list[BlockedRange] = []


class TeamAvailabilityResponse(BaseModel):
    """Display view: when the project's team cannot field its minimum resources."""

    project_id: str
    timezone: str
    min_resources: int
    blocked_ranges: list[BlockedRange]
    blocked_dates: list[date]


# ---------------------------------------------------------------------------
# Projects / subprojects
# ---------------------------------------------------------------------------


class Duration(BaseModel):
    value: float = Field(gt=0)
    unit: DurationUnit

    def to_timedelta(self) -> timedelta:
        if self.unit == DurationUnit.DAYS:
            return timedelta(days=self.value)
        return timedelta(hours=self.value)


class PriceRange(BaseModel):
    min: Decimal = Field(ge=0)
    max: Decimal = Field(ge=0)


class Pricing(BaseModel):
    type: PricingType
    amount: Optional[Decimal] = Field(default=None, ge=0)
    price_range: Optional[PriceRange] = None
    min_project_value: Optional[Decimal] = Field(default=None, ge=0)


class TextInput(BaseModel):
    field_type: Literal["text"] = "text"
    field_name: str
    value: str


class NumberInput(BaseModel):
    field_type: Literal["number"] = "number"
    field_name: str
    value: float
    unit: Optional[str] = None


class DropdownInput(BaseModel):
    field_type: Literal["dropdown"] = "dropdown"
    field_name: str
    value: str
    options: list[str] = []


class RangeValue(BaseModel):
    min: float
    max: float

    @model_validator(mode="after")
    def _ordered(self) -> "RangeValue":
        if self.max < self.min:
            raise ValueError("range max must be >= min")
        return self


class RangeInput(BaseModel):
    field_type: Literal["range"] = "range"
    field_name: str
    value: RangeValue
    unit: Optional[str] = None


ProfessionalInput = Annotated[
    Union[TextInput, NumberInput, DropdownInput, RangeInput],
    Field(discriminator="field_type"),
]


class Subproject(BaseModel):
    """A purchasable package inside a project listing."""

    name: str = Field(min_length=1)
    description: Optional[str] = None
    pricing: Pricing
    execution_duration: Duration
    buffer_duration: Optional[Duration] = None
    intake_duration: Optional[Duration] = None
    warranty_years: int = Field(default=0, ge=0)
    included_items: list[str] = []
    professional_inputs: list[ProfessionalInput] = []


class PostBookingQuestion(BaseModel):
    id: str = Field(min_length=1)
    question: str = Field(min_length=1)
    type: QuestionType = QuestionType.TEXT
    options: list[str] = []
    is_required: bool = False

    @model_validator(mode="after")
    def _choices_have_options(self) -> "PostBookingQuestion":
        if self.type == QuestionType.MULTIPLE_CHOICE and not self.options:
            raise ValueError("multiple_choice questions need options")
        return self


class ProjectCreate(BaseModel):
    """Schema for a professional creating a project listing."""

    title: str = Field(min_length=1)
    category: Optional[str] = None
    service: Optional[str] = None
    description: Optional[str] = None
    time_mode: TimeMode = TimeMode.DAYS
    resource_ids: list[str] = []
    min_resources: Optional[int] = Field(default=None, ge=1)
    min_overlap_percentage: Optional[float] = Field(default=None, gt=0, le=100)
    preparation_duration: Optional[Duration] = None
    subprojects: list[Subproject] = Field(min_length=1)
    post_booking_questions: list[PostBookingQuestion] = []

    @field_validator("post_booking_questions")
    @classmethod
    def _unique_question_ids(cls, questions: list[PostBookingQuestion]) -> list[PostBookingQuestion]:
        ids = [q.id for q in questions]
        if len(ids) != len(set(ids)):
            raise ValueError("question ids must be unique")
        return questions


class ProjectResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    professional_id: str
    title: str
    category: Optional[str] = None
    service: Optional[str] = None
    description: Optional[str] = None
    time_mode: TimeMode
    resource_ids: list[str]
    min_resources: int
    min_overlap_percentage: float
    preparation_duration: Optional[dict[str, Any]] = None
    subprojects: list[dict[str, Any]]
    post_booking_questions: list[dict[str, Any]]
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


class ProjectedLabel(BaseModel):
    professional_zone: str
    viewer_zone: str
    professional_label: str
    viewer_label: str


class ProposalWindowResponse(BaseModel):
    start: datetime
    end: datetime
    execution_end: datetime
    resource_ids: list[str] = []
    label: Optional[ProjectedLabel] = None


class ScheduleProposalResponse(BaseModel):
    """Proposals for one subproject. ``available`` is false when the horizon is exhausted."""

    project_id: str
    subproject_index: int
    mode: TimeMode
    available: bool
    earliest_bookable_date: Optional[datetime] = None
    earliest_proposal: Optional[ProposalWindowResponse] = None
    shortest_throughput_proposal: Optional[ProposalWindowResponse] = None
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


class Budget(BaseModel):
    min: Optional[Decimal] = Field(default=None, ge=0)
    max: Optional[Decimal] = Field(default=None, ge=0)
    currency: str = "EUR"


class RFQData(BaseModel):
    """Customer's request for quote."""

    service_type: Optional[str] = None
    description: str = Field(min_length=1)
    preferred_start_date: Optional[datetime] = None
    urgency: Literal["low", "medium", "high", "urgent"] = "medium"
    budget: Optional[Budget] = None
    answers: list[dict[str, Any]] = []


class BookingCreate(BaseModel):
    booking_type: BookingType
    professional_id: Optional[str] = None
    project_id: Optional[str] = None
    subproject_index: Optional[int] = Field(default=None, ge=0)
    rfq_data: RFQData

    @model_validator(mode="after")
    def _target_present(self) -> "BookingCreate":
        if self.booking_type == BookingType.PROJECT:
            if not self.project_id or self.subproject_index is None:
                raise ValueError("project bookings need project_id and subproject_index")
        elif not self.professional_id:
            raise ValueError("professional bookings need professional_id")
        return self


class QuoteLineItem(BaseModel):
    label: str
    amount: Decimal


class QuoteSubmit(BaseModel):
    """Amount/currency are checked by the quote service so errors name the field."""

    amount: Decimal
    currency: str
    description: str = ""
    breakdown: Optional[list[QuoteLineItem]] = None


class QuoteRespond(BaseModel):
    action: Literal["accept", "reject"]
    reason: Optional[str] = None


class ReopenRequest(BaseModel):
    reason: Optional[str] = None


class StatusUpdate(BaseModel):
    status: BookingStatus
    reason: Optional[str] = None
    refund_amount: Optional[Decimal] = None


class ScheduleCommit(BaseModel):
    start: datetime


class PostBookingAnswer(BaseModel):
    question_id: str
    answer: Union[str, list[str]]


class PostBookingAnswersSubmit(BaseModel):
    answers: list[PostBookingAnswer]


class QuoteView(BaseModel):
    amount: Decimal
    currency: str
    description: Optional[str] = None
    breakdown: Optional[list[dict[str, Any]]] = None
    submitted_at: Optional[datetime] = None


class BookingResponse(BaseModel):
    """Booking as seen by one of its parties."""

    id: str
    booking_type: BookingType
    status: BookingStatus
    customer_id: str
    professional_id: str
    project_id: Optional[str] = None
    subproject_index: Optional[int] = None
    rfq_data: dict[str, Any]
    requested_start: Optional[datetime] = None
    quote: Optional[QuoteView] = None
    scheduled_start_date: Optional[datetime] = None
    scheduled_end_date: Optional[datetime] = None
    scheduled_execution_end: Optional[datetime] = None
    assigned_resource_ids: list[str] = []
    post_booking_data: Optional[dict[str, Any]] = None
    payment_status: Optional[str] = None
    cancel_reason: Optional[str] = None
    dispute_reason: Optional[str] = None
    allowed_actions: list[str] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BookingEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_type: str
    actor: str
    actor_id: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentWebhook(BaseModel):
    """Gateway callback after the customer completes (or fails) authorization."""

    gateway_payment_id: str
    status: GatewayCallbackStatus
    failure_reason: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: str = Field(min_length=1)


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    status: str
    amount: Decimal
    currency: str
    vat_rate: float
    vat_amount: Decimal
    total_with_vat: Decimal
    platform_commission: Decimal
    net_amount: Decimal
    refunded_amount: Decimal
    refunds: list[dict[str, Any]] = []
    gateway_payment_id: Optional[str] = None
    client_secret: Optional[str] = None
    failure_reason: Optional[str] = None
    authorized_at: Optional[datetime] = None
    authorization_expires_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str
    service: str
