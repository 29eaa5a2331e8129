"""Validation rules carried by the request schemas."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from fixera_platform.domain.schemas import (
    BlockedRange,
    BookingCreate,
    Duration,
    PostBookingQuestion,
    ProjectCreate,
    Subproject,
)

SUBPROJECT = {
    "name": "Basic",
    "pricing": {"type": "rfq"},
    "execution_duration": {"value": 3, "unit": "days"},
}


def test_duration_to_timedelta():
    assert Duration(value=1.5, unit="hours").to_timedelta() == timedelta(minutes=90)
    assert Duration(value=2, unit="days").to_timedelta() == timedelta(days=2)


def test_duration_must_be_positive():
    with pytest.raises(ValidationError):
        Duration(value=0, unit="hours")


def test_project_booking_needs_project_and_subproject():
    with pytest.raises(ValidationError):
        BookingCreate(booking_type="project", project_id="p1", rfq_data={"description": "x"})


def test_professional_booking_needs_professional():
    with pytest.raises(ValidationError):
        BookingCreate(booking_type="professional", rfq_data={"description": "x"})


def test_rfq_needs_description():
    with pytest.raises(ValidationError):
        BookingCreate(booking_type="professional", professional_id="u1", rfq_data={"description": ""})


def test_blocked_range_order():
    start = datetime(2025, 3, 5, 12, tzinfo=timezone.utc)
    with pytest.raises(ValidationError):
        BlockedRange(start=start, end=start - timedelta(hours=1))
    assert BlockedRange(start=start, end=start).end == start


def test_multiple_choice_needs_options():
    with pytest.raises(ValidationError):
        PostBookingQuestion(id="q", question="Which?", type="multiple_choice")


def test_question_ids_are_unique():
    question = {"id": "q1", "question": "Parking?"}
    with pytest.raises(ValidationError):
        ProjectCreate(title="Kitchen", subprojects=[SUBPROJECT], post_booking_questions=[question, question])


def test_project_needs_a_subproject():
    with pytest.raises(ValidationError):
        ProjectCreate(title="Kitchen", subprojects=[])


def test_overlap_percentage_bounds():
    with pytest.raises(ValidationError):
        ProjectCreate(title="Kitchen", subprojects=[SUBPROJECT], min_overlap_percentage=120)


def test_professional_inputs_are_discriminated():
    subproject = Subproject.model_validate(
        {
            **SUBPROJECT,
            "professional_inputs": [
                {"field_type": "range", "field_name": "Surface", "value": {"min": 10, "max": 20}, "unit": "m2"},
                {"field_type": "dropdown", "field_name": "Finish", "value": "matte", "options": ["matte", "gloss"]},
            ],
        }
    )
    assert subproject.professional_inputs[0].value.max == 20
    assert subproject.professional_inputs[1].field_type == "dropdown"

    with pytest.raises(ValidationError):
        Subproject.model_validate(
            {
                **SUBPROJECT,
                "professional_inputs": [
                    {"field_type": "range", "field_name": "Surface", "value": {"min": 20, "max": 10}}
                ],
            }
        )
