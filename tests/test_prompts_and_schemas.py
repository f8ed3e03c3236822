from datetime import date

import pytest
from pydantic import ValidationError

from itinerary_stream.errors import (
    AuthInvalid,
    RateLimited,
    UpstreamError,
    UpstreamUnavailable,
    classify_status,
    error_from_code,
)
from itinerary_stream.prompts import BUFFERED_SYSTEM_PROMPT, STREAMING_SYSTEM_PROMPT, build_prompt
from itinerary_stream.schemas import DayPlan, Itinerary, ItineraryDraft, TripPreferences

from sample_data import make_day, make_document, make_preferences


def test_prompt_describes_preferences_and_schema():
    system, user = build_prompt(make_preferences(3), streaming=True)

    assert system == STREAMING_SYSTEM_PROMPT
    assert "Destination: Lisbon, Portugal" in user
    assert "Travel Dates: 2025-05-01 to 2025-05-03 (3 days)" in user
    assert "Interests: food, history" in user
    assert "Special Requirements: vegetarian meals" in user
    assert "Additional Information" not in user
    for key in ('"summary"', '"days"', '"activities"', '"meals"', '"packingList"', '"budgetBreakdown"'):
        assert key in user
    assert user.index('"summary"') < user.index('"days"')


def test_buffered_prompt_asks_for_closed_json():
    system, _ = build_prompt(make_preferences(), streaming=False)

    assert system == BUFFERED_SYSTEM_PROMPT
    assert "closing brackets and braces" in system


def test_preferences_reject_reversed_dates():
    with pytest.raises(ValidationError):
        TripPreferences(
            destination="Rome",
            startDate=date(2025, 6, 5),
            endDate=date(2025, 6, 1),
            groupSize="solo",
            budget="luxury",
            interests=["art"],
            pace="relaxed",
            accommodation="hotel",
        )


def test_preferences_drop_blank_interests():
    prefs = make_preferences()
    cleaned = TripPreferences.model_validate(
        {**prefs.model_dump(by_alias=True), "interests": [" food ", "", "art"]}
    )

    assert cleaned.interests == ["food", "art"]
    assert cleaned.duration_days == 3


def test_day_plan_accepts_loose_llm_values():
    payload = {**make_day(1), "estimatedCost": 85, "unexpected": "kept"}

    day = DayPlan.model_validate(payload)

    assert day.estimated_cost == "85"
    assert day.activities[0].link_type == "info"
    assert day.activities[1].tips is None


def test_draft_keeps_days_unique_and_sorted():
    draft = ItineraryDraft()

    assert draft.add_day(DayPlan.model_validate(make_day(3)))
    assert draft.add_day(DayPlan.model_validate(make_day(1)))
    assert not draft.add_day(DayPlan.model_validate({**make_day(3), "theme": "other"}))

    assert [d.day for d in draft.days] == [1, 3]
    assert draft.days[1].theme == make_day(3)["theme"]
    assert draft.to_itinerary().duration == 2


def test_status_classification():
    assert isinstance(classify_status(429), RateLimited)
    assert isinstance(classify_status(401), AuthInvalid)
    assert isinstance(classify_status(500), UpstreamUnavailable)
    error = classify_status(404, "Not Found")
    assert isinstance(error, UpstreamError)
    assert error.status == 404
    assert str(error) == "OpenAI API error: 404 - Not Found"


def test_error_codes_round_trip():
    assert isinstance(error_from_code("rate_limited", "slow down"), RateLimited)
    assert error_from_code("upstream_error", "x", status=502).status == 502
    assert error_from_code(None, "lost").code == "stream_read_failure"


def test_itinerary_tolerates_null_fields():
    doc = make_document(1)
    doc["totalBudget"] = None
    doc["days"][0]["meals"][0]["linkType"] = "reservation"
    doc["days"][0]["estimatedCost"] = None

    itinerary = Itinerary.model_validate(doc)

    assert itinerary.total_budget == ""
    assert itinerary.days[0].estimated_cost == ""
    assert itinerary.days[0].meals[0].link_type is None
