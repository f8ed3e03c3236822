from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter, field_validator, model_validator


class GroupSize(str, Enum):
    solo = "solo"
    couple = "couple"
    small_group = "small-group"
    large_group = "large-group"


class BudgetTier(str, Enum):
    budget = "budget"
    mid_range = "mid-range"
    luxury = "luxury"


class Pace(str, Enum):
    relaxed = "relaxed"
    moderate = "moderate"
    packed = "packed"


class Accommodation(str, Enum):
    hotel = "hotel"
    airbnb = "airbnb"
    hostel = "hostel"
    boutique = "boutique"
    mixed = "mixed"


class TripPreferences(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    destination: str = Field(..., min_length=1, description="Destination")
    start_date: date = Field(..., alias="startDate", description="First day of the trip")
    end_date: date = Field(..., alias="endDate", description="Last day of the trip")
    group_size: GroupSize = Field(..., alias="groupSize", description="Group size")
    budget: BudgetTier = Field(..., description="Budget tier: budget/mid-range/luxury")
    interests: list[str] = Field(..., min_length=1, description="Interest tags")
    pace: Pace = Field(..., description="Pace: relaxed/moderate/packed")
    accommodation: Accommodation = Field(..., description="Accommodation preference")
    special_needs: str = Field("", alias="specialNeeds", description="Special requirements")
    additional_info: str = Field("", alias="additionalInfo", description="Free-text notes")

    @field_validator("interests")
    @classmethod
    def _strip_interests(cls, value: list[str]) -> list[str]:
        cleaned = [v.strip() for v in value if v and v.strip()]
        if not cleaned:
            raise ValueError("at least one interest is required")
        return cleaned

    @model_validator(mode="after")
    def _check_dates(self) -> "TripPreferences":
        if self.end_date < self.start_date:
            raise ValueError("endDate must not be before startDate")
        return self

    @property
    def duration_days(self) -> int:
        return (self.end_date - self.start_date).days + 1


# LLM output is loosely typed: numbers show up where strings are expected,
# fields go missing or come back null, so the itinerary shapes accept all of it.
class _LenientModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


def _link_kind(value: Any) -> Any:
    return value if value in ("booking", "info") else None


# unknown link tags are dropped rather than failing the whole day
LinkKind = Annotated[Literal["booking", "info"] | None, BeforeValidator(_link_kind)]


class Activity(_LenientModel):
    name: str = ""
    time: str = ""
    duration: str = ""
    description: str = ""
    cost: str = ""
    location: str = ""
    tips: str | None = None
    link: str | None = None
    link_type: LinkKind = Field(None, alias="linkType")


class Meal(_LenientModel):
    meal: str = ""
    restaurant: str = ""
    cuisine: str = ""
    cost: str = ""
    description: str = ""
    link: str | None = None
    link_type: LinkKind = Field(None, alias="linkType")


class DayPlan(_LenientModel):
    day: int = Field(..., ge=1)
    date: str = ""
    theme: str = ""
    activities: list[Activity] = []
    meals: list[Meal] = []
    transportation: str = ""
    estimated_cost: str = Field("", alias="estimatedCost")


class Itinerary(_LenientModel):
    destination: str = ""
    duration: int | None = None
    total_budget: str = Field("", alias="totalBudget")
    summary: str = ""
    accommodations: list[Any] = []
    days: list[DayPlan] = []
    packing_list: list[str] = Field(default_factory=list, alias="packingList")
    local_tips: list[str] = Field(default_factory=list, alias="localTips")
    budget_breakdown: dict[str, Any] = Field(default_factory=dict, alias="budgetBreakdown")


class SummaryEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["summary"] = "summary"
    data: str

    @property
    def section_key(self) -> str:
        return "summary"


class DestinationEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["destination"] = "destination"
    data: str

    @property
    def section_key(self) -> str:
        return "destination"


class DayEvent(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Literal["day"] = "day"
    day_number: int = Field(..., alias="dayNumber")
    data: dict[str, Any]

    @property
    def section_key(self) -> str:
        return f"day-{self.day_number}"


class CompleteEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["complete"] = "complete"


class ErrorEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["error"] = "error"
    error: str
    code: str | None = None


SectionEvent = Annotated[
    Union[SummaryEvent, DestinationEvent, DayEvent, CompleteEvent, ErrorEvent],
    Field(discriminator="type"),
]

section_event_adapter: TypeAdapter[SectionEvent] = TypeAdapter(SectionEvent)


class ItineraryDraft(BaseModel):
    destination: str | None = None
    summary: str | None = None
    days: list[DayPlan] = []
    is_complete: bool = False
    error: str | None = None
    progress: str = "Initializing..."
    document: dict[str, Any] | None = None

    def has_day(self, day_number: int) -> bool:
        return any(d.day == day_number for d in self.days)

    def add_day(self, day: DayPlan) -> bool:
        if self.has_day(day.day):
            return False
        self.days = sorted([*self.days, day], key=lambda d: d.day)
        return True

    def to_itinerary(self) -> Itinerary:
        if self.document is not None:
            return Itinerary.model_validate(self.document)
        return Itinerary(
            destination=self.destination or "",
            summary=self.summary or "",
            duration=len(self.days) or None,
            days=list(self.days),
        )


class GenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    travel_data: TripPreferences = Field(..., alias="travelData")


class GenerateResponse(BaseModel):
    itinerary: dict[str, Any]
