from __future__ import annotations

from itinerary_stream.schemas import TripPreferences


_SYSTEM_BASE = (
    "You are an expert travel planner with extensive knowledge of destinations worldwide. "
    "Create detailed, practical, and budget-conscious travel itineraries. "
    "CRITICAL: Always respond with complete, valid JSON format. "
)

BUFFERED_SYSTEM_PROMPT = _SYSTEM_BASE + (
    "Stay within token limits by being concise if needed, but ensure the JSON structure "
    "is always complete with proper closing brackets and braces."
)

STREAMING_SYSTEM_PROMPT = _SYSTEM_BASE + (
    "Generate each day sequentially and ensure the JSON structure is always complete."
)

# Key order matters: destination and summary ahead of the days, days in
# order, so the streaming extractor can hand sections out while the rest is
# generated.
ITINERARY_SCHEMA = """{
  "destination": "destination name",
  "duration": number of days,
  "totalBudget": "estimated total budget range",
  "summary": "brief overview of the trip",
  "accommodations": [
    {
      "name": "accommodation name",
      "type": "hotel/airbnb/hostel/boutique",
      "pricePerNight": "estimated cost",
      "location": "neighbourhood",
      "link": "booking url (optional)"
    }
  ],
  "days": [
    {
      "day": 1,
      "date": "formatted date",
      "theme": "day theme",
      "activities": [
        {
          "name": "activity name",
          "time": "start time",
          "duration": "duration",
          "description": "detailed description",
          "cost": "estimated cost",
          "location": "specific location",
          "tips": "local tips",
          "link": "url (optional)",
          "linkType": "booking or info (optional)"
        }
      ],
      "meals": [
        {
          "meal": "breakfast/lunch/dinner",
          "restaurant": "restaurant name",
          "cuisine": "cuisine type",
          "cost": "estimated cost",
          "description": "brief description",
          "link": "url (optional)"
        }
      ],
      "transportation": "daily transport recommendations",
      "estimatedCost": "total daily cost"
    }
  ],
  "packingList": ["essential items to pack"],
  "localTips": ["important local information"],
  "budgetBreakdown": {
    "accommodation": "cost range",
    "food": "cost range",
    "activities": "cost range",
    "transportation": "cost range"
  }
}"""


def build_user_prompt(prefs: TripPreferences) -> str:
    lines = [
        "Create a detailed travel itinerary based on the following preferences:",
        "",
        f"Destination: {prefs.destination}",
        f"Travel Dates: {prefs.start_date.isoformat()} to {prefs.end_date.isoformat()} "
        f"({prefs.duration_days} days)",
        f"Group Size: {prefs.group_size.value}",
        f"Budget Level: {prefs.budget.value}",
        f"Interests: {', '.join(prefs.interests)}",
        f"Travel Style: {prefs.pace.value}",
        f"Accommodation: {prefs.accommodation.value}",
    ]
    if prefs.special_needs.strip():
        lines.append(f"Special Requirements: {prefs.special_needs.strip()}")
    if prefs.additional_info.strip():
        lines.append(f"Additional Information: {prefs.additional_info.strip()}")

    lines += [
        "",
        "Please create a comprehensive day-by-day itinerary that includes:",
        "1. Daily activities with specific times and durations",
        "2. Restaurant recommendations for breakfast, lunch, and dinner",
        "3. Estimated costs for each activity and meal",
        "4. Transportation suggestions between locations",
        "5. Cultural insights and local tips",
        "6. Weather considerations",
        "7. Budget breakdown per day",
        "",
        "Format the response as a JSON object with the following structure:",
        ITINERARY_SCHEMA,
        "",
        f"The \"days\" array must contain exactly {prefs.duration_days} entries numbered from 1. "
        "Make sure the itinerary is realistic, well-researched, and tailored to the specified "
        "budget and interests.",
    ]
    return "\n".join(lines)


def build_prompt(prefs: TripPreferences, streaming: bool = False) -> tuple[str, str]:
    """Return the (system instruction, user prompt) pair for one generation."""
    system_prompt = STREAMING_SYSTEM_PROMPT if streaming else BUFFERED_SYSTEM_PROMPT
    return system_prompt, build_user_prompt(prefs)
