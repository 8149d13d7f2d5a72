"""Parse weather threshold market questions.

Handles phrasings such as:

* "Will the max temperature in New York on Nov 10 exceed 80°F?"
* "Will London's high reach 75 degrees F or higher on October 18?"
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable

_THRESHOLD_RE = re.compile(r"(-?\d+(?:\.\d+)?)\s*(?:°\s*f\b|º\s*f\b|degrees?\s*f(?:ahrenheit)?\b|f\b)", re.IGNORECASE)

_MONTHS = {
    "jan": 1, "january": 1,
    "feb": 2, "february": 2,
    "mar": 3, "march": 3,
    "apr": 4, "april": 4,
    "may": 5,
    "jun": 6, "june": 6,
    "jul": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}

_DATE_RE = re.compile(
    r"\b(" + "|".join(sorted(_MONTHS, key=len, reverse=True)) + r")\.?\s+(\d{1,2})(?:st|nd|rd|th)?\b",
    re.IGNORECASE,
)

_WEATHER_HINT_RE = re.compile(r"\b(temp|temperature|high|max|degrees?|°)", re.IGNORECASE)

# Questions dated further back than this are taken to mean next year.
_PAST_DATE_GRACE = timedelta(days=31)


@dataclass(frozen=True)
class ParsedQuestion:
    location: str
    threshold: float
    settlement_date: date


def _find_location(question: str, locations: Iterable[str]) -> str | None:
    lowered = question.lower()
    best: str | None = None
    for name in locations:
        if name.lower() in lowered and (best is None or len(name) > len(best)):
            best = name
    return best


def _infer_date(month: int, day: int, today: date) -> date | None:
    try:
        candidate = date(today.year, month, day)
    except ValueError:
        return None
    if candidate < today - _PAST_DATE_GRACE:
        try:
            candidate = date(today.year + 1, month, day)
        except ValueError:
            return None
    return candidate


def parse_question(question: str, locations: Iterable[str], today: date) -> ParsedQuestion | None:
    """Return the location, threshold and date a question refers to, or None."""
    if not question or not _WEATHER_HINT_RE.search(question):
        return None

    location = _find_location(question, locations)
    if location is None:
        return None

    threshold_match = _THRESHOLD_RE.search(question)
    if threshold_match is None:
        return None

    date_match = _DATE_RE.search(question)
    if date_match is None:
        return None
    month = _MONTHS[date_match.group(1).lower()]
    settlement = _infer_date(month, int(date_match.group(2)), today)
    if settlement is None:
        return None

    return ParsedQuestion(
        location=location,
        threshold=float(threshold_match.group(1)),
        settlement_date=settlement,
    )
