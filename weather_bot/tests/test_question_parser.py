from __future__ import annotations

from datetime import date

from weather_bot.question_parser import parse_question

LOCATIONS = ["London", "New York", "York"]
TODAY = date(2026, 11, 1)


def test_parses_exceed_phrasing() -> None:
    parsed = parse_question(
        "Will the max temperature in New York on Nov 10 exceed 80°F?", LOCATIONS, TODAY
    )
    assert parsed is not None
    assert parsed.location == "New York"
    assert parsed.threshold == 80.0
    assert parsed.settlement_date == date(2026, 11, 10)


def test_parses_degrees_phrasing() -> None:
    parsed = parse_question(
        "Will London's high reach 55 degrees F or higher on November 3rd?", LOCATIONS, TODAY
    )
    assert parsed is not None
    assert parsed.location == "London"
    assert parsed.threshold == 55.0
    assert parsed.settlement_date == date(2026, 11, 3)


def test_old_dates_roll_into_next_year() -> None:
    parsed = parse_question(
        "Will London's high temperature exceed 40°F on January 5?", LOCATIONS, date(2026, 12, 20)
    )
    assert parsed is not None
    assert parsed.settlement_date == date(2027, 1, 5)


def test_recent_past_date_is_kept() -> None:
    parsed = parse_question("Will London's high exceed 60°F on Oct 20?", LOCATIONS, TODAY)
    assert parsed is not None
    assert parsed.settlement_date == date(2026, 10, 20)


def test_unrelated_or_incomplete_questions_are_ignored() -> None:
    assert parse_question("Will the Knicks win on Nov 10?", LOCATIONS, TODAY) is None
    assert parse_question("Will Paris' high exceed 80°F on Nov 10?", LOCATIONS, TODAY) is None
    assert parse_question("Will London's high exceed 30°C on Nov 10?", LOCATIONS, TODAY) is None
    assert parse_question("Will London's high exceed 80°F this week?", LOCATIONS, TODAY) is None
    assert parse_question("", LOCATIONS, TODAY) is None
