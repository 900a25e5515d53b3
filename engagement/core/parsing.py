from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date

_NAMED_TIMES: dict[str, tuple[int, int]] = {
    "morning": (8, 0),
    "am": (8, 0),
    "afternoon": (14, 0),
    "evening": (18, 0),
    "night": (20, 0),
    "noon": (12, 0),
    "midnight": (0, 0),
}

_MONTHS: dict[str, int] = {
    "jan": 1,
    "january": 1,
    "feb": 2,
    "february": 2,
    "mar": 3,
    "march": 3,
    "apr": 4,
    "april": 4,
    "may": 5,
    "jun": 6,
    "june": 6,
    "jul": 7,
    "july": 7,
    "aug": 8,
    "august": 8,
    "sep": 9,
    "sept": 9,
    "september": 9,
    "oct": 10,
    "october": 10,
    "nov": 11,
    "november": 11,
    "dec": 12,
    "december": 12,
}

_TIME_WITH_MINUTES_AND_PERIOD = re.compile(r"^(\d{1,2}):(\d{2})\s*(am|pm)$")
_TIME_WITH_PERIOD = re.compile(r"^(\d{1,2})\s*(am|pm)$")
_MILITARY_TIME = re.compile(r"^(\d{3,4})$")
_TIME_WITH_MINUTES = re.compile(r"^(\d{1,2}):(\d{2})$")
_BARE_HOUR = re.compile(r"^(\d{1,2})$")
_ORDINAL_SUFFIX = re.compile(r"(?<=\d)(st|nd|rd|th)\b")
_MONTH_NAME_DAY = re.compile(r"^([a-z]+)\.?\s+(\d{1,2})$")
_NUMERIC_MONTH_DAY = re.compile(r"^(\d{1,2})[/-](\d{1,2})$")


@dataclass(slots=True, frozen=True)
class ParsedTime:
    time24: str
    display: str


def normalize_phone(raw: str | None) -> str | None:
    """Normalize a US phone number to E.164; other ``+`` prefixed numbers pass through."""
    if not raw:
        return None
    stripped = raw.strip()
    digits = re.sub(r"\D", "", stripped)
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if stripped.startswith("+") and 8 <= len(digits) <= 15:
        return f"+{digits}"
    return None


def parse_time(raw: str | None) -> ParsedTime | None:
    """Parse replies like "8am", "9:30 pm", "830", "morning" into a 24h time.

    Times without a period use the check-in heuristic: 1-6 are evening hours,
    7-11 are morning hours and 12 is noon.
    """
    if not raw:
        return None
    text = re.sub(r"\s+", " ", raw.strip().lower())
    if not text:
        return None

    named = _NAMED_TIMES.get(text)
    if named is not None:
        return _build_parsed_time(*named)

    match = _TIME_WITH_MINUTES_AND_PERIOD.match(text)
    if match:
        hour = _to_24_hour(int(match.group(1)), match.group(3))
        return _build_parsed_time(hour, int(match.group(2)))

    match = _TIME_WITH_PERIOD.match(text)
    if match:
        hour_12 = int(match.group(1))
        if not 1 <= hour_12 <= 12:
            return None
        return _build_parsed_time(_to_24_hour(hour_12, match.group(2)), 0)

    match = _MILITARY_TIME.match(text)
    if match:
        padded = match.group(1).zfill(4)
        return _build_parsed_time(int(padded[:2]), int(padded[2:]))

    match = _TIME_WITH_MINUTES.match(text)
    if match:
        return _build_parsed_time(_guess_period(int(match.group(1))), int(match.group(2)))

    match = _BARE_HOUR.match(text)
    if match:
        hour = int(match.group(1))
        if 1 <= hour <= 23:
            return _build_parsed_time(_guess_period(hour), 0)

    return None


def format_time_12(time24: str | None) -> str:
    if not time24:
        return "your usual time"
    hour_text, _, minute_text = time24.partition(":")
    hour = int(hour_text)
    minute = int(minute_text[:2] or 0)
    display_hour = 12 if hour == 0 else hour - 12 if hour > 12 else hour
    period = "PM" if hour >= 12 else "AM"
    return f"{display_hour}:{minute:02d} {period}"


def format_display_date(value: date | None) -> str:
    if value is None:
        return ""
    return f"{value.strftime('%B')} {value.day}"


def parse_fuzzy_date(raw: str | None, *, today: date) -> date | None:
    """Parse "March 15", "mar 15th", "3/15" or "3-15" as the next such date on or after ``today``."""
    if not raw:
        return None
    cleaned = _ORDINAL_SUFFIX.sub("", raw.strip().lower())
    cleaned = re.sub(r"\s+", " ", cleaned)

    month: int | None = None
    day: int | None = None

    match = _MONTH_NAME_DAY.match(cleaned)
    if match and match.group(1) in _MONTHS:
        month = _MONTHS[match.group(1)]
        day = int(match.group(2))
    else:
        match = _NUMERIC_MONTH_DAY.match(cleaned)
        if match:
            month = int(match.group(1))
            day = int(match.group(2))

    if month is None or day is None:
        return None

    for year in (today.year, today.year + 1):
        try:
            candidate = date(year, month, day)
        except ValueError:
            continue
        if candidate >= today:
            return candidate
    return None


def parse_numeric_level(raw: str | None) -> int | None:
    """Accept a clean 1-5 reply such as "3", " 3 ", "3.", "#3" or "level 3"."""
    if raw is None:
        return None
    cleaned = re.sub(r"[.#]", "", raw.strip())
    cleaned = re.sub(r"^level\s*", "", cleaned, flags=re.IGNORECASE).strip()
    if cleaned in {"1", "2", "3", "4", "5"}:
        return int(cleaned)
    return None


def _to_24_hour(hour: int, period: str) -> int:
    if period == "am":
        return 0 if hour == 12 else hour
    return 12 if hour == 12 else hour + 12


def _guess_period(hour: int) -> int:
    if 1 <= hour <= 6:
        return hour + 12
    return hour


def _build_parsed_time(hour: int, minute: int) -> ParsedTime | None:
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    time24 = f"{hour:02d}:{minute:02d}"
    return ParsedTime(time24=time24, display=format_time_12(time24))
