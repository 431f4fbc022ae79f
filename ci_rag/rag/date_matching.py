"""
Explicit calendar-date detection for the relevance filter's date gate.

Recognises dates a user writes out (English or French):
    "November 14th", "Nov 14", "14 novembre", "le 14 novembre 2025",
    "14/11", "14/11/2025", "2025-11-14"

Relative expressions ("last week", "this month", "hier") are NOT dates here:
questions using them are filtered thematically.
"""
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional
import re


MONTHS = {
    # English
    "january": 1, "jan": 1, "february": 2, "feb": 2, "march": 3, "mar": 3,
    "april": 4, "apr": 4, "may": 5, "june": 6, "jun": 6, "july": 7, "jul": 7,
    "august": 8, "aug": 8, "september": 9, "sep": 9, "sept": 9,
    "october": 10, "oct": 10, "november": 11, "nov": 11, "december": 12, "dec": 12,
    # French
    "janvier": 1, "janv": 1, "février": 2, "fevrier": 2, "févr": 2, "fevr": 2, "mars": 3,
    "avril": 4, "avr": 4, "mai": 5, "juin": 6, "juillet": 7, "juil": 7,
    "août": 8, "aout": 8, "septembre": 9, "octobre": 10, "novembre": 11, "décembre": 12, "decembre": 12,
}

UNKNOWN_DATE = "unknown date"

_MONTH_NAMES = "|".join(sorted((re.escape(m) for m in MONTHS), key=len, reverse=True))
_DAY = r"(?P<day>[0-3]?\d)(?P<suffix>st|nd|rd|th|er|e)?"
_YEAR = r"(?P<year>\d{4})"

# Also ordinary English words ("how may 5 entrants", "march 3 km"); only a
# capital letter or an ordinal day makes them a month
AMBIGUOUS_MONTHS = {"may", "mar", "march"}

# "2/3 of competitors" is a fraction; "le 2/3" or "on 2/3" is a date
NUMERIC_CUE = re.compile(
    r"\b(?:le|du|au|depuis|on|since|from|until)\s+$", re.IGNORECASE
)

ISO_PATTERN = re.compile(r"\b(?P<year>\d{4})-(?P<month>\d{1,2})-(?P<day>\d{1,2})\b")
NUMERIC_PATTERN = re.compile(r"(?<![\d/])(?!24/7\b)(?P<day>[0-3]?\d)/(?P<month>[01]?\d)(?:/(?P<year>\d{4}|\d{2}))?(?![\d/])")
DAY_MONTH_PATTERN = re.compile(
    rf"\b{_DAY}\s+(?:of\s+)?(?P<month>{_MONTH_NAMES})\.?(?:,?\s+{_YEAR})?\b", re.IGNORECASE
)
MONTH_DAY_PATTERN = re.compile(
    rf"\b(?P<month>{_MONTH_NAMES})\.?\s+(?:the\s+)?{_DAY}\b(?:,?\s+{_YEAR})?", re.IGNORECASE
)


@dataclass(frozen=True)
class DateMention:
    """A calendar date named in a question. year is None when the user omitted it."""
    day: int
    month: int
    year: Optional[int] = None

    def matches(self, value: Optional[date]) -> bool:
        if value is None:
            return False
        if (value.day, value.month) != (self.day, self.month):
            return False
        return self.year is None or value.year == self.year


def _valid(day: int, month: int, year: Optional[int]) -> bool:
    try:
        date(year or 2000, month, day)  # 2000 is a leap year, so 29/02 stays valid
    except ValueError:
        return False
    return True


def _year(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    year = int(raw)
    return year + 2000 if year < 100 else year


def _named_month_is_date(match) -> bool:
    month = match.group("month")
    if month.lower() not in AMBIGUOUS_MONTHS:
        return True
    return month[0].isupper() or bool(match.group("suffix"))


def _numeric_is_date(match, question: str) -> bool:
    """d/m is a date with a year, a two-digit day, or a date cue word just before it."""
    if match.group("year") or len(match.group("day")) == 2:
        return True
    return NUMERIC_CUE.search(question[:match.start()]) is not None


def extract_date_mentions(question: str) -> List[DateMention]:
    """All explicit calendar dates in the question, in order of first appearance, without duplicates."""
    found = []
    spans = []

    def add(match, month: int):
        # A span already claimed by a more specific pattern wins
        if any(match.start() < end and start < match.end() for start, end in spans):
            return
        day = int(match.group("day"))
        year = _year(match.group("year"))
        if _valid(day, month, year):
            spans.append((match.start(), match.end()))
            found.append((match.start(), DateMention(day, month, year)))

    for m in ISO_PATTERN.finditer(question):
        add(m, int(m.group("month")))
    for pattern in (DAY_MONTH_PATTERN, MONTH_DAY_PATTERN):
        for m in pattern.finditer(question):
            if _named_month_is_date(m):
                add(m, MONTHS[m.group("month").lower()])
    for m in NUMERIC_PATTERN.finditer(question):
        if _numeric_is_date(m, question):
            add(m, int(m.group("month")))

    mentions = []
    for _, mention in sorted(found, key=lambda item: item[0]):
        if mention not in mentions:
            mentions.append(mention)
    return mentions


def parse_report_date(value) -> Optional[date]:
    """Parse a stored report date ("2025-11-14", ISO timestamp, "14/11/2025") into a date."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    raw = str(value).strip()
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%d.%m.%Y"):
        try:
            return datetime.strptime(raw[:10], fmt).date()
        except ValueError:
            continue
    return None


def format_report_date(value) -> str:
    """Display form used in prompts: dd/mm/yyyy, or the raw value if unparseable."""
    parsed = parse_report_date(value)
    if parsed is None:
        return str(value) if value else UNKNOWN_DATE
    return parsed.strftime("%d/%m/%Y")


def matches_any(mentions: List[DateMention], value) -> bool:
    """True if the report date equals one of the named dates."""
    parsed = parse_report_date(value)
    return any(mention.matches(parsed) for mention in mentions)
