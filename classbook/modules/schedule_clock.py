"""
Schedule Clock Module - Classbook

Pure time-window helpers shared by the attendance and timetable managers.
The core logic only ever needs a weekday name and a minute count since
midnight, so datetimes are reduced to those two values here and nowhere else.

Features:
- HH:MM parsing and minute arithmetic
- Weekday naming (English, with Bulgarian aliases accepted on input)
- Calendar-day keys (YYYY-MM-DD)
- Current class detection for a teacher
- "Has this period ended" checks for schedule views
"""

from dataclasses import dataclass, asdict
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Union

WEEKDAYS = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']

_DAY_ALIASES = {
    'понеделник': 'Monday',
    'вторник': 'Tuesday',
    'сряда': 'Wednesday',
    'четвъртък': 'Thursday',
    'петък': 'Friday',
    'събота': 'Saturday',
    'неделя': 'Sunday',
}
_DAY_ALIASES.update({day.lower(): day for day in WEEKDAYS})
_DAY_ALIASES.update({day[:3].lower(): day for day in WEEKDAYS})


@dataclass
class Period:
    """One slot of a bell schedule."""
    period: int
    start_time: str
    end_time: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Period':
        return cls(
            period=int(data['period']),
            start_time=data['start_time'],
            end_time=data['end_time']
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_PERIODS = [
    Period(1, '07:30', '08:10'),
    Period(2, '08:20', '09:00'),
    Period(3, '09:10', '09:50'),
    Period(4, '10:10', '10:50'),
    Period(5, '11:00', '11:40'),
    Period(6, '11:50', '12:30'),
    Period(7, '12:40', '13:20'),
    Period(8, '13:30', '14:10'),
]


@dataclass
class ClassSession:
    """A scheduled lesson as seen by the teacher who teaches it."""
    class_id: str
    class_name: str
    subject_id: str
    subject_name: str
    teacher_id: str
    day: str
    period: int
    start_time: str
    end_time: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CurrentClass:
    """The lesson in progress at a given moment."""
    class_id: str
    class_name: str
    subject_id: str
    subject_name: str
    period: int
    start_time: str
    end_time: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parse_clock(value: str) -> int:
    """
    Convert an "HH:MM" string to minutes since midnight.

    Raises:
        ValueError: If the string is not a valid 24-hour clock time
    """
    if not isinstance(value, str) or ':' not in value:
        raise ValueError(f"Invalid time: {value!r}")

    hours, _, minutes = value.strip().partition(':')
    if not (hours.isdigit() and minutes.isdigit()) or len(minutes) != 2:
        raise ValueError(f"Invalid time: {value!r}")

    hours, minutes = int(hours), int(minutes)
    if hours > 23 or minutes > 59:
        raise ValueError(f"Invalid time: {value!r}")
    return hours * 60 + minutes


def is_valid_clock(value: str) -> bool:
    try:
        parse_clock(value)
        return True
    except ValueError:
        return False


def minutes_since_midnight(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def weekday_name(moment: Union[date, datetime]) -> str:
    return WEEKDAYS[moment.weekday()]


def standardize_day_name(day: str) -> str:
    """
    Return the English weekday name for an English or Bulgarian day name.

    Raises:
        ValueError: If the name is not a weekday
    """
    standardized = _DAY_ALIASES.get(str(day).strip().lower())
    if standardized is None:
        raise ValueError(f"Unknown weekday: {day!r}")
    return standardized


def to_day_key(value: Union[date, datetime, str]) -> str:
    """Normalize a date, datetime or ISO string to a "YYYY-MM-DD" key."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return from_day_key(value).isoformat()


def from_day_key(value: str) -> date:
    return datetime.strptime(str(value)[:10], '%Y-%m-%d').date()


def detect_current_class(sessions: Iterable[ClassSession], now: datetime) -> Optional[CurrentClass]:
    """
    Find the lesson in progress at `now`.

    Start and end minutes are both inclusive. Sessions are expected not to
    overlap; if they do, the first one in input order wins.

    Args:
        sessions: Lessons taught by one teacher
        now (datetime): Moment to evaluate

    Returns:
        CurrentClass: The matching lesson, or None
    """
    today = weekday_name(now)
    current = minutes_since_midnight(now)

    for session in sessions:
        if session.day != today:
            continue
        try:
            start = parse_clock(session.start_time)
            end = parse_clock(session.end_time)
        except ValueError:
            continue

        if start <= current <= end:
            return CurrentClass(
                class_id=session.class_id,
                class_name=session.class_name,
                subject_id=session.subject_id,
                subject_name=session.subject_name,
                period=session.period,
                start_time=session.start_time,
                end_time=session.end_time
            )

    return None


def is_period_over(day: str, period: int, periods: List[Period], now: datetime) -> bool:
    """
    Check whether a (day, period) slot of the current week has already ended.

    An earlier weekday is over, a later one is not. On the same weekday the
    slot is over once the current minute is past the period's end time.
    Unknown periods are never over.
    """
    today_index = now.weekday()
    try:
        day_index = WEEKDAYS.index(standardize_day_name(day))
    except ValueError:
        return False

    if day_index != today_index:
        return day_index < today_index

    slot = next((p for p in periods if p.period == period), None)
    if slot is None:
        return False

    try:
        return minutes_since_midnight(now) > parse_clock(slot.end_time)
    except ValueError:
        return False


def period_lookup(periods: Optional[List[Period]]) -> Dict[int, Period]:
    """Index a bell schedule by period number, falling back to DEFAULT_PERIODS."""
    return {p.period: p for p in (periods or DEFAULT_PERIODS)}
