"""
Formatting and filtering helpers for class records and rosters.
"""
import re
from datetime import date, datetime, timedelta
from typing import Iterable, List, NamedTuple, Optional, Tuple, Union

from schemas import AcademyClass, ClassRecord, Student, User

UNASSIGNED_TEACHER = "미배정"
UNKNOWN_TEACHER = "알 수 없음"

_PAGE_RANGE = re.compile(r"(\d+)-?(\d*)")


class Week(NamedTuple):
    number: int
    start: date
    end: date

    def __contains__(self, day) -> bool:
        return self.start <= day <= self.end


def date_key(day: Union[date, datetime, str]) -> str:
    """Return the YYYY-MM-DD key used for records and to-dos."""
    if isinstance(day, datetime):
        return day.date().isoformat()
    if isinstance(day, date):
        return day.isoformat()
    return date.fromisoformat(day).isoformat()


def parse_page_range(text: Optional[str]) -> Optional[Tuple[int, int]]:
    """'12-15' -> (12, 15); '12' -> (12, 12); no digits -> None."""
    match = _PAGE_RANGE.search(text or "")
    if not match:
        return None
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else start
    return start, end


def format_page_range(start: Optional[int], end: Optional[int] = None) -> str:
    if not start:
        return ""
    if end and end != start:
        return f"{start}-{end}"
    return str(start)


def weeks_of_month(year: int, month: int) -> List[Week]:
    """Monday-start weeks that cover the month, numbered from 1.

    The first week may begin in the previous month and the last may run into
    the next one.
    """
    first = date(year, month, 1)
    last = (date(year + month // 12, month % 12 + 1, 1) - timedelta(days=1))
    weeks = []
    current = first
    number = 1
    while current <= last:
        start = current - timedelta(days=current.weekday())
        end = start + timedelta(days=6)
        weeks.append(Week(number, start, end))
        current = end + timedelta(days=1)
        number += 1
    return weeks


def week_number(day: date, weeks: Iterable[Week]) -> Optional[int]:
    for week in weeks:
        if day in week:
            return week.number
    return None


def available_months(records: Iterable[ClassRecord]) -> List[str]:
    return sorted({r.date[:7] for r in records}, reverse=True)


def filter_records(records: Iterable[ClassRecord], month: Optional[str] = None, week: Optional[int] = None) -> List[ClassRecord]:
    """Records in `month` (YYYY-MM) and, within it, week `week`, oldest first.

    `week` is ignored without a month.
    """
    selected = None
    if month and week:
        year, mon = (int(p) for p in month.split("-"))
        selected = next((w for w in weeks_of_month(year, mon) if w.number == week), None)

    result = []
    for record in records:
        if month and not record.date.startswith(month):
            continue
        if selected and date.fromisoformat(record.date) not in selected:
            continue
        result.append(record)
    return sorted(result, key=lambda r: r.date)


def sorted_students(students: Iterable[Student]) -> List[Student]:
    # roster view lists names in descending order
    return sorted(students, key=lambda s: s.name, reverse=True)


def teacher_name(users: Iterable[User], teacher_id: Optional[str]) -> str:
    if not teacher_id:
        return UNASSIGNED_TEACHER
    for user in users:
        if user.id == teacher_id:
            return user.name
    return UNKNOWN_TEACHER


def classes_on(classes: Iterable[AcademyClass], day: Union[date, str]) -> List[AcademyClass]:
    key = date_key(day)
    return [c for c in classes if c.find_record(key) is not None]
