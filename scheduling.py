"""
Doctor appointment slots.

Schedules are stored per date as HH:MM windows. Appointments are exactly
SLOT_MINUTES long, aligned to SLOT_MINUTES, fall inside a scheduled window
and never overlap another live appointment of the same doctor on that date.
"""
import re
from typing import Any, Dict, Iterable, List, Optional

SLOT_MINUTES = 15
HHMM = re.compile(r"^\d{2}:\d{2}$")


class SlotError(Exception):
    pass


def to_minutes(value: str) -> int:
    if not HHMM.match(value or ""):
        raise SlotError("from/to must be HH:MM")
    hours, minutes = (int(p) for p in value.split(":"))
    if hours > 23 or minutes > 59:
        raise SlotError(f"Invalid time {value}")
    return hours * 60 + minutes


def from_minutes(total: int) -> str:
    return f"{total // 60:02d}:{total % 60:02d}"


def schedule_for(doctor: Dict[str, Any], date: str) -> Optional[Dict[str, Any]]:
    for day in doctor.get("schedule") or []:
        if str(day.get("date", ""))[:10] == date[:10]:
            return day
    return None


def split_window(start: str, end: str) -> List[Dict[str, str]]:
    """Cut a scheduled window into consecutive slots."""
    s, e = to_minutes(start), to_minutes(end)
    first = -(-s // SLOT_MINUTES) * SLOT_MINUTES
    return [{"from": from_minutes(m), "to": from_minutes(m + SLOT_MINUTES)}
            for m in range(first, e - SLOT_MINUTES + 1, SLOT_MINUTES)]


def overlaps(start: int, end: int, bookings: Iterable[Dict[str, Any]]) -> bool:
    for b in bookings:
        try:
            b_start, b_end = to_minutes(b["start"]), to_minutes(b["end"])
        except (SlotError, KeyError):
            continue
        if start < b_end and end > b_start:
            return True
    return False


def free_slots(doctor: Dict[str, Any], date: str, bookings: Iterable[Dict[str, Any]]) -> List[Dict[str, str]]:
    day = schedule_for(doctor, date)
    if not day:
        return []
    bookings = list(bookings)
    free = []
    for window in day.get("slots") or []:
        for slot in split_window(window["from"], window["to"]):
            if not overlaps(to_minutes(slot["from"]), to_minutes(slot["to"]), bookings):
                free.append(slot)
    return free


def validate_booking(doctor: Dict[str, Any], date: str, start: str, end: str, clinic_index: int,
                     bookings: Iterable[Dict[str, Any]]) -> None:
    """Raise SlotError unless the requested slot can be booked."""
    req_start, req_end = to_minutes(start), to_minutes(end)
    if req_end <= req_start:
        raise SlotError("Invalid time range")
    if req_end - req_start != SLOT_MINUTES:
        raise SlotError(f"Slot must be exactly {SLOT_MINUTES} minutes")
    if req_start % SLOT_MINUTES or req_end % SLOT_MINUTES:
        raise SlotError(f"Times must align to {SLOT_MINUTES}-minute increments")
    if clinic_index < 0 or clinic_index >= len(doctor.get("clinics") or []):
        raise SlotError("Invalid clinic index")

    day = schedule_for(doctor, date)
    if not day:
        raise SlotError("No schedule for selected date")
    within = any(req_start >= to_minutes(w["from"]) and req_end <= to_minutes(w["to"])
                 for w in day.get("slots") or [])
    if not within:
        raise SlotError("Requested time not within schedule")
    if overlaps(req_start, req_end, bookings):
        raise SlotError("Overlapping slot already booked")
