import pytest

from scheduling import SlotError, free_slots, split_window, to_minutes, validate_booking

DOCTOR = {
    "clinics": [{"name": "City Clinic"}],
    "schedule": [
        {"date": "2030-01-15", "slots": [{"from": "09:00", "to": "10:00"}, {"from": "14:10", "to": "14:45"}]},
    ],
}


def test_to_minutes():
    assert to_minutes("00:00") == 0
    assert to_minutes("09:30") == 570
    with pytest.raises(SlotError):
        to_minutes("9:30")
    with pytest.raises(SlotError):
        to_minutes("24:00")


def test_split_window_aligns_to_quarter_hours():
    assert split_window("09:00", "09:45") == [
        {"from": "09:00", "to": "09:15"},
        {"from": "09:15", "to": "09:30"},
        {"from": "09:30", "to": "09:45"},
    ]
    assert split_window("14:10", "14:45") == [{"from": "14:15", "to": "14:30"}, {"from": "14:30", "to": "14:45"}]
    assert split_window("10:00", "10:10") == []


def test_free_slots_skip_booked():
    bookings = [{"start": "09:15", "end": "09:30"}]
    slots = free_slots(DOCTOR, "2030-01-15", bookings)
    assert {"from": "09:15", "to": "09:30"} not in slots
    assert {"from": "09:00", "to": "09:15"} in slots
    assert len(slots) == 5


def test_free_slots_unknown_date():
    assert free_slots(DOCTOR, "2030-01-16", []) == []


def test_valid_booking_passes():
    validate_booking(DOCTOR, "2030-01-15", "09:30", "09:45", 0, [])


@pytest.mark.parametrize("start, end, clinic, message", [
    ("09:30", "09:15", 0, "Invalid time range"),
    ("09:00", "09:30", 0, "exactly 15 minutes"),
    ("09:05", "09:20", 0, "align"),
    ("09:00", "09:15", 3, "clinic"),
    ("10:00", "10:15", 0, "not within schedule"),
])
def test_invalid_bookings(start, end, clinic, message):
    with pytest.raises(SlotError) as exc:
        validate_booking(DOCTOR, "2030-01-15", start, end, clinic, [])
    assert message in str(exc.value)


def test_booking_without_schedule():
    with pytest.raises(SlotError, match="No schedule"):
        validate_booking(DOCTOR, "2030-02-01", "09:00", "09:15", 0, [])


def test_overlapping_booking_rejected():
    with pytest.raises(SlotError, match="already booked"):
        validate_booking(DOCTOR, "2030-01-15", "09:00", "09:15", 0, [{"start": "09:00", "end": "09:15"}])
