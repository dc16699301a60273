"""
Doctor appointments and diagnostic test bookings

Both are stored as orders (order_type doctor_booking / test_booking) so they
share the payment flow of medicine orders.
"""
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError

from auth import APPROVED, get_current_user, require_roles
from checkout import CheckoutError, apply_cancellation, booking_order, hold_slot, new_booking_number, release_slot
from database import create_document, db, get_document, get_documents, serialize, update_document, utcnow
from schemas import Clinic, CollectionAddress, Doctor, DoctorBooking, ScheduleDay, Test, TestBooking
from scheduling import SlotError, free_slots, to_minutes, validate_booking
import storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Bookings"])


def _booking(order_id: str, order_type: str, label: str) -> Dict[str, Any]:
    order = get_document("order", order_id)
    if not order or order.get("order_type") != order_type:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return order


def _save(order: Dict[str, Any]) -> None:
    order["updated_at"] = utcnow()
    db["order"].replace_one({"_id": order["_id"]}, order)


def _doctor_for(user: Dict[str, Any]) -> Dict[str, Any]:
    doctor = db["doctor"].find_one({"user": user["_id"]})
    if not doctor:
        raise HTTPException(status_code=404, detail="Doctor profile not found")
    return doctor


def _live_bookings(doctor_id: str, date: str) -> List[Dict[str, Any]]:
    orders = db["order"].find({
        "order_type": "doctor_booking",
        "doctor_booking.doctor": doctor_id,
        "doctor_booking.date": date[:10],
        "doctor_booking.status": {"$ne": "cancelled"},
        "status": {"$ne": "cancelled"},
    })
    return [o["doctor_booking"] for o in orders]


# -----------------------------
# Doctors
# -----------------------------

class DoctorProfileRequest(BaseModel):
    specialties: List[str] = Field(..., min_length=1)
    clinics: List[Clinic] = Field(..., min_length=1)
    fee: float = Field(500, ge=0)
    bio: Optional[str] = None
    experience_years: Optional[int] = Field(None, ge=0)


class ScheduleRequest(BaseModel):
    schedule: List[ScheduleDay]


class BookDoctorRequest(BaseModel):
    date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    start: str = Field(..., alias="from")
    end: str = Field(..., alias="to")
    clinic_index: int = 0
    notes: Optional[str] = None

    model_config = {"populate_by_name": True}


@router.post("/doctors/profile")
def upsert_doctor_profile(payload: DoctorProfileRequest,
                          user: Dict[str, Any] = Depends(require_roles("doctor", "admin"))):
    existing = db["doctor"].find_one({"user": user["_id"]})
    profile = Doctor(
        user=user["_id"],
        name=user["name"],
        specialties=payload.specialties,
        clinics=payload.clinics,
        schedule=(existing or {}).get("schedule", []),
        fee=payload.fee,
        bio=payload.bio,
        experience_years=payload.experience_years,
    )
    if existing:
        update_document("doctor", existing["_id"], profile.model_dump())
        doctor_id = str(existing["_id"])
    else:
        doctor_id = create_document("doctor", profile)
    return serialize(get_document("doctor", doctor_id))


@router.post("/doctors/schedule")
def set_schedule(payload: ScheduleRequest, user: Dict[str, Any] = Depends(require_roles("doctor", "admin"))):
    doctor = _doctor_for(user)
    days = []
    for day in payload.schedule:
        windows = []
        for window in day.slots:
            try:
                if to_minutes(window.end) <= to_minutes(window.start):
                    raise SlotError(f"Window {window.start}-{window.end} on {day.date} ends before it starts")
            except SlotError as e:
                raise HTTPException(status_code=400, detail=str(e))
            windows.append(window.model_dump(by_alias=True))
        if windows:
            days.append({"date": day.date, "slots": windows})
    update_document("doctor", doctor["_id"], {"schedule": days})
    logger.info("[DOCTORS] Schedule updated for %s (%d days)", doctor["_id"], len(days))
    return serialize(get_document("doctor", doctor["_id"]))


@router.get("/doctors")
def list_doctors(specialty: Optional[str] = None, q: Optional[str] = None,
                 user: Dict[str, Any] = Depends(get_current_user)):
    query: Dict[str, Any] = {"is_active": True}
    if specialty:
        query["specialties"] = specialty
    if q:
        pattern = re.escape(q)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"specialties": {"$regex": pattern, "$options": "i"}},
        ]
    return get_documents("doctor", query, sort=[("name", 1)])


@router.get("/doctors/doctor/bookings")
def doctor_bookings(status: Optional[str] = None, date: Optional[str] = None,
                    user: Dict[str, Any] = Depends(require_roles("doctor", "admin"))):
    doctor = _doctor_for(user)
    query: Dict[str, Any] = {"order_type": "doctor_booking", "doctor_booking.doctor": str(doctor["_id"])}
    if status:
        query["doctor_booking.status"] = status
    if date:
        query["doctor_booking.date"] = date[:10]
    return get_documents("order", query, sort=[("doctor_booking.date", -1), ("doctor_booking.start", 1)])


@router.get("/doctors/patient/bookings")
def patient_bookings(status: Optional[str] = None, user: Dict[str, Any] = Depends(require_roles("customer"))):
    query: Dict[str, Any] = {"order_type": "doctor_booking", "customer": user["_id"]}
    if status:
        query["doctor_booking.status"] = status
    return get_documents("order", query, sort=[("doctor_booking.date", -1), ("doctor_booking.start", 1)])


@router.get("/doctors/{doctor_id}/slots")
def doctor_slots(doctor_id: str, date: str, user: Dict[str, Any] = Depends(get_current_user)):
    doctor = get_document("doctor", doctor_id)
    if not doctor:
        raise HTTPException(status_code=404, detail="Doctor not found")
    return free_slots(doctor, date, _live_bookings(doctor_id, date))


@router.post("/doctors/{doctor_id}/book", status_code=201)
def book_doctor(doctor_id: str, payload: BookDoctorRequest, user: Dict[str, Any] = Depends(require_roles("customer"))):
    doctor = get_document("doctor", doctor_id)
    if not doctor or not doctor.get("is_active", True):
        raise HTTPException(status_code=404, detail="Doctor not found")
    try:
        validate_booking(doctor, payload.date, payload.start, payload.end, payload.clinic_index,
                         _live_bookings(doctor_id, payload.date))
    except SlotError as e:
        status_code = 409 if "already booked" in str(e) else 400
        raise HTTPException(status_code=status_code, detail=str(e))

    fee = doctor.get("fee") or 500
    booking = DoctorBooking(
        doctor=doctor_id,
        date=payload.date,
        start=payload.start,
        end=payload.end,
        clinic_index=payload.clinic_index,
        fee=fee,
        booking_number=new_booking_number("DB"),
        notes=payload.notes,
    )
    booking_doc = booking.model_dump()
    try:
        hold_slot(booking_doc)
    except CheckoutError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    order_doc = booking_order(user["_id"], "doctor_booking", fee, "doctor_booking", booking_doc)
    try:
        order_id = create_document("order", order_doc)
    except PyMongoError:
        release_slot(booking_doc)
        raise
    logger.info("[DOCTORS] Booking created as order: %s", order_doc["order_number"])
    return serialize(get_document("order", order_id))


def _own_booking(order: Dict[str, Any], user: Dict[str, Any]) -> None:
    if user["role"] == "admin":
        return
    doctor = _doctor_for(user)
    if order["doctor_booking"]["doctor"] != str(doctor["_id"]):
        raise HTTPException(status_code=403, detail="Not your booking")


@router.post("/doctors/bookings/{order_id}/confirm")
def confirm_doctor_booking(order_id: str, user: Dict[str, Any] = Depends(require_roles("doctor", "admin"))):
    order = _booking(order_id, "doctor_booking", "Doctor booking")
    _own_booking(order, user)
    if order["doctor_booking"]["status"] != "scheduled":
        raise HTTPException(status_code=400, detail="Only scheduled bookings can be confirmed")
    order["doctor_booking"]["status"] = "confirmed"
    _save(order)
    return serialize(order)


@router.post("/doctors/bookings/{order_id}/complete")
def complete_doctor_booking(order_id: str, user: Dict[str, Any] = Depends(require_roles("doctor", "admin"))):
    order = _booking(order_id, "doctor_booking", "Doctor booking")
    _own_booking(order, user)
    if order["doctor_booking"]["status"] not in ("scheduled", "confirmed"):
        raise HTTPException(status_code=400, detail="Booking cannot be completed")
    order["doctor_booking"]["status"] = "completed"
    _save(order)
    return serialize(order)


@router.post("/doctors/bookings/{order_id}/cancel")
def cancel_doctor_booking(order_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    order = _booking(order_id, "doctor_booking", "Doctor booking")
    if order["customer"] != user["_id"] and user["role"] not in ("doctor", "admin"):
        raise HTTPException(status_code=403, detail="Access denied")
    if user["role"] == "doctor":
        _own_booking(order, user)
    if order["doctor_booking"]["status"] in ("completed", "cancelled"):
        raise HTTPException(status_code=400, detail=f"Booking is already {order['doctor_booking']['status']}")
    try:
        refund = apply_cancellation(order, user["_id"], "Appointment cancelled")
    except CheckoutError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    _save(order)
    return {"order": serialize(order), "refund": refund}


# -----------------------------
# Diagnostic tests
# -----------------------------

class BookTestRequest(BaseModel):
    test_id: str
    scheduled_at: Optional[datetime] = None
    address: CollectionAddress


class AssignTechnicianRequest(BaseModel):
    technician_id: str


@router.get("/tests")
def list_tests(q: Optional[str] = None, user: Dict[str, Any] = Depends(get_current_user)):
    query: Dict[str, Any] = {"is_active": True}
    if q:
        pattern = re.escape(q)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"code": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    return get_documents("test", query, limit=100, sort=[("name", 1)])


@router.post("/tests", status_code=201)
def create_test(test: Test, user: Dict[str, Any] = Depends(require_roles("admin"))):
    if db["test"].find_one({"code": test.code}):
        raise HTTPException(status_code=409, detail="Code already exists")
    test_id = create_document("test", test)
    return serialize(get_document("test", test_id))


@router.post("/tests/book", status_code=201)
def book_test(payload: BookTestRequest, user: Dict[str, Any] = Depends(require_roles("customer"))):
    test = get_document("test", payload.test_id)
    if not test or not test.get("is_active", True):
        raise HTTPException(status_code=404, detail="Test not found")

    booking = TestBooking(
        test=payload.test_id,
        scheduled_at=payload.scheduled_at,
        address=payload.address,
        booking_number=new_booking_number("TB"),
    )
    order_doc = booking_order(user["_id"], "test_booking", test.get("price") or 500, "test_booking",
                              booking.model_dump())
    order_id = create_document("order", order_doc)
    logger.info("[TESTS] Test booking created as order: %s", order_doc["order_number"])
    return serialize(get_document("order", order_id))


@router.get("/tests/my-bookings")
def my_test_bookings(status: Optional[str] = None, user: Dict[str, Any] = Depends(require_roles("customer"))):
    query: Dict[str, Any] = {"order_type": "test_booking", "customer": user["_id"]}
    if status:
        query["test_booking.status"] = status
    return get_documents("order", query, sort=[("created_at", -1)])


@router.get("/tests/bookings")
def all_test_bookings(status: Optional[str] = None,
                      user: Dict[str, Any] = Depends(require_roles("admin", "pharmacist", "technician"))):
    query: Dict[str, Any] = {"order_type": "test_booking"}
    if status:
        query["test_booking.status"] = status
    if user["role"] == "technician":
        query["test_booking.assigned_technician"] = user["_id"]
    return get_documents("order", query, sort=[("created_at", -1)])


@router.get("/tests/technicians")
def list_technicians(user: Dict[str, Any] = Depends(require_roles("admin", "pharmacist"))):
    techs = db["appuser"].find({"role": "technician", "is_active": True, **APPROVED}, {"password_hash": 0})
    return [serialize(t) for t in techs]


@router.post("/tests/bookings/{order_id}/approve")
def approve_test_booking(order_id: str, user: Dict[str, Any] = Depends(require_roles("admin", "pharmacist"))):
    order = _booking(order_id, "test_booking", "Test booking")
    if order["test_booking"]["status"] != "pending_review":
        raise HTTPException(status_code=400, detail="Only bookings pending review can be approved")
    order["test_booking"]["status"] = "approved"
    _save(order)
    return serialize(order)


@router.post("/tests/bookings/{order_id}/assign")
def assign_technician(order_id: str, payload: AssignTechnicianRequest,
                      user: Dict[str, Any] = Depends(require_roles("admin", "pharmacist"))):
    order = _booking(order_id, "test_booking", "Test booking")
    if order["test_booking"]["status"] not in ("approved", "assigned"):
        raise HTTPException(status_code=400, detail="Booking must be approved before assigning a technician")
    tech = get_document("appuser", payload.technician_id)
    if not tech or tech.get("role") != "technician" or tech.get("is_approved") is False:
        raise HTTPException(status_code=404, detail="Technician not found")
    order["test_booking"]["assigned_technician"] = payload.technician_id
    order["test_booking"]["status"] = "assigned"
    _save(order)
    return serialize(order)


@router.post("/tests/bookings/{order_id}/results")
async def upload_results(order_id: str, files: List[UploadFile] = File(...),
                         user: Dict[str, Any] = Depends(require_roles("admin", "pharmacist", "technician"))):
    order = _booking(order_id, "test_booking", "Test booking")
    booking = order["test_booking"]
    if user["role"] == "technician" and booking.get("assigned_technician") != user["_id"]:
        raise HTTPException(status_code=403, detail="Booking is assigned to another technician")
    if booking["status"] in ("pending_review", "cancelled"):
        raise HTTPException(status_code=400, detail="Results cannot be attached to this booking")
    if not files:
        raise HTTPException(status_code=400, detail="At least one result file is required")

    for upload in files:
        content = await upload.read()
        try:
            stored = storage.save_file(content, upload.filename, upload.content_type, "test-results")
        except storage.StorageError as e:
            raise HTTPException(status_code=400, detail=str(e))
        booking.setdefault("result_files", []).append(stored.model_dump())
    booking["status"] = "results_ready"
    _save(order)
    logger.info("[TESTS] Results uploaded for %s (%d file(s))", booking["booking_number"], len(files))
    return serialize(order)
