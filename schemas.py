"""
Database Schemas for the E-Pharmacy marketplace

Each Pydantic model represents a collection in MongoDB. The collection name is the lowercase of the class name.
"""
from datetime import datetime
from typing import Optional, List, Literal, Dict, Any
from pydantic import BaseModel, Field

Role = Literal["customer", "pharmacist", "doctor", "technician", "delivery_agent", "admin"]
OrderType = Literal["medicine", "doctor_booking", "test_booking"]
OrderStatus = Literal["pending", "confirmed", "processing", "out_for_delivery", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "processing", "paid", "failed", "refunded"]
PaymentSource = Literal["user", "webhook", "admin"]
PrescriptionStatus = Literal["pending", "under_review", "approved", "rejected", "expired"]
DoctorBookingStatus = Literal["scheduled", "confirmed", "completed", "cancelled"]
TestBookingStatus = Literal["pending_review", "approved", "assigned", "sample_collected",
                            "results_ready", "completed", "cancelled"]


class GeoPoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


# Core user accounts (all roles)
class AppUser(BaseModel):
    name: str = Field(..., description="Full name")
    email: str = Field(..., description="Login email, unique")
    phone: Optional[str] = Field(None, description="Phone number")
    role: Role = "customer"
    password_hash: str
    is_active: bool = True
    is_approved: bool = Field(True, description="Staff accounts start unapproved until an admin approves them")
    review_notes: Optional[str] = None
    address: Optional[str] = Field(None, description="Default address")
    location: Optional[GeoPoint] = None


# Canonical medicine catalog entry
class Medicine(BaseModel):
    name: str = Field(..., description="Commercial name")
    generic_name: Optional[str] = Field(None, description="DCI / INN")
    category: Optional[str] = None
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    stock_quantity: int = Field(0, ge=0)
    requires_prescription: bool = False
    is_active: bool = True
    added_by: Optional[str] = Field(None, description="Pharmacist who stocks it")


class StoredFile(BaseModel):
    key: str
    original_name: Optional[str] = None
    mimetype: Optional[str] = None
    size: Optional[int] = None
    storage_type: Literal["s3", "local"] = "local"
    uploaded_at: Optional[datetime] = None


class PrescribedMedicine(BaseModel):
    name: str
    dosage: str
    frequency: str
    duration: str
    instructions: Optional[str] = None
    quantity: int = Field(1, ge=1)
    medicine_id: Optional[str] = None
    is_available: bool = False


# Prescription uploaded by a customer, reviewed by a pharmacist
class Prescription(BaseModel):
    prescription_number: str
    customer: str
    doctor_name: str
    doctor_registration_number: str
    patient_name: str
    patient_age: int = Field(..., ge=0, le=150)
    patient_gender: Literal["male", "female", "other"]
    prescription_date: datetime
    valid_until: datetime
    documents: List[StoredFile] = Field(default_factory=list)
    notes: Optional[str] = None
    status: PrescriptionStatus = "pending"
    priority: Literal["normal", "high"] = "normal"
    medicines: List[PrescribedMedicine] = Field(default_factory=list)
    reviewed_by: Optional[str] = None
    review_date: Optional[datetime] = None
    review_notes: Optional[str] = None
    rejection_reason: Optional[str] = None


class Clinic(BaseModel):
    name: str
    address: Optional[str] = None
    location: Optional[GeoPoint] = None


class TimeWindow(BaseModel):
    start: str = Field(..., alias="from", pattern=r"^\d{2}:\d{2}$")
    end: str = Field(..., alias="to", pattern=r"^\d{2}:\d{2}$")

    model_config = {"populate_by_name": True}


class ScheduleDay(BaseModel):
    date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    slots: List[TimeWindow] = Field(default_factory=list)


# Doctor profile, one per doctor user
class Doctor(BaseModel):
    user: str
    name: str
    specialties: List[str] = Field(default_factory=list)
    clinics: List[Clinic] = Field(default_factory=list)
    schedule: List[Dict[str, Any]] = Field(default_factory=list)
    fee: float = Field(500, ge=0)
    bio: Optional[str] = None
    experience_years: Optional[int] = None
    is_active: bool = True


# Diagnostic test catalog
class Test(BaseModel):
    name: str
    code: str
    description: str = ""
    price: float = Field(..., ge=0)
    sample_type: str = "blood"
    preparation: str = ""
    turnaround_time_hours: int = 24
    is_active: bool = True


# Item for medicine orders
class OrderItem(BaseModel):
    medicine: str
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    total: float = Field(..., ge=0)
    requires_prescription: bool = False


class DeliveryAddress(BaseModel):
    street: str
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[GeoPoint] = None
    distance_km: Optional[float] = None


class CollectionAddress(BaseModel):
    line1: str = Field(..., min_length=1)
    line2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)


# Saved address in a customer's address book
class Address(BaseModel):
    user: str
    title: str = Field(..., min_length=1, max_length=50, description="Label such as Home or Office")
    name: str = Field(..., min_length=1, max_length=100, description="Recipient")
    phone: str = Field(..., pattern=r"^\+?[\d\s\-()]{10,15}$")
    line1: str = Field(..., min_length=1, max_length=200)
    line2: Optional[str] = Field(None, max_length=200)
    landmark: Optional[str] = Field(None, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    zip_code: str = Field(..., pattern=r"^[\d\-\s]{3,10}$")
    country: str = Field("India", max_length=50)
    location: Optional[GeoPoint] = None
    is_default: bool = False
    address_type: Literal["home", "office", "other"] = "home"


class DoctorBooking(BaseModel):
    doctor: str
    date: str
    start: str
    end: str
    clinic_index: int = 0
    fee: float
    booking_number: str
    status: DoctorBookingStatus = "scheduled"
    notes: Optional[str] = None


class TestBooking(BaseModel):
    test: str
    scheduled_at: Optional[datetime] = None
    address: CollectionAddress
    booking_number: str
    status: TestBookingStatus = "pending_review"
    assigned_technician: Optional[str] = None
    result_files: List[StoredFile] = Field(default_factory=list)


class PaymentEvent(BaseModel):
    status: str
    source: PaymentSource = "user"
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentAttempt(BaseModel):
    attempted_at: datetime
    status: str
    gateway_response: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class Payment(BaseModel):
    method: Literal["cash_on_delivery", "online"]
    status: PaymentStatus = "pending"
    gateway: Literal["cashfree"] = "cashfree"
    gateway_order_id: Optional[str] = None
    payment_session_id: Optional[str] = None
    payment_id: Optional[str] = None
    signature: Optional[str] = None
    amount: float
    currency: str = "INR"
    status_history: List[PaymentEvent] = Field(default_factory=list)
    attempts: List[PaymentAttempt] = Field(default_factory=list)
    last_webhook_id: Optional[str] = None


class Cancellation(BaseModel):
    reason: str
    cancelled_by: Optional[str] = None
    cancelled_at: datetime


class DeliveryAssignment(BaseModel):
    agent: Optional[str] = None
    assigned_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


# Unified order: medicine order, doctor booking or test booking
class Order(BaseModel):
    order_number: str
    customer: str
    order_type: OrderType
    items: List[OrderItem] = Field(default_factory=list)
    doctor_booking: Optional[DoctorBooking] = None
    test_booking: Optional[TestBooking] = None
    prescription: Optional[str] = None
    is_prescription_order: bool = False
    subtotal: float = Field(0, ge=0)
    delivery_charges: float = Field(0, ge=0)
    tax: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    delivery_address: Optional[DeliveryAddress] = None
    pharmacy: Optional[str] = None
    status: OrderStatus = "pending"
    cancellation: Optional[Cancellation] = None
    payment: Payment
    delivery: Optional[DeliveryAssignment] = None
