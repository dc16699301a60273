import logging
import os
import re
from datetime import date, datetime, time
from typing import Any, Dict, List, Optional, Literal

from fastapi import FastAPI, HTTPException, UploadFile, File, Form, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from addresses import find_address, router as addresses_router, to_delivery_address
from auth import get_current_user, require_roles, router as auth_router, users_router
from bookings import router as bookings_router
from checkout import (
    CartLine,
    CheckoutError,
    apply_cancellation,
    assign_pharmacy,
    build_medicine_order,
    check_prescription,
    new_prescription_number,
    price_cart,
    refund_payment,
    reorder_lines,
    reserve_stock,
)
from config import settings
from database import db, create_document, get_document, get_documents, parse_id, serialize, update_document, utcnow
from delivery import DeliveryQuote, compute_tax, quote_delivery
from notifications import send_order_confirmation, send_status_update
from schemas import DeliveryAddress, GeoPoint, Medicine, PrescribedMedicine, Prescription
import payments
import storage

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME, version=settings.VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)
app.include_router(users_router)
app.include_router(addresses_router)
app.include_router(bookings_router)

if not storage.s3_configured():
    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    app.mount("/uploads", StaticFiles(directory=str(settings.UPLOAD_DIR)), name="uploads")

STAFF_ROLES = ("pharmacist", "admin")

# Medicine order status flow; cancellation from pending goes through /cancel
ORDER_FLOW = {
    "pending": {"confirmed"},
    "confirmed": {"processing", "cancelled"},
    "processing": {"out_for_delivery", "cancelled"},
    "out_for_delivery": {"delivered"},
}


# Healthcheck
@app.get("/")
def read_root():
    return {"message": f"{settings.APP_NAME} running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if settings.DATABASE_URL else "❌ Not Set",
        "database_name": settings.DATABASE_NAME or "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["collections"] = db.list_collection_names()
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
    except Exception as e:
        response["database"] = f"⚠️ Error: {str(e)[:80]}"
    return response


# -----------------------------
# Helpers
# -----------------------------

def _checkout_error(e: CheckoutError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


def _load(collection: str, doc_id: str, label: str) -> Dict[str, Any]:
    doc = get_document(collection, doc_id)
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return doc


def _saved_address(user: Dict[str, Any], address_id: str) -> DeliveryAddress:
    address = find_address(user["_id"], address_id)
    if not address:
        raise HTTPException(status_code=404, detail="Address not found")
    return to_delivery_address(address)


def _save_order(order: Dict[str, Any]) -> None:
    order["updated_at"] = utcnow()
    db["order"].replace_one({"_id": order["_id"]}, order)


def _find_order_by_gateway_id(gateway_order_id: str) -> Optional[Dict[str, Any]]:
    return db["order"].find_one({"$or": [
        {"payment.gateway_order_id": gateway_order_id},
        {"order_number": gateway_order_id},
    ]})


def _is_staff(user: Dict[str, Any]) -> bool:
    return user["role"] in STAFF_ROLES


def _finalize_paid(order: Dict[str, Any]) -> None:
    """Side effects once an order's payment is confirmed.

    A payment confirmed after the order was cancelled is refunded instead.
    """
    if order["status"] == "cancelled":
        history = order["payment"].get("status_history") or []
        if any(e["status"] == "refunded" for e in history[:-1]):
            # replayed success for a payment that was already refunded
            payments.apply_status(order["payment"], "refunded", "admin", {"reason": "already_refunded"})
            _save_order(order)
            return
        refund = refund_payment(order, "paid_after_cancel")
        _save_order(order)
        if refund["success"]:
            logger.info("[PAYMENTS] Late payment on cancelled order %s refunded", order["order_number"])
        else:
            logger.warning("[PAYMENTS] Late payment on cancelled order %s needs manual refund: %s",
                           order["order_number"], refund["message"])
        return
    customer = get_document("appuser", order["customer"])
    result = send_order_confirmation(order, customer)
    if not result.get("success"):
        logger.warning("[PAYMENTS] Confirmation email for %s not sent: %s", order["order_number"], result.get("error"))
    if order["order_type"] == "medicine" and not order.get("pharmacy"):
        pharmacy = assign_pharmacy(order)
        if pharmacy:
            order["pharmacy"] = pharmacy
            _save_order(order)


def _refresh_expiry(prescription: Dict[str, Any]) -> Dict[str, Any]:
    valid_until = prescription.get("valid_until")
    if valid_until and valid_until < utcnow() and prescription.get("status") in ("pending", "under_review"):
        prescription["status"] = "expired"
        update_document("prescription", prescription["_id"], {"status": "expired"})
    return prescription


# -----------------------------
# Medicine catalog
# -----------------------------

class StockUpdateRequest(BaseModel):
    stock_quantity: int = Field(..., ge=0)


@app.get("/api/medicines")
def list_medicines(q: Optional[str] = None,
                   category: Optional[str] = None,
                   requires_prescription: Optional[bool] = None,
                   limit: int = 50):
    med_filter: Dict[str, Any] = {"is_active": True}
    if q:
        pattern = re.escape(q)
        med_filter["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"generic_name": {"$regex": pattern, "$options": "i"}}
        ]
    if category:
        med_filter["category"] = category
    if requires_prescription is not None:
        med_filter["requires_prescription"] = requires_prescription
    return get_documents("medicine", med_filter, limit=min(max(limit, 1), 200), sort=[("name", 1)])


@app.get("/api/medicines/meta/categories")
def list_categories():
    return sorted(c for c in db["medicine"].distinct("category", {"is_active": True}) if c)


@app.get("/api/medicines/{medicine_id}")
def get_medicine(medicine_id: str):
    return serialize(_load("medicine", medicine_id, "Medicine"))


@app.post("/api/medicines", status_code=201)
def add_medicine(medicine: Medicine, user: Dict[str, Any] = Depends(require_roles(*STAFF_ROLES))):
    if user["role"] == "pharmacist":
        medicine = medicine.model_copy(update={"added_by": user["_id"]})
    med_id = create_document("medicine", medicine)
    return {"id": med_id}


@app.patch("/api/medicines/{medicine_id}/stock")
def update_stock(medicine_id: str, payload: StockUpdateRequest,
                 user: Dict[str, Any] = Depends(require_roles(*STAFF_ROLES))):
    med = _load("medicine", medicine_id, "Medicine")
    if user["role"] == "pharmacist" and med.get("added_by") != user["_id"]:
        raise HTTPException(status_code=403, detail="You can only update your own stock")
    update_document("medicine", med["_id"], {"stock_quantity": payload.stock_quantity})
    return {"id": medicine_id, "stock_quantity": payload.stock_quantity}


# -----------------------------
# Delivery fee and cart quote
# -----------------------------

class DeliveryQuoteRequest(BaseModel):
    location: Optional[GeoPoint] = None
    order_value: float = Field(0, ge=0)


class CartQuoteRequest(BaseModel):
    items: List[CartLine]
    location: Optional[GeoPoint] = None
    address_id: Optional[str] = Field(None, description="Saved address; its location overrides location")
    prescription: Optional[str] = None


class CartQuoteResponse(BaseModel):
    items: List[Dict[str, Any]]
    subtotal: float
    delivery: DeliveryQuote
    tax: float
    total_amount: Optional[float] = None
    requires_prescription: bool
    checkout_blocked: bool
    blocked_reason: Optional[str] = None


@app.post("/api/delivery/quote", response_model=DeliveryQuote)
def delivery_quote(payload: DeliveryQuoteRequest):
    return quote_delivery(payload.location, payload.order_value)


@app.post("/api/cart/quote", response_model=CartQuoteResponse)
def cart_quote(payload: CartQuoteRequest, user: Dict[str, Any] = Depends(get_current_user)):
    try:
        items, subtotal, requires_rx = price_cart(payload.items)
    except CheckoutError as e:
        raise _checkout_error(e)

    blocked_reason = None
    try:
        check_prescription(user["_id"], payload.prescription, requires_rx)
    except CheckoutError as e:
        blocked_reason = e.message

    location = payload.location
    if payload.address_id:
        location = _saved_address(user, payload.address_id).location
    delivery = quote_delivery(location, subtotal)
    if blocked_reason is None and not delivery.is_deliverable:
        blocked_reason = delivery.message
    tax = compute_tax(subtotal)
    total = round(subtotal + (delivery.final_fee or 0) + tax, 2) if delivery.is_deliverable else None
    return CartQuoteResponse(
        items=[i.model_dump() for i in items],
        subtotal=subtotal,
        delivery=delivery,
        tax=tax,
        total_amount=total,
        requires_prescription=requires_rx,
        checkout_blocked=blocked_reason is not None,
        blocked_reason=blocked_reason,
    )


# -----------------------------
# Prescriptions
# -----------------------------

class ApproveRequest(BaseModel):
    medicines: List[PrescribedMedicine]
    notes: str = ""


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    notes: str = ""


@app.post("/api/prescriptions", status_code=201)
async def upload_prescription(
    doctor_name: str = Form(..., min_length=1),
    doctor_registration_number: str = Form(..., min_length=1),
    patient_name: str = Form(..., min_length=1),
    patient_age: int = Form(..., ge=0, le=150),
    patient_gender: Literal["male", "female", "other"] = Form(...),
    prescription_date: date = Form(...),
    valid_until: date = Form(...),
    notes: Optional[str] = Form(None),
    documents: List[UploadFile] = File(...),
    user: Dict[str, Any] = Depends(require_roles("customer")),
):
    if not documents:
        raise HTTPException(status_code=400, detail="At least one prescription document is required")
    if len(documents) > settings.MAX_PRESCRIPTION_DOCUMENTS:
        raise HTTPException(status_code=400,
                            detail=f"At most {settings.MAX_PRESCRIPTION_DOCUMENTS} documents per prescription")
    if valid_until < prescription_date:
        raise HTTPException(status_code=400, detail="valid_until cannot be before prescription_date")

    stored = []
    for upload in documents:
        content = await upload.read()
        try:
            stored.append(storage.save_file(content, upload.filename, upload.content_type, "prescriptions"))
        except storage.StorageError as e:
            raise HTTPException(status_code=400, detail=str(e))

    prescription = Prescription(
        prescription_number=new_prescription_number(),
        customer=user["_id"],
        doctor_name=doctor_name,
        doctor_registration_number=doctor_registration_number,
        patient_name=patient_name,
        patient_age=patient_age,
        patient_gender=patient_gender,
        prescription_date=datetime.combine(prescription_date, time.min),
        valid_until=datetime.combine(valid_until, time(23, 59, 59)),
        documents=stored,
        notes=notes,
        priority="high" if patient_age >= 65 or patient_age <= 5 else "normal",
    )
    prescription_id = create_document("prescription", prescription)
    logger.info("[PRESCRIPTIONS] Uploaded %s with %d document(s)", prescription.prescription_number, len(stored))
    return serialize(get_document("prescription", prescription_id))


@app.get("/api/prescriptions/my-prescriptions")
def my_prescriptions(status: Optional[str] = None, user: Dict[str, Any] = Depends(require_roles("customer"))):
    docs = [_refresh_expiry(p) for p in db["prescription"].find({"customer": user["_id"]}).sort("created_at", -1)]
    if status:
        docs = [p for p in docs if p["status"] == status]
    return [serialize(p) for p in docs]


@app.get("/api/prescriptions/pending-reviews")
def pending_reviews(user: Dict[str, Any] = Depends(require_roles("pharmacist"))):
    docs = [_refresh_expiry(p) for p in db["prescription"].find({"status": {"$in": ["pending", "under_review"]}})]
    docs = [p for p in docs if p["status"] != "expired"]
    # high priority first, then oldest first
    docs.sort(key=lambda p: (p.get("priority") != "high", p.get("created_at")))
    return [serialize(p) for p in docs]


@app.get("/api/prescriptions/{prescription_id}")
def get_prescription(prescription_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    p = _refresh_expiry(_load("prescription", prescription_id, "Prescription"))
    if p["customer"] != user["_id"] and not _is_staff(user):
        raise HTTPException(status_code=403, detail="Access denied")
    return serialize(p)


@app.patch("/api/prescriptions/{prescription_id}/start-review")
def start_review(prescription_id: str, user: Dict[str, Any] = Depends(require_roles("pharmacist"))):
    p = _refresh_expiry(_load("prescription", prescription_id, "Prescription"))
    if p["status"] != "pending":
        raise HTTPException(status_code=400, detail="Only pending prescriptions can be reviewed")
    update_document("prescription", p["_id"], {"status": "under_review", "reviewed_by": user["_id"]})
    return {"id": prescription_id, "status": "under_review"}


@app.patch("/api/prescriptions/{prescription_id}/approve")
def approve_prescription(prescription_id: str, payload: ApproveRequest,
                         user: Dict[str, Any] = Depends(require_roles("pharmacist"))):
    p = _refresh_expiry(_load("prescription", prescription_id, "Prescription"))
    if p["status"] != "under_review":
        raise HTTPException(status_code=400, detail="Prescription must be under review to approve")

    processed = []
    for med in payload.medicines:
        pattern = re.escape(med.name)
        match = db["medicine"].find_one({
            "$or": [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"generic_name": {"$regex": pattern, "$options": "i"}}
            ],
            "is_active": True,
        })
        processed.append(med.model_copy(update={
            "medicine_id": str(match["_id"]) if match else None,
            "is_available": match is not None,
        }).model_dump())

    update_document("prescription", p["_id"], {
        "status": "approved",
        "medicines": processed,
        "reviewed_by": user["_id"],
        "review_date": utcnow(),
        "review_notes": payload.notes,
    })
    logger.info("[PRESCRIPTIONS] %s approved by %s", p["prescription_number"], user["_id"])
    return {
        "id": prescription_id,
        "status": "approved",
        "prescription_number": p["prescription_number"],
        "medicines": len(processed),
        "reviewed_by": user["_id"],
    }


@app.patch("/api/prescriptions/{prescription_id}/reject")
def reject_prescription(prescription_id: str, payload: RejectRequest,
                        user: Dict[str, Any] = Depends(require_roles("pharmacist"))):
    p = _refresh_expiry(_load("prescription", prescription_id, "Prescription"))
    if p["status"] != "under_review":
        raise HTTPException(status_code=400, detail="Prescription must be under review to reject")
    update_document("prescription", p["_id"], {
        "status": "rejected",
        "rejection_reason": payload.reason,
        "review_notes": payload.notes,
        "reviewed_by": user["_id"],
        "review_date": utcnow(),
    })
    return {"id": prescription_id, "status": "rejected", "rejection_reason": payload.reason}


@app.get("/api/prescriptions/{prescription_id}/document/{index}")
def prescription_document(prescription_id: str, index: int, user: Dict[str, Any] = Depends(get_current_user)):
    p = _load("prescription", prescription_id, "Prescription")
    if p["customer"] != user["_id"] and not _is_staff(user):
        raise HTTPException(status_code=403, detail="Access denied")
    documents = p.get("documents") or []
    if index < 0 or index >= len(documents):
        raise HTTPException(status_code=404, detail="Document not found")
    try:
        url = storage.signed_url(documents[index])
    except storage.StorageError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"url": url, "expires_in": settings.SIGNED_URL_EXPIRY_SECONDS,
            "original_name": documents[index].get("original_name")}


# -----------------------------
# Orders
# -----------------------------

class CreateOrderRequest(BaseModel):
    items: List[CartLine]
    delivery_address: Optional[DeliveryAddress] = None
    address_id: Optional[str] = Field(None, description="Saved address, used instead of delivery_address")
    prescription: Optional[str] = None
    payment_method: Literal["online", "cash_on_delivery"] = "online"


class UpdateOrderStatusRequest(BaseModel):
    status: Literal["confirmed", "processing", "out_for_delivery", "delivered", "cancelled"]


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = None


class AssignDeliveryRequest(BaseModel):
    agent_id: str


class PaymentStatusRequest(BaseModel):
    status: Literal["pending", "processing", "paid", "failed", "refunded"]
    metadata: Dict[str, Any] = Field(default_factory=dict)


@app.post("/api/orders", status_code=201)
def create_order(payload: CreateOrderRequest, user: Dict[str, Any] = Depends(require_roles("customer"))):
    address = payload.delivery_address
    if payload.address_id:
        address = _saved_address(user, payload.address_id)
    try:
        order_doc = build_medicine_order(user["_id"], payload.items, address,
                                         payload.prescription, payload.payment_method)
    except CheckoutError as e:
        logger.info("[ORDERS] Checkout blocked for %s: %s", user["_id"], e.message)
        raise _checkout_error(e)

    order_id = create_document("order", order_doc)
    # confirmation is only sent once the payment is confirmed
    logger.info("[ORDERS] Order created: %s (medicine) - awaiting payment", order_doc["order_number"])
    return serialize(get_document("order", order_id))


@app.get("/api/orders/my-orders")
def my_orders(order_type: Optional[str] = None, status: Optional[str] = None,
              user: Dict[str, Any] = Depends(get_current_user)):
    filter_q: Dict[str, Any] = {"customer": user["_id"]}
    if order_type:
        filter_q["order_type"] = order_type
    if status:
        if order_type == "doctor_booking":
            filter_q["doctor_booking.status"] = status
        elif order_type == "test_booking":
            filter_q["test_booking.status"] = status
        else:
            filter_q["status"] = status
    return get_documents("order", filter_q, sort=[("created_at", -1)])


@app.get("/api/orders/status/pending")
def pending_orders(page: int = 1, limit: int = 10, user: Dict[str, Any] = Depends(require_roles(*STAFF_ROLES))):
    page, limit = max(page, 1), min(max(limit, 1), 100)
    filter_q: Dict[str, Any] = {"order_type": "medicine", "status": {"$in": ["pending", "confirmed", "processing"]}}
    if user["role"] == "pharmacist":
        filter_q["pharmacy"] = {"$in": [user["_id"], None]}
    total = db["order"].count_documents(filter_q)
    cursor = db["order"].find(filter_q).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {
        "data": [serialize(d) for d in cursor],
        "pagination": {"current": page, "pages": -(-total // limit), "total": total, "limit": limit},
    }


@app.get("/api/orders/meta/stats")
def order_stats(user: Dict[str, Any] = Depends(require_roles(*STAFF_ROLES))):
    breakdown = list(db["order"].aggregate([
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "total_amount": {"$sum": "$total_amount"}}}
    ]))
    revenue = sum(b["total_amount"] for b in breakdown if b["_id"] == "delivered")
    return {
        "total_orders": db["order"].count_documents({}),
        "total_revenue": revenue,
        "status_breakdown": breakdown,
    }


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    order = _load("order", order_id, "Order")
    if order["customer"] != user["_id"] and not _is_staff(user) and \
            (order.get("delivery") or {}).get("agent") != user["_id"]:
        raise HTTPException(status_code=403, detail="Access denied")
    return serialize(order)


@app.patch("/api/orders/{order_id}/status")
def update_order_status(order_id: str, payload: UpdateOrderStatusRequest,
                        user: Dict[str, Any] = Depends(get_current_user)):
    order = _load("order", order_id, "Order")
    if order["order_type"] != "medicine":
        raise HTTPException(status_code=400, detail="Use the booking endpoints for doctor and test bookings")

    agent = (order.get("delivery") or {}).get("agent")
    is_agent = user["role"] == "delivery_agent" and agent == user["_id"]
    if user["role"] == "pharmacist" and order.get("pharmacy") not in (None, user["_id"]):
        raise HTTPException(status_code=403, detail="Order is assigned to another pharmacy")
    if not (_is_staff(user) or (is_agent and payload.status in ("out_for_delivery", "delivered"))):
        raise HTTPException(status_code=403, detail="Access denied")

    current = order["status"]
    if payload.status not in ORDER_FLOW.get(current, set()):
        raise HTTPException(status_code=400, detail=f"Cannot move order from {current} to {payload.status}")

    if payload.status == "confirmed":
        if order["payment"]["method"] == "online" and order["payment"]["status"] != "paid":
            raise HTTPException(status_code=400, detail="Payment not completed for this order")
        if not order.get("pharmacy") and user["role"] == "pharmacist":
            order["pharmacy"] = user["_id"]
        try:
            reserve_stock(order["items"])
        except CheckoutError as e:
            raise _checkout_error(e)
        order["stock_reserved"] = True
    elif payload.status == "cancelled":
        refund = apply_cancellation(order, user["_id"], "Cancelled by pharmacy", allowed=("confirmed", "processing"))
        if refund["attempted"] and not refund["success"]:
            logger.warning("[ORDERS] Refund for %s needs manual follow-up", order["order_number"])
    elif payload.status == "delivered":
        order["delivery"] = {**(order.get("delivery") or {}), "delivered_at": utcnow()}
        if order["payment"]["method"] == "cash_on_delivery":
            payments.apply_status(order["payment"], "paid", "admin", {"reason": "collected_on_delivery"})

    order["status"] = payload.status
    _save_order(order)

    result = send_status_update(order, get_document("appuser", order["customer"]), payload.status)
    if not result.get("success"):
        logger.warning("[ORDERS] Status email for %s not sent: %s", order["order_number"], result.get("error"))
    logger.info("[ORDERS] Status updated: %s -> %s", order["order_number"], payload.status)
    return serialize(order)


@app.patch("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, payload: Optional[CancelOrderRequest] = None,
                 user: Dict[str, Any] = Depends(get_current_user)):
    order = _load("order", order_id, "Order")
    if user["role"] != "admin" and order["customer"] != user["_id"]:
        raise HTTPException(status_code=403, detail="You can only cancel your own orders")
    try:
        refund = apply_cancellation(order, user["_id"], payload.reason if payload else None)
    except CheckoutError as e:
        raise _checkout_error(e)
    _save_order(order)
    logger.info("[ORDERS] Cancelled %s by %s", order["order_number"], user["_id"])
    return {"order": serialize(order), "refund": refund}


@app.post("/api/orders/{order_id}/reorder")
def reorder(order_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    order = _load("order", order_id, "Order")
    if order["customer"] != user["_id"]:
        raise HTTPException(status_code=403, detail="You can only reorder your own orders")
    if order["order_type"] != "medicine":
        raise HTTPException(status_code=400, detail="Only medicine orders can be reordered")
    return reorder_lines(order)


@app.patch("/api/orders/{order_id}/claim")
def claim_order(order_id: str, user: Dict[str, Any] = Depends(require_roles("pharmacist"))):
    order = _load("order", order_id, "Order")
    if order["order_type"] != "medicine":
        raise HTTPException(status_code=400, detail="Only medicine orders can be claimed")
    if order.get("pharmacy"):
        raise HTTPException(status_code=400, detail="Order is already assigned to a pharmacy")
    for it in order["items"]:
        med = db["medicine"].find_one({"_id": parse_id(it["medicine"]), "added_by": user["_id"], "is_active": True})
        if not med or med.get("stock_quantity", 0) < it["quantity"]:
            raise HTTPException(status_code=400, detail="Insufficient stock for one or more items in this order")
    order["pharmacy"] = user["_id"]
    _save_order(order)
    return serialize(order)


@app.patch("/api/orders/{order_id}/assign-delivery")
def assign_delivery(order_id: str, payload: AssignDeliveryRequest,
                    user: Dict[str, Any] = Depends(require_roles(*STAFF_ROLES))):
    order = _load("order", order_id, "Order")
    if order["order_type"] != "medicine":
        raise HTTPException(status_code=400, detail="Only medicine orders are delivered")
    if order["status"] not in ("confirmed", "processing"):
        raise HTTPException(status_code=400, detail="Order must be confirmed before assigning delivery")
    agent = get_document("appuser", payload.agent_id)
    if (not agent or agent.get("role") != "delivery_agent" or not agent.get("is_active", True)
            or agent.get("is_approved") is False):
        raise HTTPException(status_code=404, detail="Delivery agent not found")
    order["delivery"] = {"agent": payload.agent_id, "assigned_at": utcnow(), "delivered_at": None}
    _save_order(order)
    return serialize(order)


@app.patch("/api/orders/{order_id}/payment-status")
def update_payment_status(order_id: str, payload: PaymentStatusRequest,
                          user: Dict[str, Any] = Depends(require_roles("admin"))):
    order = _load("order", order_id, "Order")
    was_paid = order["payment"]["status"] == "paid"
    if not payments.apply_status(order["payment"], payload.status, "admin", payload.metadata):
        raise HTTPException(status_code=400,
                            detail="Payment status update rejected (out of order or invalid transition)")
    _save_order(order)
    if payload.status == "paid" and not was_paid:
        _finalize_paid(order)
    logger.info("[ORDERS] Payment status updated: %s -> %s", order["order_number"], payload.status)
    return serialize(order)


# -----------------------------
# Payments
# -----------------------------

class VerifyPaymentRequest(BaseModel):
    order_id: str = Field(..., description="Order id, order number or gateway order id")
    payment_id: Optional[str] = None
    signature: Optional[str] = None


@app.post("/api/orders/{order_id}/payments/create")
def create_payment_session(order_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    order = _load("order", order_id, "Order")
    if order["customer"] != user["_id"]:
        raise HTTPException(status_code=403, detail="Not your order")
    payment = order["payment"]
    if payment["method"] != "online":
        raise HTTPException(status_code=400, detail="Order is not paid online")
    if order["status"] == "cancelled":
        raise HTTPException(status_code=400, detail="Order is cancelled")
    if payment["status"] == "paid":
        raise HTTPException(status_code=409, detail="Order is already paid")

    if payment["status"] == "processing" and payment.get("payment_session_id"):
        return {
            "session_id": payment["payment_session_id"],
            "order_id": payment["gateway_order_id"],
            "app_id": settings.CASHFREE_APP_ID,
            "env": "PROD" if payments.is_production() else "SANDBOX",
            "amount": order["total_amount"],
        }

    customer = get_document("appuser", user["_id"])
    try:
        session = payments.create_session(order, customer)
    except payments.PaymentConfigError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except payments.PaymentGatewayError as e:
        payments.record_attempt(payment, "session_failed", error=str(e))
        _save_order(order)
        logger.error("[PAYMENTS][CF] Session creation failed for %s: %s", order["order_number"], e)
        raise HTTPException(status_code=502, detail="Payment init failed")

    payment["gateway_order_id"] = session["gateway_order_id"]
    payment["payment_session_id"] = session["session_id"]
    payments.apply_status(payment, "processing", "user", {"event": "session_created"})
    payments.record_attempt(payment, "session_created", gateway_response=session["raw"])
    _save_order(order)
    return {
        "session_id": session["session_id"],
        "order_id": session["gateway_order_id"],
        "app_id": session["app_id"],
        "env": session["env"],
        "amount": order["total_amount"],
    }


@app.post("/api/payments/verify")
def verify_payment(payload: VerifyPaymentRequest, user: Dict[str, Any] = Depends(get_current_user)):
    order = get_document("order", payload.order_id) or _find_order_by_gateway_id(payload.order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order["customer"] != user["_id"] and user["role"] != "admin":
        raise HTTPException(status_code=403, detail="Not your order")

    payment = order["payment"]
    gateway_order_id = payment.get("gateway_order_id") or order["order_number"]
    try:
        if payload.signature:
            if not payments.verify_payment_signature(gateway_order_id, payload.payment_id or "", payload.signature):
                raise HTTPException(status_code=400, detail="Invalid signature")
            new_status = "paid"
            payment["payment_id"] = payload.payment_id
            payment["signature"] = payload.signature
        else:
            new_status = payments.fetch_status(gateway_order_id)
    except payments.PaymentConfigError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except payments.PaymentGatewayError as e:
        logger.error("[PAYMENTS] Verification failed for %s: %s", order["order_number"], e)
        raise HTTPException(status_code=502, detail="Verification failed")

    was_paid = payment["status"] == "paid"
    if payments.apply_status(payment, new_status, "user", {"payment_id": payload.payment_id}):
        _save_order(order)
        logger.info("[PAYMENTS] Payment verified for %s: %s", order["order_number"], new_status)
        if new_status == "paid" and not was_paid:
            _finalize_paid(order)
    return {"order_id": str(order["_id"]), "order_number": order["order_number"],
            "payment_status": payment["status"]}


@app.post("/api/payments/cashfree/webhook")
async def cashfree_webhook(request: Request):
    raw = await request.body()
    if not payments.verify_webhook_signature(raw, request.headers.get("x-webhook-signature")):
        logger.warning("[PAYMENTS][CF][WEBHOOK] Invalid signature")
        raise HTTPException(status_code=400, detail="Invalid signature")
    try:
        event = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    event_type = event.get("type")
    data = event.get("data") or {}
    if event_type not in ("PAYMENT_SUCCESS_WEBHOOK", "PAYMENT_FAILED_WEBHOOK"):
        return {"success": True, "ignored": event_type}

    gateway_order_id = (data.get("order") or {}).get("order_id")
    order = _find_order_by_gateway_id(gateway_order_id) if gateway_order_id else None
    if not order:
        logger.info("[PAYMENTS][CF][WEBHOOK] Order not found for ID: %s", gateway_order_id)
        return {"success": True}

    new_status = "paid" if event_type == "PAYMENT_SUCCESS_WEBHOOK" else "failed"
    payment_info = data.get("payment") or {}
    payment = order["payment"]
    was_paid = payment["status"] == "paid"
    if payment_info.get("cf_payment_id"):
        payment["payment_id"] = str(payment_info["cf_payment_id"])
    applied = payments.apply_status(payment, new_status, "webhook", {
        "webhook_type": event_type,
        "payment_id": payment_info.get("cf_payment_id"),
        "amount": payment_info.get("payment_amount"),
    }, payments.new_webhook_id())
    if applied:
        _save_order(order)
        logger.info("[PAYMENTS][CF][WEBHOOK] Order %s payment status updated to %s", order["order_number"], new_status)
        if new_status == "paid" and not was_paid:
            _finalize_paid(order)
    else:
        logger.info("[PAYMENTS][CF][WEBHOOK] Payment status update rejected for order %s", order["order_number"])
    return {"success": True}


# Optional: basic schema exposure for tooling
@app.get("/schema")
def get_schema_info():
    return {
        "collections": ["appuser", "address", "medicine", "prescription", "doctor", "test", "order"],
        "description": f"Schemas defined in backend for {settings.APP_NAME}"
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
