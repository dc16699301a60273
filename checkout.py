"""
Checkout rules shared by the three booking types.

A medicine order is priced from the catalog, never from client-supplied
prices, and cannot be placed while any line is an Rx item and no usable
prescription of the customer is attached.
"""
import logging
import random
import string
import time
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pydantic import BaseModel, Field
from pymongo.errors import DuplicateKeyError

from auth import APPROVED
from database import db, parse_id, utcnow
from delivery import compute_tax, quote_delivery
from schemas import DeliveryAddress, Order, OrderItem, Payment
import payments

logger = logging.getLogger(__name__)

ORDER_PREFIX = {"medicine": "MED", "doctor_booking": "DOC", "test_booking": "TEST"}
USABLE_PRESCRIPTION_STATUSES = ("pending", "under_review", "approved")
CANCELLABLE_STATUSES = ("pending",)


class CheckoutError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class CartLine(BaseModel):
    medicine: str
    quantity: int = Field(..., ge=1)


def _suffix(length: int) -> str:
    return "".join(random.choices(string.ascii_uppercase + string.digits, k=length))


def new_order_number(order_type: str) -> str:
    return f"{ORDER_PREFIX.get(order_type, 'ORD')}-{int(time.time() * 1000)}-{_suffix(6)}"


def new_booking_number(prefix: str) -> str:
    return f"{prefix}{int(time.time() * 1000)}{_suffix(4)}"


def new_prescription_number() -> str:
    return f"RX{int(time.time() * 1000)}{_suffix(4)}"


def price_cart(lines: List[CartLine]) -> Tuple[List[OrderItem], float, bool]:
    """Resolve cart lines against the catalog. Returns (items, subtotal, requires_rx)."""
    if not lines:
        raise CheckoutError("No items in your cart. Please add some medicines.")
    items: List[OrderItem] = []
    subtotal = 0.0
    requires_rx = False
    for line in lines:
        oid = parse_id(line.medicine)
        med = db["medicine"].find_one({"_id": oid, "is_active": True}) if oid else None
        if not med:
            raise CheckoutError(f"Medicine not found: {line.medicine}", 404)
        if int(med.get("stock_quantity", 0)) < line.quantity:
            raise CheckoutError(f"Insufficient stock for {med['name']}")
        price = float(med["price"])
        total = round(price * line.quantity, 2)
        items.append(OrderItem(
            medicine=str(med["_id"]),
            name=med["name"],
            quantity=line.quantity,
            price=price,
            total=total,
            requires_prescription=bool(med.get("requires_prescription")),
        ))
        subtotal += total
        requires_rx = requires_rx or bool(med.get("requires_prescription"))
    return items, round(subtotal, 2), requires_rx


def is_usable_prescription(prescription: Dict[str, Any]) -> bool:
    if prescription.get("status") not in USABLE_PRESCRIPTION_STATUSES:
        return False
    valid_until = prescription.get("valid_until")
    return valid_until is None or valid_until > utcnow()


def check_prescription(customer_id: str, prescription_id: Optional[str], requires_rx: bool) -> Optional[str]:
    """Gate checkout on a prescription. Returns the attached prescription id, if any."""
    if not prescription_id:
        if requires_rx:
            raise CheckoutError("Prescription required for prescription medicines. "
                                "Please upload a valid prescription.")
        return None
    oid = parse_id(prescription_id)
    prescription = db["prescription"].find_one({"_id": oid, "customer": customer_id}) if oid else None
    if not prescription:
        raise CheckoutError("Invalid prescription")
    if not is_usable_prescription(prescription):
        raise CheckoutError("Prescription is expired or was rejected. Please upload a valid prescription.")
    return str(prescription["_id"])


def build_medicine_order(customer_id: str, lines: List[CartLine], address: Optional[DeliveryAddress],
                         prescription_id: Optional[str], payment_method: str) -> Dict[str, Any]:
    """Validate a cart and produce the order document (not yet inserted)."""
    items, subtotal, requires_rx = price_cart(lines)
    attached = check_prescription(customer_id, prescription_id, requires_rx)
    if address is None or not address.street.strip():
        raise CheckoutError("Delivery address is required. Please enter a location or address.")

    quote = quote_delivery(address.location, subtotal)
    if not quote.is_deliverable:
        raise CheckoutError(quote.message or "Address is outside the delivery area")
    address = address.model_copy(update={"distance_km": quote.distance_km})

    delivery_charges = quote.final_fee or 0.0
    tax = compute_tax(subtotal)
    total = round(subtotal + delivery_charges + tax, 2)
    return Order(
        order_number=new_order_number("medicine"),
        customer=customer_id,
        order_type="medicine",
        items=items,
        prescription=attached,
        is_prescription_order=attached is not None,
        subtotal=subtotal,
        delivery_charges=delivery_charges,
        tax=tax,
        total_amount=total,
        delivery_address=address,
        payment=Payment(method=payment_method, amount=total),
    ).model_dump()


def booking_order(customer_id: str, order_type: str, amount: float, booking_field: str,
                  booking: Dict[str, Any]) -> Dict[str, Any]:
    """Order document for a doctor or test booking, always paid online."""
    amount = round(float(amount), 2)
    return Order(**{
        "order_number": new_order_number(order_type),
        "customer": customer_id,
        "order_type": order_type,
        booking_field: booking,
        "subtotal": amount,
        "total_amount": amount,
        "payment": Payment(method="online", amount=amount),
    }).model_dump()


# -----------------------------
# Stock
# -----------------------------

def reserve_stock(items: List[Dict[str, Any]]) -> None:
    """Atomically take stock for every line, rolling back on the first shortage."""
    taken = []
    for it in items:
        res = db["medicine"].update_one(
            {"_id": ObjectId(it["medicine"]), "stock_quantity": {"$gte": it["quantity"]}},
            {"$inc": {"stock_quantity": -it["quantity"]}},
        )
        if res.modified_count == 0:
            release_stock(taken)
            raise CheckoutError(f"Insufficient stock for {it.get('name', it['medicine'])}")
        taken.append(it)


def release_stock(items: List[Dict[str, Any]]) -> None:
    for it in items:
        db["medicine"].update_one({"_id": ObjectId(it["medicine"])}, {"$inc": {"stock_quantity": it["quantity"]}})


def assign_pharmacy(order: Dict[str, Any]) -> Optional[str]:
    """Pick the approved, active pharmacist whose stocked medicines cover most of the order."""
    if order.get("order_type") != "medicine" or not order.get("items"):
        return None
    needed = sum(it["quantity"] for it in order["items"])
    best, best_coverage = None, 0.0
    for pharmacist in db["appuser"].find({"role": "pharmacist", "is_active": True, **APPROVED}):
        pid = str(pharmacist["_id"])
        covered = 0
        for it in order["items"]:
            med = db["medicine"].find_one({"_id": ObjectId(it["medicine"]), "added_by": pid, "is_active": True})
            if med and med.get("stock_quantity", 0) >= it["quantity"]:
                covered += it["quantity"]
        coverage = covered / needed * 100 if needed else 0
        if coverage > best_coverage:
            best, best_coverage = pid, coverage
    if best:
        logger.info("[ASSIGN_PHARMACY] Assigned pharmacy %s with %.0f%% stock coverage", best, best_coverage)
    else:
        logger.info("[ASSIGN_PHARMACY] No pharmacist found with required stock")
    return best


# -----------------------------
# Doctor slot holds
# -----------------------------

def _slot_key(booking: Dict[str, Any]) -> str:
    return f"{booking['doctor']}|{booking['date'][:10]}|{booking['start']}"


def hold_slot(booking: Dict[str, Any]) -> None:
    """Claim a doctor's 15-minute slot. The slot key is the document _id, so a second claim fails."""
    try:
        db["doctorslot"].insert_one({
            "_id": _slot_key(booking),
            "doctor": booking["doctor"],
            "date": booking["date"][:10],
            "start": booking["start"],
            "held_at": utcnow(),
        })
    except DuplicateKeyError:
        raise CheckoutError("Overlapping slot already booked", status_code=409)


def release_slot(booking: Dict[str, Any]) -> None:
    db["doctorslot"].delete_one({"_id": _slot_key(booking)})


# -----------------------------
# Reorder
# -----------------------------

def reorder_lines(order: Dict[str, Any]) -> Dict[str, Any]:
    items, unavailable, adjusted = [], [], []
    for it in order.get("items") or []:
        oid = parse_id(it.get("medicine"))
        med = db["medicine"].find_one({"_id": oid}) if oid else None
        name = (med or {}).get("name") or it.get("name") or "Medicine"
        if not med or not med.get("is_active", True):
            unavailable.append({"medicine": it.get("medicine"), "name": name, "reason": "inactive"})
            continue
        stock = int(med.get("stock_quantity", 0))
        if stock <= 0:
            unavailable.append({"medicine": it["medicine"], "name": name, "reason": "out_of_stock"})
            continue
        qty = min(it["quantity"], stock)
        if qty < it["quantity"]:
            adjusted.append({"medicine": it["medicine"], "name": name, "from": it["quantity"], "to": qty})
        items.append({
            "medicine": it["medicine"],
            "name": name,
            "price": float(med["price"]),
            "quantity": qty,
            "requires_prescription": bool(med.get("requires_prescription")),
        })

    prescription_id = None
    if order.get("is_prescription_order") and order.get("prescription"):
        p = db["prescription"].find_one({"_id": parse_id(order["prescription"])})
        if p and is_usable_prescription(p):
            prescription_id = str(p["_id"])
    return {"items": items, "unavailable": unavailable, "adjusted": adjusted, "prescription": prescription_id}


# -----------------------------
# Cancellation
# -----------------------------

def apply_cancellation(order: Dict[str, Any], cancelled_by: str, reason: Optional[str] = None,
                       allowed: Tuple[str, ...] = CANCELLABLE_STATUSES) -> Dict[str, Any]:
    """Cancel an order in place. Returns the outcome of any refund attempt.

    Customers may only cancel pending orders; the pharmacy may also cancel
    confirmed and processing ones, which releases any reserved stock.

    A pending or processing payment is marked failed. A paid online payment is
    refunded through the gateway. A refund failure is reported and does not
    stop the cancellation.
    """
    if order["status"] not in allowed:
        raise CheckoutError("Order cannot be cancelled at this stage. Only newly placed orders can be cancelled.")

    order["status"] = "cancelled"
    order["cancellation"] = {"reason": (reason or "").strip() or "Cancelled by customer",
                             "cancelled_by": cancelled_by, "cancelled_at": utcnow()}
    if order.get("doctor_booking"):
        order["doctor_booking"]["status"] = "cancelled"
        release_slot(order["doctor_booking"])
    if order.get("test_booking"):
        order["test_booking"]["status"] = "cancelled"
    if order.get("stock_reserved"):
        release_stock(order["items"])
        order["stock_reserved"] = False

    payment = order["payment"]
    if payment["status"] in ("pending", "processing"):
        payments.apply_status(payment, "failed", "user", {"reason": "order_cancelled"})
    elif payment["status"] == "paid" and payment["method"] == "online":
        return refund_payment(order, "auto_refund_on_cancel")
    return {"attempted": False, "success": False, "message": None}


def refund_payment(order: Dict[str, Any], reason: str) -> Dict[str, Any]:
    """Refund a paid online payment through the gateway and mark it refunded."""
    payment = order["payment"]
    refund = {"attempted": True, "success": False, "message": None}
    try:
        response = payments.refund(payment.get("gateway_order_id") or order["order_number"], payment["amount"])
        refund["success"] = True
        payments.apply_status(payment, "refunded", "admin", {"reason": reason, "refund_id": response.get("refund_id")})
    except payments.PaymentGatewayError as e:
        logger.error("[ORDERS][REFUND_ERROR] %s (%s): %s", order["order_number"], reason, e)
        refund["message"] = str(e)
    return refund
