"""
Online payments through the Cashfree PG REST API.

Order payment status moves through pending -> processing -> paid and may drop
to failed or refunded at any time. Updates that would move it backwards are
rejected unless they come from a webhook newer than the last one applied.
"""
import hashlib
import hmac
import logging
import time
import uuid
from typing import Any, Dict, Optional

import requests

from config import settings
from database import utcnow

logger = logging.getLogger(__name__)

STATUS_PRIORITY = {
    "pending": 1,
    "processing": 2,
    "paid": 3,
    "failed": 0,
    "refunded": 0,
}

# Cashfree order_status -> payment status
GATEWAY_STATUS = {
    "PAID": "paid",
    "ACTIVE": "processing",
    "EXPIRED": "failed",
    "TERMINATED": "failed",
}


class PaymentGatewayError(Exception):
    pass


class PaymentConfigError(PaymentGatewayError):
    pass


# -----------------------------
# Payment status state machine
# -----------------------------

def can_transition(current: str, new: str, webhook_id: Optional[str] = None,
                   last_webhook_id: Optional[str] = None) -> bool:
    if STATUS_PRIORITY.get(new, 0) > STATUS_PRIORITY.get(current, 0):
        return True
    if new in ("failed", "refunded"):
        return True
    return bool(webhook_id and (not last_webhook_id or webhook_id > last_webhook_id))


def apply_status(payment: Dict[str, Any], new_status: str, source: str = "user",
                 metadata: Optional[Dict[str, Any]] = None, webhook_id: Optional[str] = None) -> bool:
    """Mutate an order's payment sub-document in place. Returns whether the change was applied."""
    if new_status not in STATUS_PRIORITY:
        return False
    if not can_transition(payment.get("status", "pending"), new_status, webhook_id, payment.get("last_webhook_id")):
        return False
    payment.setdefault("status_history", []).append({
        "status": new_status,
        "source": source,
        "timestamp": utcnow(),
        "metadata": metadata or {},
    })
    payment["status"] = new_status
    if webhook_id:
        payment["last_webhook_id"] = webhook_id
    return True


def record_attempt(payment: Dict[str, Any], status: str, gateway_response: Optional[Dict[str, Any]] = None,
                   error: Optional[str] = None) -> None:
    payment.setdefault("attempts", []).append({
        "attempted_at": utcnow(),
        "status": status,
        "gateway_response": gateway_response,
        "error": error,
    })


def new_webhook_id() -> str:
    # lexicographically increasing within a process
    return f"{int(time.time() * 1000):015d}_{uuid.uuid4().hex[:8]}"


# -----------------------------
# Signatures
# -----------------------------

def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(gateway_order_id: str, payment_id: str, signature: str) -> bool:
    secret = settings.PAYMENT_SIGNATURE_SECRET or settings.CASHFREE_SECRET_KEY
    if not secret:
        raise PaymentConfigError("Payment secret not configured")
    expected = _hmac_hex(secret, f"{gateway_order_id}|{payment_id}".encode("utf-8"))
    return hmac.compare_digest(expected, signature or "")


def verify_webhook_signature(raw_body: bytes, signature: Optional[str]) -> bool:
    """True when no webhook secret is configured or the signature matches."""
    if not settings.CASHFREE_WEBHOOK_SECRET:
        return True
    expected = _hmac_hex(settings.CASHFREE_WEBHOOK_SECRET, raw_body)
    return hmac.compare_digest(expected, signature or "")


# -----------------------------
# Cashfree client
# -----------------------------

def is_production() -> bool:
    return settings.CASHFREE_ENV.upper() in ("PROD", "PRODUCTION")


def _base_url() -> str:
    return "https://api.cashfree.com" if is_production() else "https://sandbox.cashfree.com"


def _headers() -> Dict[str, str]:
    if not settings.CASHFREE_APP_ID or not settings.CASHFREE_SECRET_KEY:
        raise PaymentConfigError("Cashfree keys not configured")
    return {
        "x-client-id": settings.CASHFREE_APP_ID,
        "x-client-secret": settings.CASHFREE_SECRET_KEY,
        "x-api-version": settings.CASHFREE_API_VERSION,
        "Content-Type": "application/json",
    }


def _call(method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    headers = _headers()
    try:
        resp = requests.request(method, _base_url() + path, headers=headers, json=body,
                                timeout=settings.PAYMENT_TIMEOUT_SECONDS)
    except requests.RequestException as e:
        raise PaymentGatewayError(f"Cashfree unreachable: {e}")
    try:
        data = resp.json()
    except ValueError:
        data = {"raw": resp.text}
    if resp.status_code >= 400:
        raise PaymentGatewayError(f"Cashfree {method} {path} failed ({resp.status_code}): {data.get('message', data)}")
    return data


def create_session(order: Dict[str, Any], customer: Dict[str, Any]) -> Dict[str, Any]:
    """Create a gateway order for an order's total and return its session."""
    body = {
        "order_id": order["order_number"],
        "order_amount": round(float(order["total_amount"]), 2),
        "order_currency": order["payment"].get("currency", "INR"),
        "customer_details": {
            "customer_id": str(customer["_id"]),
            "customer_phone": customer.get("phone") or "9999999999",
            "customer_email": customer.get("email") or "customer@example.com",
        },
    }
    data = _call("POST", "/pg/orders", body)
    if not data.get("payment_session_id"):
        raise PaymentGatewayError("Cashfree did not return session")
    logger.info("[PAYMENTS][CF] Session created for %s", order["order_number"])
    return {
        "session_id": data["payment_session_id"],
        "gateway_order_id": data.get("order_id", order["order_number"]),
        "app_id": settings.CASHFREE_APP_ID,
        "env": "PROD" if is_production() else "SANDBOX",
        "raw": data,
    }


def fetch_status(gateway_order_id: str) -> str:
    """Map the gateway's view of an order onto a payment status."""
    data = _call("GET", f"/pg/orders/{requests.utils.quote(gateway_order_id, safe='')}")
    return GATEWAY_STATUS.get(str(data.get("order_status", "")).upper(), "processing")


def refund(gateway_order_id: str, amount: float, note: str = "Refund on cancellation") -> Dict[str, Any]:
    body = {
        "refund_amount": round(float(amount), 2),
        "refund_id": uuid.uuid4().hex,
        "refund_note": note,
    }
    data = _call("POST", f"/pg/orders/{requests.utils.quote(gateway_order_id, safe='')}/refunds", body)
    logger.info("[PAYMENTS][CF] Refund requested for %s", gateway_order_id)
    return data
