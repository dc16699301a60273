"""
Customer notifications: email through Resend with an SMTP fallback, SMS through Twilio.

Delivery failures are logged and reported in the return value, never raised,
so an order or payment never fails because a message could not be sent.
"""
import logging
import smtplib
from email.message import EmailMessage
from html import escape
from typing import Any, Dict, Optional

import requests
from twilio.rest import Client

from config import settings

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"

STATUS_MESSAGES = {
    "confirmed": "has been confirmed by the pharmacy",
    "processing": "is being prepared",
    "out_for_delivery": "is out for delivery",
    "delivered": "has been delivered",
    "cancelled": "has been cancelled",
}


def _send_resend(to: str, subject: str, html: str, text: str) -> Dict[str, Any]:
    resp = requests.post(
        RESEND_URL,
        headers={"Authorization": f"Bearer {settings.RESEND_API_KEY}"},
        json={"from": settings.MAIL_FROM, "to": [to], "subject": subject, "html": html, "text": text},
        timeout=10,
    )
    resp.raise_for_status()
    return {"success": True, "provider": "resend", "id": resp.json().get("id")}


def _send_smtp(to: str, subject: str, html: str, text: str) -> Dict[str, Any]:
    msg = EmailMessage()
    msg["From"] = settings.MAIL_FROM
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(text)
    msg.add_alternative(html, subtype="html")
    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=10) as server:
        server.starttls()
        server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
        server.send_message(msg)
    return {"success": True, "provider": "smtp"}


def send_email(to: Optional[str], subject: str, html: str, text: str) -> Dict[str, Any]:
    if not to:
        return {"success": False, "error": "No recipient"}
    smtp_ready = bool(settings.SMTP_USER and settings.SMTP_PASSWORD)
    if not settings.RESEND_API_KEY and not smtp_ready:
        logger.warning("[EMAIL] No email provider configured, skipping '%s'", subject)
        return {"success": False, "error": "Email not configured"}

    if settings.RESEND_API_KEY:
        try:
            return _send_resend(to, subject, html, text)
        except requests.RequestException as e:
            logger.error("[EMAIL] Resend failed: %s", e)
            if not smtp_ready:
                return {"success": False, "error": str(e)}

    try:
        result = _send_smtp(to, subject, html, text)
        if settings.RESEND_API_KEY:
            result["provider"] = "smtp-fallback"
        return result
    except (smtplib.SMTPException, OSError) as e:
        logger.error("[EMAIL] SMTP failed: %s", e)
        return {"success": False, "error": str(e)}


def send_sms(to: Optional[str], body: str) -> Dict[str, Any]:
    if not to:
        return {"success": False, "error": "No recipient"}
    if not (settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_FROM):
        logger.info("[SMS] Twilio not configured, skipping message")
        return {"success": False, "error": "SMS not configured"}
    try:
        client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        message = client.messages.create(from_=settings.TWILIO_FROM, body=body, to=to)
        logger.info("[SMS] Sent (sid=%s)", message.sid)
        return {"success": True, "provider": "twilio", "id": message.sid}
    except Exception as e:
        logger.error("[SMS] Twilio send failed: %s", e)
        return {"success": False, "error": str(e)}


def _describe(order: Dict[str, Any]) -> str:
    if order["order_type"] == "doctor_booking":
        b = order.get("doctor_booking") or {}
        return f"doctor appointment {b.get('booking_number', '')} on {b.get('date')} at {b.get('start')}"
    if order["order_type"] == "test_booking":
        b = order.get("test_booking") or {}
        return f"test booking {b.get('booking_number', '')}"
    return f"order {order['order_number']}"


def send_order_confirmation(order: Dict[str, Any], customer: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Sent once, after the payment for an order is confirmed."""
    if not customer:
        return {"success": False, "error": "Customer not found"}
    what = _describe(order)
    subject = f"Payment received for {order['order_number']}"
    text = (f"Hi {customer.get('name', '')},\n\nWe received your payment of "
            f"{order['total_amount']:.2f} {order['payment'].get('currency', 'INR')} for your {what}.\n")
    html = (f"<p>Hi {escape(customer.get('name') or '')},</p><p>We received your payment of "
            f"<b>{order['total_amount']:.2f} {order['payment'].get('currency', 'INR')}</b> "
            f"for your {what}.</p>")
    result = send_email(customer.get("email"), subject, html, text)
    send_sms(customer.get("phone"), f"Payment received for your {what}.")
    return result


def send_status_update(order: Dict[str, Any], customer: Optional[Dict[str, Any]], new_status: str) -> Dict[str, Any]:
    if not customer:
        return {"success": False, "error": "Customer not found"}
    phrase = STATUS_MESSAGES.get(new_status, f"is now {new_status}")
    what = _describe(order)
    subject = f"Update on {order['order_number']}"
    text = f"Hi {customer.get('name', '')},\n\nYour {what} {phrase}.\n"
    html = f"<p>Hi {escape(customer.get('name') or '')},</p><p>Your {what} {phrase}.</p>"
    return send_email(customer.get("email"), subject, html, text)
