"""Turns signed Stripe payment intent events into finalized orders.

One intent maps to at most one order. A delivery that finds the order already
SUCCEEDED or FAILED is a duplicate and changes nothing, so Stripe may resend
an event any number of times.
"""

from collections import namedtuple

import structlog
from sqlalchemy.exc import SQLAlchemyError

from shop_payments.cart import parse_address_metadata, snapshot_from_metadata
from shop_payments.models import OrderStatus, new_order_id
from shop_payments.notifier import send_order_confirmation, send_admin_notification
from shop_payments.repository import OrderRepository

logger = structlog.get_logger()

EVENT_STATUSES = {
    "payment_intent.succeeded": OrderStatus.SUCCEEDED.value,
    "payment_intent.payment_failed": OrderStatus.FAILED.value,
    "payment_intent.canceled": OrderStatus.FAILED.value,
}

FINALIZED = "finalized"
DUPLICATE = "duplicate"
IGNORED = "ignored"

# ``notify`` is set only for a genuine transition into SUCCEEDED.
ReconcileResult = namedtuple("ReconcileResult", ["outcome", "order_id", "notify"])


def extract_shipping_address(intent: dict):
    """Structured shipping address attached to the intent by Stripe, if any."""
    shipping = intent.get("shipping") or {}
    structured = shipping.get("address")
    if not structured:
        return None
    return {
        "name": shipping.get("name") or "",
        "line1": structured.get("line1"),
        "line2": structured.get("line2"),
        "city": structured.get("city"),
        "state": structured.get("state"),
        "postalCode": structured.get("postal_code") or structured.get("postalCode"),
        "country": structured.get("country"),
    }


def extract_metadata_address(intent: dict):
    return parse_address_metadata((intent.get("metadata") or {}).get("address"))


def extract_email(intent: dict):
    return intent.get("receipt_email") or (intent.get("metadata") or {}).get("email") or None


def order_defaults(intent: dict) -> dict:
    """Order columns rebuilt from the intent when checkout never stored the order."""
    metadata = intent.get("metadata") or {}
    currency = (intent.get("currency") or "").upper()
    amount = intent.get("amount") or 0
    return {
        "id": metadata.get("order_id") or new_order_id(),
        "amount_minor_units": amount,
        "currency": currency,
        "buyer_email": extract_email(intent),
        "cart_snapshot": snapshot_from_metadata(metadata, amount, currency),
        "buyer_id": metadata.get("buyer_id"),
        "repair_type": metadata.get("repair_type"),
        "shipping_option": metadata.get("shipping_option"),
    }


def handle_event(db, event: dict) -> ReconcileResult:
    """Apply one verified event. Persistence errors propagate so Stripe retries.

    Sends no mail itself; the caller schedules ``send_order_notifications``
    when ``notify`` is set.
    """
    event_type = event.get("type")
    status = EVENT_STATUSES.get(event_type)
    log = logger.bind(component="webhook", event_id=event.get("id"), event_type=event_type)
    if status is None:
        log.info("webhook_event_ignored")
        return ReconcileResult(IGNORED, None, False)

    intent = (event.get("data") or {}).get("object") or {}
    intent_id = intent.get("id")
    if not intent_id:
        log.warning("webhook_event_without_intent")
        return ReconcileResult(IGNORED, None, False)
    log = log.bind(payment_intent=intent_id)

    address = fallback_address = None
    if status == OrderStatus.SUCCEEDED.value:
        address = extract_shipping_address(intent)
        fallback_address = extract_metadata_address(intent)
    order, transitioned = OrderRepository(db).upsert_order_by_intent_ref(
        intent_id, status, order_defaults(intent), address=address, fallback_address=fallback_address
    )
    if not transitioned:
        if order.status == OrderStatus.FAILED.value and status == OrderStatus.SUCCEEDED.value:
            # Stripe captured the money after a declined attempt on the same intent.
            log.error("paid_order_marked_failed", order_id=order.id, amount=intent.get("amount"),
                      action="manual_reconciliation_required")
        else:
            log.info("webhook_duplicate", order_id=order.id, status=order.status)
        return ReconcileResult(DUPLICATE, order.id, False)

    log.info("order_finalized", order_id=order.id, status=order.status)
    return ReconcileResult(FINALIZED, order.id, status == OrderStatus.SUCCEEDED.value)


def send_order_notifications(session_factory, order_id: str):
    """Mail the buyer and the shop about a paid order. Runs after the webhook has answered."""
    log = logger.bind(component="notifier", order_id=order_id)
    db = session_factory()
    try:
        order = OrderRepository(db).get(order_id)
        if order is None:
            log.error("order_notification_skipped", reason="order not found")
            return
        notify_order_paid(order, log)
    except SQLAlchemyError as exc:
        log.error("order_notification_failed", error=str(exc))
    finally:
        db.close()


def notify_order_paid(order, log):
    if order.buyer_email:
        try:
            send_order_confirmation(order)
            log.info("order_confirmation_sent", order_id=order.id)
        except Exception as exc:
            log.error("order_confirmation_failed", order_id=order.id, error=str(exc))
    else:
        log.warning("order_confirmation_skipped", order_id=order.id, reason="no buyer email")
    try:
        send_admin_notification(order)
    except Exception as exc:
        log.error("admin_notification_failed", order_id=order.id, error=str(exc))
