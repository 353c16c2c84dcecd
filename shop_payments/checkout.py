import structlog
from sqlalchemy.exc import SQLAlchemyError

from shop_payments.cart import (
    compute_amount_minor_units,
    build_intent_metadata,
    normalize_currency,
    serialize_cart,
)
from shop_payments.errors import PersistenceError
from shop_payments.models import new_order_id
from shop_payments.repository import OrderRepository
from shop_payments.stripe_service import create_payment

logger = structlog.get_logger()


def start_checkout(db, items, currency="EUR", buyer_email=None, address=None,
                   buyer_id=None, repair_type=None, shipping_option=None, client_total=None):
    """Open a payment intent for the cart and record the order optimistically.

    The order is written as CREATED before the buyer has paid; the webhook
    reconciler is the only writer of the final status.
    """
    log = logger.bind(component="checkout")
    currency = normalize_currency(currency)
    amount = compute_amount_minor_units(items, currency)
    if client_total is not None:
        log.info("client_total_ignored", client_total=str(client_total), amount=amount)

    order_id = new_order_id()
    address_data = address.to_metadata() if address is not None else None
    metadata = build_intent_metadata(
        order_id,
        items,
        address=address_data,
        email=buyer_email,
        buyer_id=buyer_id,
        repair_type=repair_type,
        shipping_option=shipping_option,
    )

    intent = create_payment(amount, currency, metadata, idempotency_key=order_id, receipt_email=buyer_email)
    log = log.bind(order_id=order_id, payment_intent=intent.id)
    log.info("payment_intent_created", amount=amount, currency=currency)

    repo = OrderRepository(db)
    try:
        address_id = repo.create_address(address_data).id if address_data else None
        order = repo.create_order(
            id=order_id,
            payment_intent_ref=intent.id,
            amount_minor_units=amount,
            currency=currency,
            buyer_email=buyer_email,
            cart_snapshot=serialize_cart(items),
            address_id=address_id,
            buyer_id=buyer_id,
            repair_type=repair_type,
            shipping_option=shipping_option,
        )
    except (PersistenceError, SQLAlchemyError) as exc:
        db.rollback()
        # The processor now holds an intent without an order row. The webhook
        # rebuilds the order from the intent metadata if the buyer pays.
        log.error("manual_reconciliation_required", error=str(exc))
        if isinstance(exc, PersistenceError):
            raise
        raise PersistenceError(f"Order insert failed: {exc}") from exc

    return {
        "clientSecret": intent.client_secret,
        "orderId": order.id,
        "amount": amount,
        "currency": currency,
    }
