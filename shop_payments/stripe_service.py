import stripe
import structlog

from shop_payments.config import get_settings
from shop_payments.errors import PaymentProviderError, SignatureVerificationFailed

logger = structlog.get_logger()


def _configure():
    settings = get_settings()
    stripe.api_key = settings.stripe_secret_key
    stripe.default_http_client = stripe.RequestsClient(timeout=settings.stripe_timeout_seconds)


def create_payment(amount: int, currency: str, metadata: dict, idempotency_key: str, receipt_email: str = None):
    """Open a PaymentIntent. Processor failures surface as PaymentProviderError."""
    _configure()
    params = dict(
        amount=amount,
        currency=currency.lower(),
        automatic_payment_methods={"enabled": True},
        metadata=metadata,
        idempotency_key=idempotency_key,
    )
    if receipt_email:
        params["receipt_email"] = receipt_email
    try:
        return stripe.PaymentIntent.create(**params)
    except stripe.APIConnectionError as exc:
        # Covers timeouts: the intent may or may not exist, retrying with the
        # same idempotency key is safe.
        raise PaymentProviderError(f"Payment provider unreachable: {exc}", retryable=True) from exc
    except (stripe.RateLimitError, stripe.APIError) as exc:
        raise PaymentProviderError(f"Payment provider unavailable: {exc}", retryable=True) from exc
    except stripe.StripeError as exc:
        raise PaymentProviderError(f"Payment provider rejected the request: {exc}", retryable=False) from exc


def verify_webhook(payload: bytes, signature: str) -> None:
    """Check the Stripe-Signature header against the untouched request body."""
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        raise RuntimeError("STRIPE_WEBHOOK_SECRET is not set")
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            signature,
            settings.stripe_webhook_secret,
            settings.webhook_tolerance_seconds,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
        raise SignatureVerificationFailed("Invalid signature") from exc
