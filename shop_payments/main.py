import json

import structlog
from fastapi import BackgroundTasks, FastAPI, Request, Header, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from shop_payments.config import get_settings
from shop_payments.database import Base, engine, SessionLocal
from shop_payments.errors import ShopPaymentsError, SignatureVerificationFailed
from shop_payments.logging_config import configure_logging
from shop_payments.reconciler import handle_event, send_order_notifications
from shop_payments.routes import router
from shop_payments.stripe_service import verify_webhook

configure_logging(get_settings().log_level)
logger = structlog.get_logger()

app = FastAPI(title="Shop Payments Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(ShopPaymentsError)
async def shop_payments_error_handler(request: Request, exc: ShopPaymentsError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    # A malformed checkout body is the same client error as an invalid cart.
    if request.url.path == "/payments/intent":
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors()), "code": "invalid_request"})
    return await request_validation_exception_handler(request, exc)


def reconcile_event(event: dict):
    db = SessionLocal()
    try:
        return handle_event(db, event)
    finally:
        db.close()


@app.post("/webhook")
async def stripe_webhook(request: Request, background_tasks: BackgroundTasks, stripe_signature: str = Header(None)):
    # Raw bytes only: re-serialized JSON would not match the signature.
    payload = await request.body()
    log = logger.bind(component="webhook")

    if not stripe_signature:
        log.warning("signature_missing")
        raise HTTPException(status_code=400, detail="Missing signature")
    try:
        verify_webhook(payload, stripe_signature)
    except SignatureVerificationFailed:
        log.warning("signature_verification_failed", client=request.client.host if request.client else None)
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        event = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")

    # Database writes run off the event loop; mail goes out after the response.
    result = await run_in_threadpool(reconcile_event, event)
    if result.notify:
        background_tasks.add_task(send_order_notifications, SessionLocal, result.order_id)
    return {"ok": True, "status": result.outcome}
