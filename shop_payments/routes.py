from datetime import timedelta
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from shop_payments.auth import optional_buyer, require_admin, verify_token
from shop_payments.cart import AddressIn, CartLineItem, load_cart
from shop_payments.checkout import start_checkout
from shop_payments.config import get_settings
from shop_payments.database import SessionLocal
from shop_payments.models import OrderStatus
from shop_payments.repository import OrderRepository

router = APIRouter()


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[CartLineItem] = Field(alias="cartLineItems")
    currency: str = "EUR"
    buyer_email: Optional[str] = Field(None, alias="buyerEmail")
    address: Optional[AddressIn] = None
    repair_type: Optional[str] = Field(None, alias="repairType")
    shipping_option: Optional[str] = Field(None, alias="shippingOption")
    total: Optional[Decimal] = None    # client total, never trusted


def order_to_dict(order, detailed=False):
    data = {
        "orderId": order.id,
        "status": order.status,
        "amount": order.amount_minor_units,
        "currency": order.currency,
    }
    if detailed:
        data.update({
            "items": load_cart(order.cart_snapshot),
            "address": order.address.to_dict() if order.address else None,
            "repairType": order.repair_type,
            "shippingOption": order.shipping_option,
            "createdAt": order.created_at.isoformat() if order.created_at else None,
        })
    return data


def admin_order_to_dict(order):
    data = order_to_dict(order, detailed=True)
    data.update({
        "buyerEmail": order.buyer_email,
        "buyerId": order.buyer_id,
        "paymentIntent": order.payment_intent_ref,
        "updatedAt": order.updated_at.isoformat() if order.updated_at else None,
    })
    return data


@router.post("/payments/intent")
def create_payment_intent(request: CheckoutRequest, buyer=Depends(optional_buyer)):
    buyer = buyer or {}
    db = SessionLocal()
    try:
        return start_checkout(
            db,
            request.items,
            currency=request.currency,
            buyer_email=request.buyer_email or buyer.get("email"),
            address=request.address,
            buyer_id=buyer.get("sub"),
            repair_type=request.repair_type,
            shipping_option=request.shipping_option,
            client_total=request.total,
        )
    finally:
        db.close()


def can_view_order(order, payment_intent: Optional[str], claims: Optional[dict]) -> bool:
    """The intent id from the payment return URL, the owning buyer, or an admin may read an order."""
    if payment_intent and payment_intent == order.payment_intent_ref:
        return True
    if not claims:
        return False
    if claims.get("role") == "admin":
        return True
    if order.buyer_id and claims.get("sub") == order.buyer_id:
        return True
    return bool(order.buyer_email) and claims.get("email") == order.buyer_email


@router.get("/orders/{order_id}")
def get_order(order_id: str, payment_intent: Optional[str] = None, buyer=Depends(optional_buyer)):
    db = SessionLocal()
    try:
        order = OrderRepository(db).get(order_id)
        # Unknown and foreign orders look the same to the caller.
        if order is None or not can_view_order(order, payment_intent, buyer):
            raise HTTPException(status_code=404, detail="Order not found")
        return order_to_dict(order)
    finally:
        db.close()


@router.get("/account/orders")
def list_account_orders(claims=Depends(verify_token)):
    db = SessionLocal()
    try:
        orders = OrderRepository(db).list_for_buyer(buyer_id=claims.get("sub"), email=claims.get("email"))
        return {"orders": [order_to_dict(order, detailed=True) for order in orders]}
    finally:
        db.close()


@router.post("/admin/orders/sweep")
def sweep_abandoned_orders(older_than_hours: Optional[int] = None, admin=Depends(require_admin)):
    hours = older_than_hours if older_than_hours is not None else get_settings().abandon_after_hours
    if hours < 0:
        raise HTTPException(status_code=400, detail="older_than_hours must not be negative")
    db = SessionLocal()
    try:
        count = OrderRepository(db).mark_abandoned(timedelta(hours=hours))
    finally:
        db.close()
    return {"abandoned": count}


@router.get("/admin/orders")
def list_orders(status: Optional[str] = None, limit: int = Query(50, ge=1, le=200), offset: int = Query(0, ge=0),
                admin=Depends(require_admin)):
    if status is not None and status not in {s.value for s in OrderStatus}:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    db = SessionLocal()
    try:
        orders = OrderRepository(db).list_all(status=status, limit=limit, offset=offset)
        return {"orders": [admin_order_to_dict(order) for order in orders]}
    finally:
        db.close()


@router.get("/admin/orders/{order_id}")
def get_order_admin(order_id: str, admin=Depends(require_admin)):
    db = SessionLocal()
    try:
        order = OrderRepository(db).get(order_id)
        if order is None:
            raise HTTPException(status_code=404, detail="Order not found")
        return admin_order_to_dict(order)
    finally:
        db.close()
