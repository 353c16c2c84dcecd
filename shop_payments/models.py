import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from shop_payments.database import Base


def _utcnow():
    return datetime.now(timezone.utc)


def new_order_id() -> str:
    return str(uuid.uuid4())


class OrderStatus(str, enum.Enum):
    CREATED = "CREATED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"    # stale CREATED row, still reconcilable


TERMINAL_STATUSES = (OrderStatus.SUCCEEDED.value, OrderStatus.FAILED.value)
OPEN_STATUSES = (OrderStatus.CREATED.value, OrderStatus.ABANDONED.value)


class OrderAddress(Base):
    __tablename__ = "order_addresses"

    id = Column(String, primary_key=True, default=new_order_id)
    name = Column(String, nullable=False, default="")
    line1 = Column(String, nullable=False, default="")
    line2 = Column(String, nullable=True)
    city = Column(String, nullable=False, default="")
    state = Column(String, nullable=True)
    postal_code = Column(String, nullable=False, default="")
    country = Column(String, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def to_dict(self):
        return {
            "name": self.name,
            "line1": self.line1,
            "line2": self.line2,
            "city": self.city,
            "state": self.state,
            "postalCode": self.postal_code,
            "country": self.country,
        }


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=new_order_id)
    payment_intent_ref = Column(String, unique=True, index=True, nullable=False)  # Stripe PaymentIntent ID
    amount_minor_units = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False, default=OrderStatus.CREATED.value, index=True)
    buyer_email = Column(String, nullable=True, index=True)
    cart_snapshot = Column(Text, nullable=False, default="[]")  # JSON, written once
    address_id = Column(String, ForeignKey("order_addresses.id"), nullable=True)
    buyer_id = Column(String, nullable=True, index=True)
    repair_type = Column(String, nullable=True)
    shipping_option = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    address = relationship(OrderAddress, lazy="joined")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
