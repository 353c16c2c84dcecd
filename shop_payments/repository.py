"""Order and address persistence.

``payment_intent_ref`` is the serialization point: every status change is a
conditional UPDATE that only matches rows still open, so concurrent webhook
deliveries for one intent produce exactly one winner.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import update, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from shop_payments.errors import PersistenceError
from shop_payments.models import Order, OrderAddress, OrderStatus, OPEN_STATUSES


class OrderRepository:

    def __init__(self, db):
        self.db = db

    def get(self, order_id: str):
        return self.db.get(Order, order_id)

    def get_by_intent_ref(self, payment_intent_ref: str):
        return self.db.query(Order).filter_by(payment_intent_ref=payment_intent_ref).first()

    def create_address(self, address: dict) -> OrderAddress:
        row = OrderAddress(
            name=address.get("name") or "",
            line1=address.get("line1") or "",
            line2=address.get("line2") or None,
            city=address.get("city") or "",
            state=address.get("state") or None,
            postal_code=address.get("postalCode") or address.get("postal_code") or "",
            country=address.get("country") or "",
        )
        self.db.add(row)
        self.db.flush()
        return row

    def create_order(self, **fields) -> Order:
        """Insert a CREATED order. A second insert for the same intent returns the existing row."""
        fields.setdefault("status", OrderStatus.CREATED.value)
        try:
            order = Order(**fields)
            self.db.add(order)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.get_by_intent_ref(fields["payment_intent_ref"])
            if existing is None:
                raise PersistenceError("Order insert failed")
            return existing
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError(f"Order insert failed: {exc}") from exc
        return order

    def transition(self, payment_intent_ref: str, status: str, **fields) -> bool:
        """Move an open order into ``status``. Returns False if no open row matched."""
        values = dict(fields, status=status, updated_at=datetime.now(timezone.utc))
        result = self.db.execute(
            update(Order)
            .where(Order.payment_intent_ref == payment_intent_ref)
            .where(Order.status.in_(OPEN_STATUSES))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def upsert_order_by_intent_ref(self, payment_intent_ref: str, status: str, defaults: dict,
                                   address: dict = None, fallback_address: dict = None):
        """Finalize the order for an intent, creating it from ``defaults`` if it is unknown.

        ``address`` replaces the stored address when it differs;
        ``fallback_address`` is only used when the order has none.
        Returns ``(order, transitioned)``. ``transitioned`` is False when the
        order was already terminal, in which case nothing was written.
        """
        try:
            existing = self.get_by_intent_ref(payment_intent_ref)
            if existing is not None and existing.is_terminal:
                return existing, False

            fields = {}
            if address and _address_changed(existing, address):
                fields["address_id"] = self.create_address(address).id
            elif not address and fallback_address and (existing is None or existing.address_id is None):
                fields["address_id"] = self.create_address(fallback_address).id

            if existing is not None:
                if not existing.buyer_email and defaults.get("buyer_email"):
                    fields["buyer_email"] = defaults["buyer_email"]
                if self.transition(payment_intent_ref, status, **fields):
                    self.db.commit()
                    return self._reload(payment_intent_ref), True
                # Another delivery won the race.
                self.db.rollback()
                return self._reload(payment_intent_ref), False

            order = Order(payment_intent_ref=payment_intent_ref, status=status, **dict(defaults, **fields))
            self.db.add(order)
            try:
                self.db.commit()
                return order, True
            except IntegrityError:
                # The checkout (or a concurrent delivery) inserted the row first.
                self.db.rollback()
                return self.upsert_order_by_intent_ref(payment_intent_ref, status, defaults, address, fallback_address)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError(f"Order reconciliation failed: {exc}") from exc

    def list_for_buyer(self, buyer_id: str = None, email: str = None):
        clauses = []
        if buyer_id:
            clauses.append(Order.buyer_id == buyer_id)
        if email:
            clauses.append(Order.buyer_email == email)
        if not clauses:
            return []
        return self.db.query(Order).filter(or_(*clauses)).order_by(Order.created_at.desc()).all()

    def list_all(self, status: str = None, limit: int = 50, offset: int = 0):
        query = self.db.query(Order)
        if status:
            query = query.filter(Order.status == status)
        return query.order_by(Order.created_at.desc()).offset(offset).limit(limit).all()

    def mark_abandoned(self, older_than: timedelta) -> int:
        cutoff = datetime.now(timezone.utc) - older_than
        try:
            result = self.db.execute(
                update(Order)
                .where(Order.status == OrderStatus.CREATED.value)
                .where(Order.created_at < cutoff)
                .values(status=OrderStatus.ABANDONED.value, updated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError(f"Abandon sweep failed: {exc}") from exc
        return result.rowcount

    def _reload(self, payment_intent_ref: str):
        self.db.expire_all()
        return self.get_by_intent_ref(payment_intent_ref)


def _address_changed(order, address: dict) -> bool:
    if order is None or order.address is None:
        return True
    current = order.address.to_dict()
    incoming = {
        "name": address.get("name") or "",
        "line1": address.get("line1") or "",
        "line2": address.get("line2") or None,
        "city": address.get("city") or "",
        "state": address.get("state") or None,
        "postalCode": address.get("postalCode") or address.get("postal_code") or "",
        "country": address.get("country") or "",
    }
    return current != incoming
