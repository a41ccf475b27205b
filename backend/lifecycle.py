"""
Order lifecycle: placement, status transitions, payment settlement and reviews.

All state changes of an order go through this module. The legal status moves
are the ``TRANSITIONS`` table; every write to an existing order is a
conditional UPDATE on the order's ``version`` so a concurrent writer makes the
second update fail with ``Conflict`` instead of silently overwriting it.
Notifications are sent only after the write has been committed, and a failing
notification never fails the operation.
"""
import asyncio
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

import auth
import config
import database
import errors
import models
from auth import Capability
from models import OrderStatus, OrderType, PaymentMethod, PaymentStatus, utcnow
from notifications import STAFF_ROOM, hub, order_room

logger = logging.getLogger(__name__)

TRANSITIONS = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

MIN_PREPARATION_MINUTES = 15
DELIVERY_MINUTES = 20
PICKUP_MINUTES = 5

ORDER_NUMBER_ATTEMPTS = 3
PAYMENT_SETTLE_ATTEMPTS = 3


def can_transition(current, target) -> bool:
    return OrderStatus(target) in TRANSITIONS[OrderStatus(current)]


def format_order_number(value: int) -> str:
    return f"ORD{value:06d}"


def next_order_number(db: Session) -> str:
    """
    Allocate the next order number inside the caller's transaction.

    The increment is a single UPDATE, so the row stays locked until the
    caller commits and concurrent placements serialise on it.
    """
    counter = models.OrderCounter
    updated = (
        db.query(counter)
        .filter(counter.name == database.ORDER_SEQUENCE)
        .update({counter.value: counter.value + 1}, synchronize_session=False)
    )
    if not updated:
        # A clash here surfaces as IntegrityError and place_order retries
        db.add(counter(name=database.ORDER_SEQUENCE, value=1))
        db.flush()
        return format_order_number(1)

    value = db.query(counter.value).filter(counter.name == database.ORDER_SEQUENCE).scalar()
    return format_order_number(value)


def estimate_delivery_time(order, now=None):
    now = now or utcnow()
    preparation = max(
        [MIN_PREPARATION_MINUTES] + [item.preparation_time or 0 for item in order.items]
    )
    travel = DELIVERY_MINUTES if order.order_type == OrderType.DELIVERY.value else PICKUP_MINUTES
    return now + timedelta(minutes=preparation + travel)


def _parse(enum_cls, value, label):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise errors.ValidationFailed(f"Invalid {label} '{value}', expected one of: {allowed}")


def _notify(room: str, event: str, payload: dict):
    try:
        hub.publish(room, event, jsonable_encoder(payload))
    except Exception:
        logger.exception("Failed to publish %s to %s", event, room)


def _conditional_update(db: Session, order, values: dict, *criteria) -> bool:
    values = dict(values)
    values["version"] = order.version + 1
    values["updated_at"] = utcnow()
    updated = (
        db.query(models.Order)
        .filter(models.Order.id == order.id, models.Order.version == order.version, *criteria)
        .update(values, synchronize_session=False)
    )
    return updated == 1


def _commit_update(db: Session, order, values: dict):
    if not _conditional_update(db, order, values):
        db.rollback()
        raise errors.Conflict(f"Order {order.order_number} was modified concurrently, reload and retry")
    db.commit()
    db.refresh(order)
    return order


def _append_note(existing: Optional[str], note: str) -> str:
    note = note.strip()
    if not existing:
        return note
    return f"{existing}\n{note}"


def place_order(db: Session, customer, items, order_type, payment_method=PaymentMethod.CASH,
                delivery_address=None, special_instructions=None):
    auth.authorize(customer, Capability.ANY_AUTHENTICATED)

    if not items:
        raise errors.ValidationFailed("At least one item is required")
    order_type = _parse(OrderType, order_type, "order type")
    payment_method = _parse(PaymentMethod, payment_method, "payment method")
    delivery_address = (delivery_address or "").strip() or None
    if order_type is OrderType.DELIVERY and not delivery_address:
        raise errors.ValidationFailed("Delivery address is required for delivery orders")
    for item in items:
        if item.quantity < 1:
            raise errors.ValidationFailed("Quantity must be at least 1")

    requested_ids = {item.menu_item_id for item in items}
    available = (
        db.query(models.MenuItem)
        .filter(models.MenuItem.id.in_(requested_ids), models.MenuItem.is_available.is_(True))
        .all()
    )
    menu_items = {menu_item.id: menu_item for menu_item in available}
    if set(menu_items) != requested_ids:
        raise errors.ValidationFailed("Some menu items are not available or invalid")

    lines = []
    total = Decimal("0")
    for item in items:
        menu_item = menu_items[item.menu_item_id]
        price = Decimal(str(menu_item.price)).quantize(Decimal("0.01"))
        total += price * item.quantity
        lines.append({
            "menu_item_id": menu_item.id,
            "name": menu_item.name,
            "price": price,
            "preparation_time": menu_item.preparation_time or MIN_PREPARATION_MINUTES,
            "quantity": item.quantity,
            "special_instructions": item.special_instructions,
        })

    order = None
    for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
        try:
            order = models.Order(
                order_number=next_order_number(db),
                customer_id=customer.id,
                total_amount=total,
                status=OrderStatus.PENDING.value,
                order_type=order_type.value,
                delivery_address=delivery_address,
                payment_status=PaymentStatus.PENDING.value,
                payment_method=payment_method.value,
                special_instructions=special_instructions,
                items=[models.OrderItem(**line) for line in lines],
            )
            db.add(order)
            db.commit()
            break
        except IntegrityError:
            db.rollback()
            if attempt == ORDER_NUMBER_ATTEMPTS:
                raise
            logger.warning("Order number clash, retrying (attempt %s)", attempt)

    db.refresh(order)
    logger.info("Order %s placed by user %s, total %s", order.order_number, customer.id, order.total_amount)

    _notify(STAFF_ROOM, "new-order", {
        "order_id": order.id,
        "order_number": order.order_number,
        "customer": customer.name,
        "total_amount": float(order.total_amount),
        "order_type": order.order_type,
    })
    return order


def request_transition(db: Session, order, target_status, acting_user, notes=None, expected_status=None):
    auth.authorize(acting_user, Capability.STAFF_OR_ADMIN)

    target = _parse(OrderStatus, target_status, "status")
    current = OrderStatus(order.status)
    if expected_status is not None and _parse(OrderStatus, expected_status, "status") is not current:
        raise errors.Conflict(
            f"Order {order.order_number} is {current.value}, not {OrderStatus(expected_status).value}"
        )
    if target not in TRANSITIONS[current]:
        raise errors.InvalidTransition(f"Cannot change status from {current.value} to {target.value}")

    now = utcnow()
    values = {"status": target.value}
    if order.assigned_to_id is None:
        values["assigned_to_id"] = acting_user.id
    if target is OrderStatus.CONFIRMED and order.estimated_delivery_time is None:
        values["estimated_delivery_time"] = estimate_delivery_time(order, now)
    if target is OrderStatus.DELIVERED:
        values["actual_delivery_time"] = now
    if notes and notes.strip():
        values["staff_notes"] = _append_note(order.staff_notes, notes)

    _commit_update(db, order, values)
    logger.info("Order %s: %s -> %s by user %s", order.order_number, current.value, target.value, acting_user.id)

    _notify(order_room(order.id), "order-status-updated", {
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "estimated_delivery_time": order.estimated_delivery_time,
        "actual_delivery_time": order.actual_delivery_time,
    })
    return order


def confirm_payment(db: Session, order, outcome):
    outcome = _parse(PaymentStatus, outcome, "payment status")
    if outcome not in (PaymentStatus.COMPLETED, PaymentStatus.FAILED):
        raise errors.ValidationFailed("Payment outcome must be 'completed' or 'failed'")

    values = {"payment_status": outcome.value}
    if outcome is PaymentStatus.COMPLETED and order.status == OrderStatus.PENDING.value:
        values["status"] = OrderStatus.CONFIRMED.value
        if order.estimated_delivery_time is None:
            values["estimated_delivery_time"] = estimate_delivery_time(order)

    _commit_update(db, order, values)
    logger.info("Order %s payment %s, status %s", order.order_number, order.payment_status, order.status)

    _notify(order_room(order.id), "payment-updated", {
        "order_id": order.id,
        "order_number": order.order_number,
        "payment_status": order.payment_status,
        "status": order.status,
        "estimated_delivery_time": order.estimated_delivery_time,
    })
    if outcome is PaymentStatus.COMPLETED:
        _notify(STAFF_ROOM, "payment-received", {
            "order_id": order.id,
            "order_number": order.order_number,
            "amount": float(order.total_amount),
        })
    return order


def _settle_payment_sync(order_id: int, outcome) -> Optional[models.Order]:
    db = database.SessionLocal()
    try:
        for attempt in range(1, PAYMENT_SETTLE_ATTEMPTS + 1):
            order = db.query(models.Order).filter(models.Order.id == order_id).first()
            if order is None:
                logger.warning("Payment for order %s dropped: order no longer exists", order_id)
                return None
            try:
                return confirm_payment(db, order, outcome)
            except errors.Conflict:
                if attempt == PAYMENT_SETTLE_ATTEMPTS:
                    raise
                logger.info("Order %s changed while settling payment, retrying", order_id)
                db.expire_all()
    finally:
        db.close()


async def settle_payment(order_id: int, outcome, delay: Optional[float] = None):
    """Deferred payment follow-up: wait for the gateway, then apply the outcome."""
    delay = config.PAYMENT_PROCESSING_DELAY if delay is None else delay
    if delay > 0:
        await asyncio.sleep(delay)
    try:
        return await run_in_threadpool(_settle_payment_sync, order_id, outcome)
    except errors.CafeteriaError as e:
        logger.error("Could not settle payment for order %s: %s", order_id, e.message)
        return None


def submit_review(db: Session, order, acting_user, rating: int, review: Optional[str] = None):
    if order.customer_id != acting_user.id:
        raise errors.Forbidden("Only the customer who placed the order can review it")
    if order.status != OrderStatus.DELIVERED.value:
        raise errors.InvalidState("Can only review delivered orders")
    if order.rating is not None:
        raise errors.AlreadyReviewed()
    if not isinstance(rating, int) or not 1 <= rating <= 5:
        raise errors.ValidationFailed("Rating must be between 1 and 5")

    review = (review or "").strip() or None
    values = {"rating": rating, "review": review}
    if not _conditional_update(db, order, values, models.Order.rating.is_(None)):
        db.rollback()
        db.refresh(order)
        if order.rating is not None:
            raise errors.AlreadyReviewed()
        raise errors.Conflict(f"Order {order.order_number} was modified concurrently, reload and retry")

    menu_item_ids = {item.menu_item_id for item in order.items if item.menu_item_id is not None}
    if menu_item_ids:
        menu_item = models.MenuItem
        # SET expressions see the pre-update row, so both counters use the old count
        db.query(menu_item).filter(menu_item.id.in_(menu_item_ids)).update(
            {
                menu_item.rating: (menu_item.rating * menu_item.review_count + rating) / (menu_item.review_count + 1),
                menu_item.review_count: menu_item.review_count + 1,
            },
            synchronize_session=False,
        )
    db.commit()
    db.refresh(order)
    logger.info("Order %s reviewed with rating %s", order.order_number, rating)
    return order
