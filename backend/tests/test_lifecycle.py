import asyncio
import threading
from datetime import timedelta
from decimal import Decimal
from itertools import product

import pytest

import database
import errors
import lifecycle
import models
from conftest import FailingHub, line
from models import OrderStatus, utcnow
from notifications import STAFF_ROOM, order_room
from schemas import OrderItemCreate


def _set_status(db, order, status):
    order.status = status.value
    db.commit()
    db.refresh(order)


def _advance(db, order, actor, *statuses):
    for status in statuses:
        lifecycle.request_transition(db, order, status, actor)
    return order


# ========== place_order ==========

def test_place_order_snapshots_prices_and_freezes_total(db, placed_order, events):
    """Two pancakes and fries: pending, 21.48 total, first order number."""
    assert placed_order.status == "pending"
    assert placed_order.payment_status == "pending"
    assert placed_order.order_number == "ORD000001"
    assert placed_order.total_amount == Decimal("21.48")
    assert [(item.name, item.price, item.quantity) for item in placed_order.items] == [
        ("Classic Pancakes", Decimal("8.99"), 2),
        ("French Fries", Decimal("3.50"), 1),
    ]

    [(room, payload)] = events.named("new-order")
    assert room == STAFF_ROOM
    assert payload["order_number"] == "ORD000001"
    assert payload["customer"] == "John Smith"
    assert payload["total_amount"] == pytest.approx(21.48)


def test_total_is_not_affected_by_later_menu_price_edit(db, placed_order, menu):
    menu["pancakes"].price = Decimal("12.00")
    db.commit()

    db.expire_all()
    order = db.query(models.Order).filter(models.Order.id == placed_order.id).one()
    assert order.total_amount == Decimal("21.48")
    assert order.items[0].price == Decimal("8.99")


@pytest.mark.parametrize("bad_item", ["unavailable", "missing"])
def test_place_order_rejects_unavailable_or_unknown_items_atomically(db, student, menu, events, bad_item):
    if bad_item == "unavailable":
        rejected = line(menu["soup"])
    else:
        rejected = line(menu["fries"])
        rejected.menu_item_id = 9999

    with pytest.raises(errors.ValidationFailed):
        lifecycle.place_order(db, student, [line(menu["pancakes"]), rejected], "pickup")

    assert db.query(models.Order).count() == 0
    assert db.query(models.OrderItem).count() == 0
    assert events.events == []

    # The failed attempt must not consume an order number
    order = lifecycle.place_order(db, student, [line(menu["pancakes"])], "pickup")
    assert order.order_number == "ORD000001"


def test_delivery_order_requires_address(db, student, menu, events):
    with pytest.raises(errors.ValidationFailed):
        lifecycle.place_order(db, student, [line(menu["fries"])], "delivery", delivery_address="   ")

    order = lifecycle.place_order(
        db, student, [line(menu["fries"])], "delivery", delivery_address="Dormitory A, Room 201"
    )
    assert order.delivery_address == "Dormitory A, Room 201"


def test_place_order_rejects_empty_items_and_unknown_enums(db, student, menu, events):
    with pytest.raises(errors.ValidationFailed):
        lifecycle.place_order(db, student, [], "pickup")
    with pytest.raises(errors.ValidationFailed):
        lifecycle.place_order(db, student, [line(menu["fries"])], "drive-through")
    with pytest.raises(errors.ValidationFailed):
        lifecycle.place_order(db, student, [line(menu["fries"])], "pickup", payment_method="bitcoin")


def test_order_numbers_stay_unique_after_an_order_is_deleted(db, student, menu, events):
    first = lifecycle.place_order(db, student, [line(menu["fries"])], "pickup")
    second = lifecycle.place_order(db, student, [line(menu["fries"])], "pickup")
    db.delete(first)
    db.commit()

    third = lifecycle.place_order(db, student, [line(menu["fries"])], "pickup")

    assert second.order_number == "ORD000002"
    assert third.order_number == "ORD000003"


def test_concurrent_placements_never_share_an_order_number(student, menu):
    student_id = student.id
    item_id = menu["fries"].id
    workers = 8
    barrier = threading.Barrier(workers)
    numbers, failures = [], []

    def place():
        session = database.SessionLocal()
        try:
            customer = session.get(models.User, student_id)
            barrier.wait()
            order = lifecycle.place_order(
                session, customer, [OrderItemCreate(menu_item_id=item_id, quantity=1)], "pickup"
            )
            numbers.append(order.order_number)
        except Exception as e:
            failures.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=place) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert failures == []
    assert sorted(numbers) == [lifecycle.format_order_number(n) for n in range(1, workers + 1)]


# ========== request_transition ==========

@pytest.mark.parametrize("current,target", list(product(OrderStatus, OrderStatus)))
def test_transition_table_is_the_only_source_of_legal_moves(db, placed_order, staff, current, target):
    _set_status(db, placed_order, current)

    if target in lifecycle.TRANSITIONS[current]:
        lifecycle.request_transition(db, placed_order, target, staff)
        assert placed_order.status == target.value
    else:
        with pytest.raises(errors.InvalidTransition):
            lifecycle.request_transition(db, placed_order, target, staff)
        db.refresh(placed_order)
        assert placed_order.status == current.value


def test_confirmed_order_cannot_skip_preparing(db, placed_order, staff, events):
    _advance(db, placed_order, staff, "confirmed")

    with pytest.raises(errors.InvalidTransition) as exc_info:
        lifecycle.request_transition(db, placed_order, "ready", staff)

    assert "confirmed to ready" in exc_info.value.message
    assert placed_order.status == "confirmed"


def test_students_cannot_change_order_status(db, placed_order, student):
    with pytest.raises(errors.Forbidden):
        lifecycle.request_transition(db, placed_order, "confirmed", student)
    assert placed_order.status == "pending"


def test_unknown_target_status_is_a_validation_error(db, placed_order, staff):
    with pytest.raises(errors.ValidationFailed):
        lifecycle.request_transition(db, placed_order, "eaten", staff)


def test_first_staff_member_to_touch_the_order_stays_assigned(db, placed_order, staff, other_staff, admin):
    lifecycle.request_transition(db, placed_order, "confirmed", staff)
    lifecycle.request_transition(db, placed_order, "preparing", other_staff)
    lifecycle.request_transition(db, placed_order, "ready", admin)

    assert placed_order.assigned_to_id == staff.id


def test_delivery_time_is_stamped_only_on_delivery(db, placed_order, staff, events):
    for status in ("confirmed", "preparing", "ready"):
        lifecycle.request_transition(db, placed_order, status, staff)
        assert placed_order.actual_delivery_time is None

    before = utcnow()
    lifecycle.request_transition(db, placed_order, "delivered", staff)

    assert before <= placed_order.actual_delivery_time <= utcnow()
    [room, payload] = events.named("order-status-updated")[-1]
    assert room == order_room(placed_order.id)
    assert payload["status"] == "delivered"
    assert payload["actual_delivery_time"] is not None


def test_staff_notes_are_appended(db, placed_order, staff):
    lifecycle.request_transition(db, placed_order, "confirmed", staff, notes="Extra syrup")
    lifecycle.request_transition(db, placed_order, "preparing", staff, notes="  ")
    lifecycle.request_transition(db, placed_order, "ready", staff, notes="Shelf 3")

    assert placed_order.staff_notes == "Extra syrup\nShelf 3"


def test_manual_confirmation_computes_estimate_once(db, placed_order, staff):
    lifecycle.request_transition(db, placed_order, "confirmed", staff)
    estimate = placed_order.estimated_delivery_time
    assert estimate is not None

    lifecycle.request_transition(db, placed_order, "preparing", staff)
    assert placed_order.estimated_delivery_time == estimate


def test_expected_status_mismatch_is_a_conflict(db, placed_order, staff):
    with pytest.raises(errors.Conflict):
        lifecycle.request_transition(db, placed_order, "cancelled", staff, expected_status="confirmed")
    assert placed_order.status == "pending"


def test_stale_snapshot_loses_the_race_with_conflict(db, placed_order, staff, other_staff):
    other_session = database.SessionLocal()
    try:
        stale = other_session.get(models.Order, placed_order.id)
        assert stale.status == "pending"

        lifecycle.request_transition(db, placed_order, "cancelled", staff)

        with pytest.raises(errors.Conflict):
            lifecycle.request_transition(other_session, stale, "confirmed", other_staff)
    finally:
        other_session.close()

    db.refresh(placed_order)
    assert placed_order.status == "cancelled"
    assert placed_order.assigned_to_id == staff.id


# ========== confirm_payment ==========

def test_completed_payment_auto_confirms_pending_order(db, placed_order, events):
    before = utcnow()
    lifecycle.confirm_payment(db, placed_order, "completed")

    assert placed_order.status == "confirmed"
    assert placed_order.payment_status == "completed"
    # Pancakes (10 min) and fries (7 min) fall under the 15 minute floor, plus 5 for pickup
    expected = before + timedelta(minutes=20)
    assert expected <= placed_order.estimated_delivery_time <= utcnow() + timedelta(minutes=20)

    [(room, payload)] = events.named("payment-updated")
    assert room == order_room(placed_order.id)
    assert payload["payment_status"] == "completed"
    assert payload["status"] == "confirmed"
    [(room, payload)] = events.named("payment-received")
    assert room == STAFF_ROOM
    assert payload["amount"] == pytest.approx(21.48)


def test_repeated_payment_does_not_advance_or_recompute(db, placed_order, events):
    lifecycle.confirm_payment(db, placed_order, "completed")
    estimate = placed_order.estimated_delivery_time

    lifecycle.confirm_payment(db, placed_order, "completed")

    assert placed_order.status == "confirmed"
    assert placed_order.estimated_delivery_time == estimate


def test_failed_payment_leaves_order_pending(db, placed_order, events):
    lifecycle.confirm_payment(db, placed_order, "failed")

    assert placed_order.status == "pending"
    assert placed_order.payment_status == "failed"
    assert placed_order.estimated_delivery_time is None
    assert events.named("payment-received") == []


def test_payment_outcome_must_be_completed_or_failed(db, placed_order):
    with pytest.raises(errors.ValidationFailed):
        lifecycle.confirm_payment(db, placed_order, "refunded")


def test_delivery_estimate_uses_slowest_item_and_delivery_leg(db, student, menu, events):
    order = lifecycle.place_order(
        db, student, [line(menu["salmon"]), line(menu["fries"])], "delivery", delivery_address="Dorm B"
    )
    before = utcnow()
    lifecycle.confirm_payment(db, order, "completed")

    # 25 minutes for the salmon plus 20 for delivery
    assert before + timedelta(minutes=45) <= order.estimated_delivery_time <= utcnow() + timedelta(minutes=45)


def test_settle_payment_applies_outcome_in_the_background(db, placed_order):
    asyncio.run(lifecycle.settle_payment(placed_order.id, "completed", delay=0))

    db.expire_all()
    order = db.get(models.Order, placed_order.id)
    assert order.status == "confirmed"
    assert order.payment_status == "completed"


def test_settle_payment_for_deleted_order_is_dropped(db, placed_order):
    order_id = placed_order.id
    db.delete(placed_order)
    db.commit()

    assert asyncio.run(lifecycle.settle_payment(order_id, "completed", delay=0)) is None


# ========== submit_review ==========

def test_review_is_accepted_once_after_delivery(db, placed_order, staff, student, menu):
    _advance(db, placed_order, staff, "confirmed", "preparing", "ready", "delivered")

    lifecycle.submit_review(db, placed_order, student, 4, "  Great pancakes  ")
    assert placed_order.rating == 4
    assert placed_order.review == "Great pancakes"

    with pytest.raises(errors.AlreadyReviewed):
        lifecycle.submit_review(db, placed_order, student, 1, "Changed my mind")

    db.refresh(placed_order)
    assert placed_order.rating == 4
    assert placed_order.review == "Great pancakes"


def test_review_updates_menu_item_running_rating(db, student, staff, menu, events):
    for rating in (5, 2):
        order = lifecycle.place_order(db, student, [line(menu["pancakes"]), line(menu["pancakes"])], "pickup")
        _advance(db, order, staff, "confirmed", "preparing", "ready", "delivered")
        lifecycle.submit_review(db, order, student, rating)

    db.refresh(menu["pancakes"])
    db.refresh(menu["fries"])
    assert menu["pancakes"].review_count == 2
    assert menu["pancakes"].rating == pytest.approx(3.5)
    assert menu["fries"].review_count == 0


def test_review_requires_delivered_order(db, placed_order, staff, student):
    _advance(db, placed_order, staff, "confirmed")
    with pytest.raises(errors.InvalidState):
        lifecycle.submit_review(db, placed_order, student, 5)
    assert placed_order.rating is None


def test_only_the_customer_can_review(db, placed_order, staff, other_student, admin):
    _advance(db, placed_order, staff, "confirmed", "preparing", "ready", "delivered")
    for intruder in (other_student, admin):
        with pytest.raises(errors.Forbidden):
            lifecycle.submit_review(db, placed_order, intruder, 5)


def test_review_rating_must_be_between_one_and_five(db, placed_order, staff, student):
    _advance(db, placed_order, staff, "confirmed", "preparing", "ready", "delivered")
    with pytest.raises(errors.ValidationFailed):
        lifecycle.submit_review(db, placed_order, student, 6)


# ========== notifications never fail the operation ==========

def test_notification_failure_does_not_fail_committed_changes(db, student, staff, menu, monkeypatch):
    monkeypatch.setattr(lifecycle, "hub", FailingHub())

    order = lifecycle.place_order(db, student, [line(menu["fries"])], "pickup")
    lifecycle.request_transition(db, order, "confirmed", staff)
    lifecycle.confirm_payment(db, order, "completed")

    db.expire_all()
    stored = db.get(models.Order, order.id)
    assert stored.status == "confirmed"
    assert stored.payment_status == "completed"

