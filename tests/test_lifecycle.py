from datetime import date, timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

import lifecycle
from errors import (
    AlreadyFinalizedError,
    AlreadyValidatedError,
    InsufficientStockError,
    InternalError,
    NotAuthorizedError,
    NotFoundError,
    NotReturnedError,
    ValidationError,
)
from models import Item, Order, OrderItem, Profile
from schemas import OrderLine

from .conftest import add_user

TOMORROW = date.today() + timedelta(days=1)
YESTERDAY = date.today() - timedelta(days=1)


def stock(session, item):
    session.expire_all()
    return session.get(Item, item.id).actual_quantity


def place(session, world, quantity, item="camera", return_date=TOMORROW):
    return lifecycle.create_order(
        session,
        catalog_id=world["catalog"].id,
        user_id=world["student"].id,
        items=[OrderLine(item_id=world[item].id, quantity=quantity)],
        return_date=return_date,
    )


def returned(session, world, quantity=1):
    order = place(session, world, quantity)
    lifecycle.finalize_order(session, order.id, world["student"].id)
    return order


# ------------------------- create -------------------------

def test_create_order_reserves_stock(session, world):
    order = place(session, world, 3)

    assert order.status is False
    assert order.validation is None
    assert order.end_date == TOMORROW
    assert stock(session, world["camera"]) == 2

    lines = session.exec(select(OrderItem).where(OrderItem.order_id == order.id)).all()
    assert [(line.item_id, line.quantity) for line in lines] == [(world["camera"].id, 3)]


def test_second_order_beyond_stock_is_refused(session, world):
    place(session, world, 3)

    with pytest.raises(InsufficientStockError):
        place(session, world, 3)

    assert stock(session, world["camera"]) == 2
    assert len(session.exec(select(Order)).all()) == 1


def test_return_date_in_the_past_writes_nothing(session, world):
    with pytest.raises(ValidationError):
        place(session, world, 1, return_date=YESTERDAY)

    assert session.exec(select(Order)).all() == []
    assert stock(session, world["camera"]) == 5


def test_return_date_today_is_accepted(session, world):
    order = place(session, world, 1, return_date=date.today())
    assert order.end_date == date.today()


def test_empty_order_is_refused(session, world):
    with pytest.raises(ValidationError):
        lifecycle.create_order(session, world["catalog"].id, world["student"].id, [], TOMORROW)


def test_unknown_item_is_refused(session, world):
    with pytest.raises(InsufficientStockError):
        lifecycle.create_order(
            session,
            world["catalog"].id,
            world["student"].id,
            [OrderLine(item_id=9999, quantity=1)],
            TOMORROW,
        )


def test_unknown_catalog_is_refused(session, world):
    with pytest.raises(NotFoundError):
        lifecycle.create_order(
            session,
            9999,
            world["student"].id,
            [OrderLine(item_id=world["camera"].id, quantity=1)],
            TOMORROW,
        )


def test_one_short_line_fails_the_whole_order(session, world):
    with pytest.raises(InsufficientStockError):
        lifecycle.create_order(
            session,
            world["catalog"].id,
            world["student"].id,
            [
                OrderLine(item_id=world["camera"].id, quantity=1),
                OrderLine(item_id=world["tripod"].id, quantity=3),
            ],
            TOMORROW,
        )

    assert stock(session, world["camera"]) == 5
    assert stock(session, world["tripod"]) == 2


def test_repeated_lines_are_merged(session, world):
    order = lifecycle.create_order(
        session,
        world["catalog"].id,
        world["student"].id,
        [
            OrderLine(item_id=world["camera"].id, quantity=2),
            OrderLine(item_id=world["camera"].id, quantity=2),
        ],
        TOMORROW,
    )

    lines = session.exec(select(OrderItem).where(OrderItem.order_id == order.id)).all()
    assert [line.quantity for line in lines] == [4]
    assert stock(session, world["camera"]) == 1


def test_store_failure_rolls_back_everything(engine, session, world, monkeypatch):
    def broken_commit():
        raise OperationalError("COMMIT", {}, Exception("connection lost"))

    monkeypatch.setattr(session, "commit", broken_commit)

    with pytest.raises(InternalError):
        place(session, world, 2)

    with Session(engine) as fresh:
        assert fresh.exec(select(Order)).all() == []
        assert fresh.exec(select(OrderItem)).all() == []
        assert fresh.get(Item, world["camera"].id).actual_quantity == 5


def test_stock_taken_after_the_check_rolls_back(session, world, monkeypatch):
    camera_id = world["camera"].id
    real_flush = session.flush

    def flush_then_drain(*args, **kwargs):
        # Once the lines are written, another order empties the shelf
        lines_pending = any(isinstance(obj, OrderItem) for obj in session.new)
        real_flush(*args, **kwargs)
        if lines_pending:
            session.connection().execute(
                update(Item).where(Item.id == camera_id).values(actual_quantity=0)
            )

    monkeypatch.setattr(session, "flush", flush_then_drain)

    with pytest.raises(InsufficientStockError):
        place(session, world, 3)

    monkeypatch.undo()
    assert session.exec(select(Order)).all() == []
    assert session.exec(select(OrderItem)).all() == []
    assert stock(session, world["camera"]) == 5


# ------------------------- finalize -------------------------

def test_finalize_marks_returned_without_restocking(session, world):
    order = place(session, world, 3)

    finalized = lifecycle.finalize_order(session, order.id, world["student"].id)

    assert finalized.status is True
    assert finalized.validation is None
    assert stock(session, world["camera"]) == 2
    assert session.get(Profile, world["student"].id).delays == 0


def test_late_finalize_counts_a_delay(session, world):
    order = place(session, world, 1)
    order.end_date = YESTERDAY
    session.add(order)
    session.commit()

    lifecycle.finalize_order(session, order.id, world["student"].id)

    session.expire_all()
    assert session.get(Profile, world["student"].id).delays == 1


def test_finalize_succeeds_even_if_delay_cannot_be_recorded(session, world):
    order = place(session, world, 1)
    order.end_date = YESTERDAY
    session.add(order)
    session.delete(session.get(Profile, world["student"].id))
    session.commit()

    finalized = lifecycle.finalize_order(session, order.id, world["student"].id)
    assert finalized.status is True


def test_finalize_twice_is_refused(session, world):
    order = returned(session, world)
    with pytest.raises(AlreadyFinalizedError):
        lifecycle.finalize_order(session, order.id, world["student"].id)


def test_only_owner_can_finalize(session, world):
    order = place(session, world, 1)
    other = add_user(session, "other@example.com", "user")

    with pytest.raises(NotAuthorizedError):
        lifecycle.finalize_order(session, order.id, other.id)


def test_finalize_missing_order(session, world):
    with pytest.raises(NotFoundError):
        lifecycle.finalize_order(session, 4242, world["student"].id)


def test_update_return_date(session, world):
    order = place(session, world, 1)
    later = TOMORROW + timedelta(days=7)

    updated = lifecycle.update_return_date(session, order.id, world["student"].id, later)
    assert updated.end_date == later

    with pytest.raises(ValidationError):
        lifecycle.update_return_date(session, order.id, world["student"].id, YESTERDAY)


def test_return_date_is_frozen_after_finalize(session, world):
    order = returned(session, world)
    with pytest.raises(AlreadyFinalizedError):
        lifecycle.update_return_date(session, order.id, world["student"].id, TOMORROW)


# ------------------------- validate -------------------------

def test_validate_pending_order_is_refused(session, world):
    order = place(session, world, 3)

    with pytest.raises(NotReturnedError):
        lifecycle.validate_order_return(session, order.id, world["admin"].id)

    assert stock(session, world["camera"]) == 2


def test_validate_restocks_once(session, world):
    order = returned(session, world, 3)

    validated = lifecycle.validate_order_return(session, order.id, world["admin"].id)
    assert validated.validation is True
    assert stock(session, world["camera"]) == 5

    with pytest.raises(AlreadyValidatedError):
        lifecycle.validate_order_return(session, order.id, world["admin"].id)
    assert stock(session, world["camera"]) == 5


def test_concurrent_validation_restocks_once(engine, session, world):
    admin_id = world["admin"].id
    place(session, world, 2)
    order = returned(session, world, 1)
    assert stock(session, world["camera"]) == 2
    session.refresh(order)

    # Another request validates while this session still holds the RETURNED copy
    with Session(engine) as other:
        lifecycle.validate_order_return(other, order.id, admin_id)

    assert order.validation is None
    with pytest.raises(AlreadyValidatedError):
        lifecycle.validate_order_return(session, order.id, admin_id)

    assert stock(session, world["camera"]) == 3


def test_restock_never_exceeds_default_quantity(session, world):
    order = returned(session, world, 3)
    camera = session.get(Item, world["camera"].id)
    camera.default_quantity = 3
    session.add(camera)
    session.commit()

    lifecycle.validate_order_return(session, order.id, world["admin"].id)
    assert stock(session, world["camera"]) == 3


def test_validate_requires_owning_admin(session, world):
    order = returned(session, world)
    stranger = add_user(session, "stranger@example.com", "admin")

    with pytest.raises(NotAuthorizedError):
        lifecycle.validate_order_return(session, order.id, stranger.id)


def test_bulk_validation_reports_each_order(session, world):
    done = returned(session, world, 1)
    pending = place(session, world, 1)

    outcome = lifecycle.validate_orders(
        session, [done.id, pending.id, 777], world["admin"].id
    )

    assert outcome["validated"] == 1
    assert outcome["failed"] == 2
    assert [r["success"] for r in outcome["results"]] == [True, False, False]
    assert session.get(Order, done.id).validation is True


def test_stock_stays_within_bounds_across_a_lifecycle(session, world):
    camera = world["camera"]
    orders = [place(session, world, 2), place(session, world, 2)]
    with pytest.raises(InsufficientStockError):
        place(session, world, 2)

    for order in orders:
        lifecycle.finalize_order(session, order.id, world["student"].id)
        assert 0 <= stock(session, camera) <= 5
        lifecycle.validate_order_return(session, order.id, world["admin"].id)
        assert 0 <= stock(session, camera) <= 5

    assert stock(session, camera) == 5


def test_borrowed_quantity_counts_unvalidated_orders(session, world):
    place(session, world, 1)
    order = returned(session, world, 2)
    assert lifecycle.borrowed_quantity(session, world["camera"].id) == 3

    lifecycle.validate_order_return(session, order.id, world["admin"].id)
    assert lifecycle.borrowed_quantity(session, world["camera"].id) == 1


# ------------------------- messages -------------------------

def test_order_messages_newest_first(session, world):
    order = place(session, world, 1)

    lifecycle.add_order_message(session, order.id, world["admin"].id, "Picked up")
    lifecycle.add_order_message(session, order.id, world["admin"].id, "  Lens missing  ")

    messages = lifecycle.list_order_messages(session, order.id, world["admin"].id)
    assert [m.message for m in messages] == ["Lens missing", "Picked up"]


def test_order_message_length_is_limited(session, world):
    order = place(session, world, 1)

    with pytest.raises(ValidationError):
        lifecycle.add_order_message(session, order.id, world["admin"].id, "x" * 81)
    with pytest.raises(ValidationError):
        lifecycle.add_order_message(session, order.id, world["admin"].id, "   ")
