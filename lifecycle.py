"""
Order lifecycle and stock bookkeeping.

    PENDING  (status=False, validation=None)   created by a student, stock reserved
    RETURNED (status=True,  validation=None)   student says the items are back
    VALIDATED(status=True,  validation=True)   admin checked the items, stock restored

Item.actual_quantity only moves twice in the life of an order: it is
decremented by create_order and incremented by validate_order_return.
Every multi-row write runs in a single transaction; a failure rolls back
the whole step instead of leaving half an order behind.
"""
import logging
from datetime import date
from typing import Iterable, List

from sqlalchemy import case, func, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from access import owned_order
from errors import (
    AlreadyFinalizedError,
    AlreadyValidatedError,
    InsufficientStockError,
    InternalError,
    LoanError,
    NotAuthorizedError,
    NotFoundError,
    NotReturnedError,
    ValidationError,
)
from models import Catalog, Item, Order, OrderItem, OrderMessage, Profile
from schemas import OrderLine

logger = logging.getLogger(__name__)

MESSAGE_MAX_LENGTH = 80


def today() -> date:
    return date.today()


def _not_validated():
    return or_(col(Order.validation).is_(None), Order.validation == False)  # noqa: E712


def _merge_lines(lines: Iterable[OrderLine]) -> dict[int, int]:
    """Sum the quantities of repeated item ids, keeping first-seen order."""
    merged: dict[int, int] = {}
    for line in lines:
        if line.quantity <= 0:
            raise ValidationError("Quantities must be greater than zero")
        merged[line.item_id] = merged.get(line.item_id, 0) + line.quantity
    return merged


def create_order(
    session: Session,
    catalog_id: int,
    user_id: int,
    items: Iterable[OrderLine],
    return_date: date,
) -> Order:
    """
    Reserve stock and create a PENDING order.

    Either the order, all of its lines and all stock decrements are
    committed, or none of them are.
    """
    if return_date < today():
        raise ValidationError("Return date cannot be earlier than today")

    requested = _merge_lines(items)
    if not requested:
        raise ValidationError("Order must contain at least one item")

    if session.get(Catalog, catalog_id) is None:
        raise NotFoundError("Catalog not found")

    # 1) Check stock before writing anything
    rows = session.exec(
        select(Item.id, Item.actual_quantity).where(
            col(Item.id).in_(list(requested)),
            Item.catalog_id == catalog_id,
        )
    ).all()
    available = {item_id: quantity for item_id, quantity in rows}

    for item_id, quantity in requested.items():
        if available.get(item_id) is None:
            raise InsufficientStockError(f"Item {item_id} is not available in this catalog")
        if available[item_id] < quantity:
            raise InsufficientStockError(
                f"Not enough quantity available for item {item_id}"
            )

    try:
        # 2) Order row
        order = Order(
            catalog_id=catalog_id,
            user_id=user_id,
            status=False,
            validation=None,
            end_date=return_date,
        )
        session.add(order)
        session.flush()

        # 3) Order lines
        for item_id, quantity in requested.items():
            session.add(OrderItem(order_id=order.id, item_id=item_id, quantity=quantity))
        session.flush()

        # 4) Conditional decrement: a concurrent order may have taken the stock
        #    between the check above and this write.
        for item_id, quantity in requested.items():
            result = session.execute(
                update(Item)
                .where(Item.id == item_id, Item.actual_quantity >= quantity)
                .values(actual_quantity=Item.actual_quantity - quantity)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InsufficientStockError(
                    f"Not enough quantity available for item {item_id}"
                )

        session.commit()
    except InsufficientStockError:
        session.rollback()
        logger.warning("Stock changed while creating order for user %s, rolled back", user_id)
        raise
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Order creation failed for user %s, rolled back", user_id)
        raise InternalError()

    session.refresh(order)
    logger.info(
        "Order %s created by user %s in catalog %s (%d lines)",
        order.id, user_id, catalog_id, len(requested),
    )
    return order


def _get_own_pending_order(session: Session, order_id: int, user_id: int) -> Order:
    order = session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order.user_id != user_id:
        raise NotAuthorizedError("You can only manage your own orders")
    if order.status:
        raise AlreadyFinalizedError()
    return order


def finalize_order(session: Session, order_id: int, user_id: int) -> Order:
    """
    Mark an order as returned by its student. Stock is NOT restored here;
    that waits for an admin to validate the return.
    """
    order = _get_own_pending_order(session, order_id, user_id)
    late = order.end_date is not None and today() > order.end_date

    try:
        result = session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == False)  # noqa: E712
            .values(status=True)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            raise AlreadyFinalizedError()
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Could not finalize order %s", order_id)
        raise InternalError()

    logger.info("Order %s returned by user %s", order_id, user_id)

    if late:
        _record_delay(session, user_id, order_id)

    session.refresh(order)
    return order


def _record_delay(session: Session, user_id: int, order_id: int) -> None:
    """Best effort: a failure here never fails the return itself."""
    try:
        result = session.execute(
            update(Profile)
            .where(Profile.id == user_id)
            .values(delays=Profile.delays + 1)
            .execution_options(synchronize_session=False)
        )
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Could not record late return of order %s", order_id)
        return

    if result.rowcount != 1:
        logger.warning("No profile for user %s, late return of order %s not recorded", user_id, order_id)
    else:
        logger.info("Late return of order %s recorded for user %s", order_id, user_id)


def update_return_date(session: Session, order_id: int, user_id: int, return_date: date) -> Order:
    if return_date < today():
        raise ValidationError("Return date cannot be earlier than today")

    order = _get_own_pending_order(session, order_id, user_id)
    order.end_date = return_date
    try:
        session.add(order)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Could not update return date of order %s", order_id)
        raise InternalError()

    session.refresh(order)
    return order


def validate_order_return(session: Session, order_id: int, admin_id: int) -> Order:
    """
    Confirm the physical return of an order and put its items back in stock.
    This is the only path that returns stock to the pool.
    """
    order = owned_order(session, order_id, admin_id)
    if not order.status:
        raise NotReturnedError()
    if order.validation:
        raise AlreadyValidatedError()

    lines = session.exec(select(OrderItem).where(OrderItem.order_id == order_id)).all()

    try:
        # Flip the flag first: only one concurrent validation can win this update.
        result = session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == True, _not_validated())  # noqa: E712
            .values(validation=True)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            raise AlreadyValidatedError()

        for line in lines:
            restocked = Item.actual_quantity + line.quantity
            session.execute(
                update(Item)
                .where(Item.id == line.item_id)
                .values(
                    actual_quantity=case(
                        (restocked > Item.default_quantity, Item.default_quantity),
                        else_=restocked,
                    )
                )
                .execution_options(synchronize_session=False)
            )
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Could not validate return of order %s", order_id)
        raise InternalError()

    session.refresh(order)
    logger.info("Order %s validated by admin %s, %d lines restocked", order_id, admin_id, len(lines))
    return order


def validate_orders(session: Session, order_ids: Iterable[int], admin_id: int) -> dict:
    """
    Validate several orders independently. Successes are kept even when
    other orders fail.
    """
    results = []
    for order_id in dict.fromkeys(order_ids):
        try:
            validate_order_return(session, order_id, admin_id)
        except LoanError as exc:
            results.append({"order_id": order_id, "success": False, "message": exc.message})
        else:
            results.append({"order_id": order_id, "success": True, "message": "Return validated"})

    validated = sum(1 for r in results if r["success"])
    if validated != len(results):
        logger.warning(
            "Bulk validation by admin %s: %d validated, %d failed",
            admin_id, validated, len(results) - validated,
        )
    return {"validated": validated, "failed": len(results) - validated, "results": results}


def add_order_message(session: Session, order_id: int, admin_id: int, message: str) -> OrderMessage:
    owned_order(session, order_id, admin_id)

    text = message.strip()
    if not text or len(text) > MESSAGE_MAX_LENGTH:
        raise ValidationError(f"Message must be between 1 and {MESSAGE_MAX_LENGTH} characters")

    note = OrderMessage(order_id=order_id, message=text)
    try:
        session.add(note)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Could not store message for order %s", order_id)
        raise InternalError()

    session.refresh(note)
    return note


def list_order_messages(session: Session, order_id: int, admin_id: int) -> List[OrderMessage]:
    owned_order(session, order_id, admin_id)
    return list(
        session.exec(
            select(OrderMessage)
            .where(OrderMessage.order_id == order_id)
            .order_by(col(OrderMessage.created_at).desc(), col(OrderMessage.id).desc())
        ).all()
    )


def borrowed_quantity(session: Session, item_id: int) -> int:
    """Units of an item held by orders whose return is not validated yet."""
    total = session.exec(
        select(func.coalesce(func.sum(OrderItem.quantity), 0))
        .select_from(OrderItem)
        .join(Order, col(Order.id) == OrderItem.order_id)
        .where(OrderItem.item_id == item_id, _not_validated())
    ).one()
    return int(total)
