from typing import Optional

from fastapi import APIRouter, HTTPException
from sqlmodel import col, select

import lifecycle
from access import owned_catalog
from db import SessionDep
from models import Catalog, Item, ItemType, Order, OrderItem, Profile
from schemas import BulkValidate, MessageCreate, OrderCreate, ReturnDateUpdate
from .auth import AdminDep, StudentDep

user_router = APIRouter(tags=["orders"])
admin_router = APIRouter(tags=["orders"])


def _lines_by_order(session: SessionDep, order_ids: list[int]) -> dict[int, list]:
    lines: dict[int, list] = {order_id: [] for order_id in order_ids}
    if not order_ids:
        return lines
    rows = session.exec(
        select(OrderItem, Item)
        .join(Item, col(Item.id) == OrderItem.item_id)
        .where(col(OrderItem.order_id).in_(order_ids))
    ).all()
    for line, item in rows:
        lines[line.order_id].append((line, item))
    return lines


# ------------------------- student -------------------------

@user_router.get("/orders")
def list_my_orders(session: SessionDep, current: StudentDep):
    """
    Orders of the current student, newest first, with catalog and items.
    """
    user = current["user"]
    orders = session.exec(
        select(Order)
        .where(Order.user_id == user.id)
        .order_by(col(Order.created_at).desc(), col(Order.id).desc())
    ).all()

    catalog_ids = list({o.catalog_id for o in orders})
    catalogs = {
        c.id: c
        for c in session.exec(select(Catalog).where(col(Catalog.id).in_(catalog_ids))).all()
    }
    lines = _lines_by_order(session, [o.id for o in orders])

    result = []
    for order in orders:
        catalog = catalogs.get(order.catalog_id)
        result.append({
            "id": order.id,
            "status": order.status,
            "validation": order.validation,
            "created_at": order.created_at,
            "catalog_id": order.catalog_id,
            "end_date": order.end_date,
            "catalog": {"name": catalog.name, "acronym": catalog.acronym} if catalog else None,
            "order_items": [
                {
                    "quantity": line.quantity,
                    "item": {"id": item.id, "name": item.name, "description": item.description},
                }
                for line, item in lines[order.id]
            ],
        })
    return result


@user_router.post("/orders")
def create_order(data: OrderCreate, session: SessionDep, current: StudentDep):
    order = lifecycle.create_order(
        session,
        catalog_id=data.catalog_id,
        user_id=current["user"].id,
        items=data.items,
        return_date=data.return_date,
    )
    return {"success": True, "message": "Order created successfully", "order_id": order.id}


@user_router.post("/orders/{order_id}/finalize")
def finalize_order(order_id: int, session: SessionDep, current: StudentDep):
    lifecycle.finalize_order(session, order_id, current["user"].id)
    return {"success": True, "message": "Order returned, awaiting validation"}


@user_router.patch("/orders/{order_id}/return-date")
def update_return_date(
    order_id: int,
    data: ReturnDateUpdate,
    session: SessionDep,
    current: StudentDep,
):
    order = lifecycle.update_return_date(session, order_id, current["user"].id, data.return_date)
    return {"success": True, "message": "Return date updated", "end_date": order.end_date}


# ------------------------- admin -------------------------

@admin_router.get("/orders")
def list_catalog_orders(
    session: SessionDep,
    current: AdminDep,
    catalog: Optional[int] = None,
):
    """
    Orders of a catalog with their items and the borrower's email,
    plus the catalog's item types.
    """
    if catalog is None:
        raise HTTPException(status_code=400, detail="Missing catalog ID")
    owned_catalog(session, catalog, current["user"].id)

    orders = session.exec(
        select(Order)
        .where(Order.catalog_id == catalog)
        .order_by(col(Order.created_at).desc(), col(Order.id).desc())
    ).all()
    user_ids = list({o.user_id for o in orders})
    emails = {
        p.id: p.email
        for p in session.exec(select(Profile).where(col(Profile.id).in_(user_ids))).all()
    }
    lines = _lines_by_order(session, [o.id for o in orders])

    enriched = [
        {
            "id": order.id,
            "status": order.status,
            "validation": order.validation,
            "creation_date": order.created_at,
            "end_date": order.end_date,
            "n_items": len(lines[order.id]),
            "user_email": emails.get(order.user_id, "N/A"),
            "items": [
                {"name": item.name, "quantity": line.quantity}
                for line, item in lines[order.id]
            ],
        }
        for order in orders
    ]
    item_types = session.exec(select(ItemType).where(ItemType.catalog_id == catalog)).all()
    return {"orders": enriched, "itemTypes": item_types}


@admin_router.post("/orders/validate")
def validate_orders(data: BulkValidate, session: SessionDep, current: AdminDep):
    outcome = lifecycle.validate_orders(session, data.order_ids, current["user"].id)
    return {
        "success": outcome["failed"] == 0,
        "message": f"{outcome['validated']} order(s) validated, {outcome['failed']} failed",
        **outcome,
    }


@admin_router.post("/orders/{order_id}/validate")
def validate_order_return(order_id: int, session: SessionDep, current: AdminDep):
    lifecycle.validate_order_return(session, order_id, current["user"].id)
    return {"success": True, "message": "Return validated, items restocked"}


@admin_router.get("/order/message")
def list_order_messages(
    session: SessionDep,
    current: AdminDep,
    orderId: Optional[int] = None,
):
    if orderId is None:
        raise HTTPException(status_code=400, detail="Order ID is required")
    messages = lifecycle.list_order_messages(session, orderId, current["user"].id)
    return {"messages": messages}


@admin_router.post("/order/message")
def add_order_message(data: MessageCreate, session: SessionDep, current: AdminDep):
    note = lifecycle.add_order_message(session, data.order_id, current["user"].id, data.message)
    return {"success": True, "message": "Message added", "order_message": note}
