import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from sqlmodel import col, select
from starlette.datastructures import UploadFile

from access import owned_catalog, owned_item, owned_item_type
from db import SessionDep
from errors import ValidationError
from lifecycle import borrowed_quantity
from models import Item, ItemType, OrderItem
from schemas import ItemCreate, ItemTypeCreate, ItemTypeUpdate, ItemUpdate
from storage import ImageStoreDep, ItemImageStore
from .auth import AdminDep, StudentDep

logger = logging.getLogger(__name__)

admin_router = APIRouter(tags=["items"])
user_router = APIRouter(tags=["items"])


def _item_payload(item: Item, store: ItemImageStore, type_name: Optional[str] = None) -> dict:
    data = item.model_dump()
    data["item_type"] = type_name
    data["image_url"] = store.public_url(item.id) if store.exists(item.id) else None
    return data


def _check_item_type(session: SessionDep, item_type_id: Optional[int], catalog_id: int) -> None:
    if item_type_id is None:
        return
    item_type = session.get(ItemType, item_type_id)
    if item_type is None or item_type.catalog_id != catalog_id:
        raise ValidationError("Unknown item type for this catalog")


async def _read_item_form(request: Request) -> tuple[dict, Optional[UploadFile]]:
    form = await request.form()

    fields = {
        key: value.strip()
        for key, value in form.items()
        if isinstance(value, str) and value.strip()
    }
    image = form.get("image")
    if not isinstance(image, UploadFile) or not image.filename:
        image = None
    return fields, image


# ------------------------- item types -------------------------

@admin_router.get("/types")
def list_item_types(
    session: SessionDep,
    current: AdminDep,
    catalog: Optional[int] = None,
):
    if catalog is None:
        raise HTTPException(status_code=400, detail="Missing catalog parameter")
    owned_catalog(session, catalog, current["user"].id)
    return session.exec(
        select(ItemType)
        .where(ItemType.catalog_id == catalog)
        .order_by(col(ItemType.created_at).desc())
    ).all()


@admin_router.post("/types")
def create_item_type(data: ItemTypeCreate, session: SessionDep, current: AdminDep):
    owned_catalog(session, data.catalog_id, current["user"].id)
    item_type = ItemType(catalog_id=data.catalog_id, name=data.name)
    session.add(item_type)
    session.commit()
    session.refresh(item_type)
    return {"success": True, "message": "Item type created", "item_type": item_type}


@admin_router.patch("/types/{type_id}")
def update_item_type(
    type_id: int,
    data: ItemTypeUpdate,
    session: SessionDep,
    current: AdminDep,
):
    item_type = owned_item_type(session, type_id, current["user"].id)
    item_type.name = data.name
    session.add(item_type)
    session.commit()
    session.refresh(item_type)
    return {"success": True, "message": "Item type updated", "item_type": item_type}


@admin_router.delete("/types/{type_id}")
def delete_item_type(type_id: int, session: SessionDep, current: AdminDep):
    item_type = owned_item_type(session, type_id, current["user"].id)

    # Items keep existing, untyped
    for item in session.exec(select(Item).where(Item.item_type_id == type_id)).all():
        item.item_type_id = None
        session.add(item)
    session.flush()

    session.delete(item_type)
    session.commit()
    return {"success": True, "message": "Item type deleted"}


# ------------------------- items -------------------------

@admin_router.get("/items")
def list_items(
    session: SessionDep,
    current: AdminDep,
    store: ImageStoreDep,
    catalog: Optional[int] = None,
):
    """
    Items of a catalog with their type name and image link.
    """
    if catalog is None:
        raise HTTPException(status_code=400, detail="Missing catalog ID")
    owned_catalog(session, catalog, current["user"].id)

    type_names = {
        t.id: t.name
        for t in session.exec(select(ItemType).where(ItemType.catalog_id == catalog)).all()
    }
    items = session.exec(
        select(Item).where(Item.catalog_id == catalog).order_by(col(Item.created_at))
    ).all()
    return [_item_payload(item, store, type_names.get(item.item_type_id)) for item in items]


@admin_router.post("/items")
async def create_item(
    request: Request,
    session: SessionDep,
    current: AdminDep,
    store: ImageStoreDep,
):
    """
    Create an item from a multipart form; the optional "image" must be a JPEG.
    """
    fields, image = await _read_item_form(request)
    data = ItemCreate(**fields)

    owned_catalog(session, data.catalog_id, current["user"].id)
    _check_item_type(session, data.item_type_id, data.catalog_id)

    content = await image.read() if image else b""
    if content:
        store.validate(content, image.content_type)

    item = Item(
        catalog_id=data.catalog_id,
        name=data.name,
        description=data.description,
        default_quantity=data.quantity,
        actual_quantity=data.quantity,
        serial_number=data.serial_number,
        item_type_id=data.item_type_id,
    )
    session.add(item)
    session.commit()
    session.refresh(item)

    if content:
        store.upload(item.id, content, image.content_type)

    logger.info("Item %s created in catalog %s", item.id, item.catalog_id)
    return {"success": True, "message": "Item created", "item": _item_payload(item, store)}


@admin_router.patch("/items/{item_id}")
async def update_item(
    item_id: int,
    request: Request,
    session: SessionDep,
    current: AdminDep,
    store: ImageStoreDep,
):
    """
    Edit an item. Changing the quantity moves the available stock by the
    same amount, so units out on loan stay accounted for.
    """
    item = owned_item(session, item_id, current["user"].id)

    fields, image = await _read_item_form(request)
    data = ItemUpdate(**fields)
    _check_item_type(session, data.item_type_id, item.catalog_id)

    content = await image.read() if image else b""
    if content:
        store.validate(content, image.content_type)

    actual_quantity = item.actual_quantity + (data.quantity - item.default_quantity)
    if actual_quantity < 0:
        raise ValidationError("Quantity cannot be lower than the units currently on loan")

    item.name = data.name
    item.description = data.description
    item.default_quantity = data.quantity
    item.actual_quantity = actual_quantity
    item.serial_number = data.serial_number
    item.item_type_id = data.item_type_id
    session.add(item)
    session.commit()
    session.refresh(item)

    if content:
        store.upload(item.id, content, image.content_type)

    return {"success": True, "message": "Item updated", "item": _item_payload(item, store)}


@admin_router.delete("/items/{item_id}")
def delete_item(
    item_id: int,
    session: SessionDep,
    current: AdminDep,
    store: ImageStoreDep,
):
    item = owned_item(session, item_id, current["user"].id)

    # Block delete while units are still out
    if borrowed_quantity(session, item_id) > 0:
        raise ValidationError("Cannot delete an item that is part of orders not yet validated")

    # Order lines are loan history and are never rewritten
    referenced = session.exec(select(OrderItem).where(OrderItem.item_id == item_id)).first()
    if referenced is not None:
        raise ValidationError("Cannot delete an item that appears in past orders")

    session.delete(item)
    session.commit()
    store.remove(item_id)
    logger.info("Item %s deleted by admin %s", item_id, current["user"].id)
    return {"success": True, "message": "Item deleted"}


@admin_router.get("/items/stat")
def item_statistics(
    session: SessionDep,
    current: AdminDep,
    item: Optional[int] = None,
):
    """
    Total, available and borrowed stock of an item.
    Borrowed counts every order whose return is not validated yet.
    """
    if item is None:
        raise HTTPException(status_code=400, detail="Missing item ID")
    found = owned_item(session, item, current["user"].id)

    return {
        "item": {
            "id": found.id,
            "name": found.name,
            "description": found.description,
            "default_quantity": found.default_quantity,
            "actual_quantity": found.actual_quantity,
        },
        "statistics": {
            "total_stock": found.default_quantity,
            "available_stock": found.actual_quantity,
            "borrowed_stock": borrowed_quantity(session, item),
        },
    }


# ------------------------- student side -------------------------

@user_router.get("/items")
def list_catalog_items(
    session: SessionDep,
    current: StudentDep,
    store: ImageStoreDep,
    catalog_id: Optional[int] = None,
):
    if catalog_id is None:
        raise HTTPException(status_code=400, detail="Missing catalog ID")

    items = session.exec(
        select(Item).where(Item.catalog_id == catalog_id).order_by(col(Item.created_at))
    ).all()
    return [_item_payload(item, store) for item in items]
