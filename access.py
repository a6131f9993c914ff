"""
Ownership checks shared by the admin routes and the order lifecycle.

An admin manages everything below the institutions they created:
catalogs, items, item types, rosters and the orders placed in those catalogs.
"""
from sqlmodel import Session

from errors import NotAuthorizedError, NotFoundError
from models import Catalog, Institution, Item, ItemType, Order


def owned_institution(session: Session, institution_id: int, admin_id: int) -> Institution:
    institution = session.get(Institution, institution_id)
    if institution is None:
        raise NotFoundError("Institution not found")
    if institution.creator_id != admin_id:
        raise NotAuthorizedError("You can only manage institutions you created")
    return institution


def owned_catalog(session: Session, catalog_id: int, admin_id: int) -> Catalog:
    catalog = session.get(Catalog, catalog_id)
    if catalog is None:
        raise NotFoundError("Catalog not found")
    owned_institution(session, catalog.institution_id, admin_id)
    return catalog


def owned_item(session: Session, item_id: int, admin_id: int) -> Item:
    item = session.get(Item, item_id)
    if item is None:
        raise NotFoundError("Item not found")
    owned_catalog(session, item.catalog_id, admin_id)
    return item


def owned_item_type(session: Session, type_id: int, admin_id: int) -> ItemType:
    item_type = session.get(ItemType, type_id)
    if item_type is None:
        raise NotFoundError("Item type not found")
    owned_catalog(session, item_type.catalog_id, admin_id)
    return item_type


def owned_order(session: Session, order_id: int, admin_id: int) -> Order:
    order = session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    owned_catalog(session, order.catalog_id, admin_id)
    return order
