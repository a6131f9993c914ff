import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from sqlalchemy import func
from sqlmodel import Session, col, select

from access import owned_catalog, owned_institution
from db import SessionDep
from errors import NotFoundError, ValidationError
from models import (
    Catalog,
    Enrollment,
    Institution,
    Item,
    ItemType,
    Order,
    OrderItem,
    OrderMessage,
    User,
)
from schemas import (
    CatalogCreate,
    CatalogUpdate,
    InstitutionCreate,
    InstitutionUpdate,
    StudentCreate,
)
from storage import ImageStoreDep, ItemImageStore
from .auth import AdminDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["institutions"])


def delete_catalog_tree(session: Session, catalog: Catalog, store: ItemImageStore) -> None:
    """
    Delete a catalog with its orders (lines and messages), items and item types.
    Does not commit.
    """
    order_ids = session.exec(select(Order.id).where(Order.catalog_id == catalog.id)).all()
    if order_ids:
        for line in session.exec(select(OrderItem).where(col(OrderItem.order_id).in_(order_ids))).all():
            session.delete(line)
        for note in session.exec(select(OrderMessage).where(col(OrderMessage.order_id).in_(order_ids))).all():
            session.delete(note)
        for order in session.exec(select(Order).where(Order.catalog_id == catalog.id)).all():
            session.delete(order)
    session.flush()

    items = session.exec(select(Item).where(Item.catalog_id == catalog.id)).all()
    for item in items:
        store.remove(item.id)
        session.delete(item)
    session.flush()

    for item_type in session.exec(select(ItemType).where(ItemType.catalog_id == catalog.id)).all():
        session.delete(item_type)

    session.delete(catalog)


# ------------------------- institutions -------------------------

@router.get("/institutions")
def list_institutions(session: SessionDep, current: AdminDep):
    """
    Institutions created by the current admin.
    """
    user = current["user"]
    return session.exec(
        select(Institution)
        .where(Institution.creator_id == user.id)
        .order_by(col(Institution.created_at))
    ).all()


@router.post("/institutions")
def create_institution(data: InstitutionCreate, session: SessionDep, current: AdminDep):
    user = current["user"]
    institution = Institution(creator_id=user.id, **data.model_dump())
    session.add(institution)
    session.commit()
    session.refresh(institution)
    logger.info("Institution %s created by admin %s", institution.id, user.id)
    return {"success": True, "message": "Institution created", "institution": institution}


@router.patch("/institutions/{institution_id}")
def update_institution(
    institution_id: int,
    data: InstitutionUpdate,
    session: SessionDep,
    current: AdminDep,
):
    institution = owned_institution(session, institution_id, current["user"].id)
    for field, value in data.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(institution, field, value)
    session.add(institution)
    session.commit()
    session.refresh(institution)
    return {"success": True, "message": "Institution updated", "institution": institution}


@router.delete("/institutions/{institution_id}")
def delete_institution(
    institution_id: int,
    session: SessionDep,
    current: AdminDep,
    store: ImageStoreDep,
):
    institution = owned_institution(session, institution_id, current["user"].id)

    for catalog in session.exec(select(Catalog).where(Catalog.institution_id == institution_id)).all():
        delete_catalog_tree(session, catalog, store)

    for entry in session.exec(select(Enrollment).where(Enrollment.institution_id == institution_id)).all():
        session.delete(entry)

    session.flush()
    session.delete(institution)
    session.commit()
    logger.info("Institution %s deleted by admin %s", institution_id, current["user"].id)
    return {"success": True, "message": "Institution deleted"}


# ------------------------- catalogs -------------------------

@router.get("/catalogs")
def list_catalogs(
    session: SessionDep,
    current: AdminDep,
    institution: Optional[int] = None,
):
    if institution is None:
        raise HTTPException(status_code=400, detail="Missing institution ID")
    owned_institution(session, institution, current["user"].id)
    return session.exec(select(Catalog).where(Catalog.institution_id == institution)).all()


@router.post("/catalogs")
def create_catalog(data: CatalogCreate, session: SessionDep, current: AdminDep):
    owned_institution(session, data.institution_id, current["user"].id)
    catalog = Catalog(**data.model_dump())
    session.add(catalog)
    session.commit()
    session.refresh(catalog)
    return {"success": True, "message": "Catalog created", "catalog": catalog}


@router.patch("/catalogs/{catalog_id}")
def update_catalog(
    catalog_id: int,
    data: CatalogUpdate,
    session: SessionDep,
    current: AdminDep,
):
    catalog = owned_catalog(session, catalog_id, current["user"].id)
    for field, value in data.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(catalog, field, value)
    session.add(catalog)
    session.commit()
    session.refresh(catalog)
    return {"success": True, "message": "Catalog updated", "catalog": catalog}


@router.delete("/catalogs/{catalog_id}")
def delete_catalog(
    catalog_id: int,
    session: SessionDep,
    current: AdminDep,
    store: ImageStoreDep,
):
    catalog = owned_catalog(session, catalog_id, current["user"].id)
    delete_catalog_tree(session, catalog, store)
    session.commit()
    logger.info("Catalog %s deleted by admin %s", catalog_id, current["user"].id)
    return {"success": True, "message": "Catalog deleted"}


# ------------------------- settings & roster -------------------------

@router.get("/settings")
def institution_settings(
    session: SessionDep,
    current: AdminDep,
    institution: Optional[int] = None,
):
    """
    Institution data together with its catalogs.
    """
    if institution is None:
        raise HTTPException(status_code=400, detail="Missing institution ID")
    found = owned_institution(session, institution, current["user"].id)
    catalogs = session.exec(select(Catalog).where(Catalog.institution_id == institution)).all()
    return {**found.model_dump(), "catalogs": catalogs}


@router.get("/settings/students")
def list_students(
    session: SessionDep,
    current: AdminDep,
    institution: Optional[int] = None,
):
    if institution is None:
        raise HTTPException(status_code=400, detail="Missing institution ID")
    owned_institution(session, institution, current["user"].id)
    return session.exec(
        select(Enrollment)
        .where(Enrollment.institution_id == institution)
        .order_by(col(Enrollment.created_at))
    ).all()


@router.post("/settings/students")
def add_student(data: StudentCreate, session: SessionDep, current: AdminDep):
    owned_institution(session, data.institution_id, current["user"].id)

    email = data.email.lower()
    existing = session.exec(
        select(Enrollment).where(
            Enrollment.institution_id == data.institution_id,
            Enrollment.email == email,
        )
    ).first()
    if existing:
        raise ValidationError("Student already in roster")

    # Link the entry to an existing account when there is one
    account = session.exec(select(User).where(func.lower(User.email) == email)).first()

    entry = Enrollment(
        institution_id=data.institution_id,
        email=email,
        user_id=account.id if account else None,
    )
    session.add(entry)
    session.commit()
    session.refresh(entry)
    return {"success": True, "message": "Student added", "student": entry}


@router.delete("/settings/students/{entry_id}")
def remove_student(entry_id: int, session: SessionDep, current: AdminDep):
    entry = session.get(Enrollment, entry_id)
    if entry is None:
        raise NotFoundError("Student not found")
    owned_institution(session, entry.institution_id, current["user"].id)

    session.delete(entry)
    session.commit()
    return {"success": True, "message": "Student removed"}


# ------------------------- overview -------------------------

@router.get("/overview")
def catalog_overview(
    session: SessionDep,
    current: AdminDep,
    institution: Optional[int] = None,
    catalog: Optional[int] = None,
):
    """
    Number of orders and items of a catalog.
    """
    if institution is None or catalog is None:
        raise HTTPException(status_code=400, detail="Missing query parameters")

    found = owned_catalog(session, catalog, current["user"].id)
    if found.institution_id != institution:
        raise NotFoundError("Catalog not found")

    total_orders = session.exec(
        select(func.count()).select_from(Order).where(Order.catalog_id == catalog)
    ).one()
    total_items = session.exec(
        select(func.count()).select_from(Item).where(Item.catalog_id == catalog)
    ).one()
    return {"total_orders": total_orders, "total_items": total_items}
