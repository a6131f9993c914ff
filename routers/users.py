# routers/users.py
from typing import Optional

from fastapi import APIRouter, HTTPException
from sqlalchemy import func, or_
from sqlmodel import col, select

from db import SessionDep
from errors import NotFoundError, ValidationError
from models import Catalog, Enrollment, Institution, Order, Profile
from schemas import EnrollData, ProfileRead
from .auth import AdminDep, StudentDep

admin_router = APIRouter(tags=["users"])
user_router = APIRouter(tags=["users"])


# ------------------------- admin -------------------------

@admin_router.get("/user/all", response_model=list[ProfileRead])
def list_users(session: SessionDep, current: AdminDep):
    """
    List all profiles, sorted by email.
    """
    return session.exec(select(Profile).order_by(col(Profile.email))).all()


@admin_router.get("/user/stat")
def user_statistics(
    session: SessionDep,
    current: AdminDep,
    user: Optional[int] = None,
):
    """
    Order counts and late returns of a user.
    """
    if user is None:
        raise HTTPException(status_code=400, detail="Missing user ID")

    profile = session.get(Profile, user)
    if profile is None:
        raise NotFoundError("User not found")

    def count_orders(*conditions) -> int:
        return session.exec(
            select(func.count()).select_from(Order).where(Order.user_id == user, *conditions)
        ).one()

    return {
        "user": {
            "id": profile.id,
            "email": profile.email,
            "first_name": profile.first_name,
            "last_name": profile.last_name,
            "delays": profile.delays,
        },
        "statistics": {
            "total_orders": count_orders(),
            "ongoing_orders": count_orders(Order.status == False),  # noqa: E712
            "returned_orders": count_orders(Order.status == True),  # noqa: E712
        },
    }


# ------------------------- student -------------------------

@user_router.get("/institutions")
def list_all_institutions(session: SessionDep, current: StudentDep):
    """
    Every institution a student can join.
    """
    return session.exec(select(Institution).order_by(col(Institution.name))).all()


@user_router.post("/institutions")
def enroll(data: EnrollData, session: SessionDep, current: StudentDep):
    """
    Add the current student to the selected institutions.
    """
    user = current["user"]
    if not data.institutions:
        raise ValidationError("Select at least one institution")

    added = 0
    for institution_id in dict.fromkeys(data.institutions):
        if session.get(Institution, institution_id) is None:
            raise NotFoundError(f"Institution {institution_id} not found")

        existing = session.exec(
            select(Enrollment).where(
                Enrollment.institution_id == institution_id,
                or_(Enrollment.user_id == user.id, Enrollment.email == user.email.lower()),
            )
        ).first()
        if existing:
            if existing.user_id is None:
                existing.user_id = user.id
                session.add(existing)
            continue

        session.add(Enrollment(institution_id=institution_id, user_id=user.id, email=user.email.lower()))
        added += 1

    session.commit()
    return {"success": True, "message": f"Joined {added} institution(s)"}


@user_router.get("/all")
def my_catalogs(session: SessionDep, current: StudentDep):
    """
    Institutions the student belongs to, each with its catalogs.
    """
    user = current["user"]
    institution_ids = session.exec(
        select(Enrollment.institution_id).where(
            or_(Enrollment.user_id == user.id, Enrollment.email == user.email.lower())
        )
    ).all()
    if not institution_ids:
        return []

    institutions = session.exec(
        select(Institution).where(col(Institution.id).in_(list(set(institution_ids))))
    ).all()
    catalogs = session.exec(
        select(Catalog).where(col(Catalog.institution_id).in_([i.id for i in institutions]))
    ).all()

    return [
        {
            "id": institution.id,
            "name": institution.name,
            "acronym": institution.acronym,
            "catalogs": [
                {"id": c.id, "name": c.name, "acronym": c.acronym}
                for c in catalogs
                if c.institution_id == institution.id
            ],
        }
        for institution in institutions
    ]
