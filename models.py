from datetime import date, datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    created_at: datetime = Field(default_factory=utcnow)


class Profile(SQLModel, table=True):
    id: int = Field(primary_key=True, foreign_key="user.id")
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    delays: int = 0  # late returns


class Role(SQLModel, table=True):
    user_id: int = Field(primary_key=True, foreign_key="user.id")
    role: str  # admin | user


class Institution(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    creator_id: int = Field(foreign_key="user.id", index=True)

    name: str
    description: str = ""
    acronym: str = ""
    created_at: datetime = Field(default_factory=utcnow)


class Catalog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    institution_id: int = Field(foreign_key="institution.id", index=True)

    name: str
    description: str = ""
    acronym: str = ""
    created_at: datetime = Field(default_factory=utcnow)


class ItemType(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    catalog_id: int = Field(foreign_key="catalog.id", index=True)

    name: str
    created_at: datetime = Field(default_factory=utcnow)


class Item(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    catalog_id: int = Field(foreign_key="catalog.id", index=True)
    item_type_id: Optional[int] = Field(default=None, foreign_key="itemtype.id")

    name: str
    description: str = ""
    default_quantity: int
    actual_quantity: int
    serial_number: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Order(SQLModel, table=True):
    # "order" is a reserved word in SQL
    __tablename__ = "loanorder"

    id: Optional[int] = Field(default=None, primary_key=True)
    catalog_id: int = Field(foreign_key="catalog.id", index=True)
    user_id: int = Field(foreign_key="user.id", index=True)

    status: bool = False  # False = loan in progress, True = returned by student
    validation: Optional[bool] = None  # True once an admin has restocked
    end_date: Optional[date] = None
    created_at: datetime = Field(default_factory=utcnow)


class OrderItem(SQLModel, table=True):
    order_id: int = Field(primary_key=True, foreign_key="loanorder.id")
    item_id: int = Field(primary_key=True, foreign_key="item.id")

    quantity: int


class OrderMessage(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="loanorder.id", index=True)

    message: str
    created_at: datetime = Field(default_factory=utcnow)


class Enrollment(SQLModel, table=True):
    """
    One roster line of an institution. Admins add students by email,
    students add themselves by user id.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    institution_id: int = Field(foreign_key="institution.id", index=True)
    email: Optional[str] = Field(default=None, index=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id")
    created_at: datetime = Field(default_factory=utcnow)
