from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class SignupData(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    role: Literal["admin", "user"]
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class LoginData(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)


class ProfileRead(BaseModel):
    id: int
    email: EmailStr
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class InstitutionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=30)
    description: str = Field(default="", max_length=40)
    acronym: str = Field(default="", max_length=10)


class InstitutionUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=30)
    description: Optional[str] = Field(default=None, max_length=40)
    acronym: Optional[str] = Field(default=None, max_length=10)


class CatalogCreate(InstitutionCreate):
    institution_id: int


class CatalogUpdate(InstitutionUpdate):
    pass


class ItemTypeCreate(BaseModel):
    catalog_id: int
    name: str = Field(min_length=1, max_length=50)


class ItemTypeUpdate(BaseModel):
    name: str = Field(min_length=1, max_length=50)


class ItemCreate(BaseModel):
    catalog_id: int
    name: str = Field(min_length=1, max_length=30)
    description: str = Field(default="", max_length=40)
    quantity: int = Field(ge=1, le=100)
    serial_number: Optional[str] = None
    item_type_id: Optional[int] = None


class ItemUpdate(BaseModel):
    name: str = Field(min_length=1, max_length=30)
    description: str = Field(default="", max_length=40)
    quantity: int = Field(ge=1, le=100)
    serial_number: Optional[str] = None
    item_type_id: Optional[int] = None


class StudentCreate(BaseModel):
    institution_id: int
    email: EmailStr


class EnrollData(BaseModel):
    institutions: List[int]


class OrderLine(BaseModel):
    item_id: int
    quantity: int = Field(gt=0)


class OrderCreate(BaseModel):
    catalog_id: int
    items: List[OrderLine]
    return_date: date


class ReturnDateUpdate(BaseModel):
    return_date: date


class BulkValidate(BaseModel):
    order_ids: List[int] = Field(min_length=1)


class MessageCreate(BaseModel):
    order_id: int
    message: str = Field(min_length=1, max_length=80)


class ActionResult(BaseModel):
    success: bool = True
    message: str
