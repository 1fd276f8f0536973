from pydantic import BaseModel, EmailStr
from typing import Optional

from ..models.user import UserRole
from .common import CamelModel


class UserBase(CamelModel):
    full_name: str
    email: EmailStr
    system_id: Optional[str] = None


class UserCreate(UserBase):
    password: str
    role: str = UserRole.STUDENT


class UserUpdate(CamelModel):
    full_name: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    system_id: Optional[str] = None
    can_edit_scores: Optional[bool] = None
    is_active: Optional[bool] = None


class User(BaseModel):
    id: int
    full_name: Optional[str] = None
    email: EmailStr
    system_id: Optional[str] = None
    role: str
    can_edit_scores: bool = False
    is_active: bool = True

    class Config:
        from_attributes = True
