# Pydantic schemas for user-related requests/responses
# fastapi-users provides the base fields; we only add the POS profile fields.

from typing import Literal, Optional
from uuid import UUID

from fastapi_users import schemas

UserRole = Literal["admin", "cashier"]


class UserRead(schemas.BaseUser[UUID]):
    name: Optional[str] = None
    role: UserRole = "cashier"


class UserCreate(schemas.BaseUserCreate):
    name: Optional[str] = None
    role: UserRole = "cashier"


class UserUpdate(schemas.BaseUserUpdate):
    name: Optional[str] = None
    role: Optional[UserRole] = None
