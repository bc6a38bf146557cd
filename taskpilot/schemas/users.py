from typing import Optional

from pydantic import BaseModel, EmailStr, Field

from .auth import UserOut


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    email: Optional[EmailStr] = None


class AdminUserUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    email: Optional[EmailStr] = None
    is_active: Optional[bool] = None


class ProfileResponse(BaseModel):
    message: str
    user: UserOut


class UserStats(BaseModel):
    total_users: int
    total_workers: int
    total_admins: int
