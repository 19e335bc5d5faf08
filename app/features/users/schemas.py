"""
Pydantic schemas for user-related requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field


class UserBase(BaseModel):
    """Base user schema with common fields."""
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=255)


class UserCreate(UserBase):
    """Schema for creating a new user."""
    completion_percent: int = Field(0, ge=0, le=100, description="Profile completion percentage")
    is_admin: bool = False


class UserUpdate(BaseModel):
    """Schema for updating user information (admin only)."""
    name: str | None = Field(None, min_length=1, max_length=255)
    completion_percent: int | None = Field(None, ge=0, le=100)
    is_active: bool | None = None
    is_admin: bool | None = None


class UserResponse(UserBase):
    """Schema for user responses."""
    id: str
    completion_percent: int
    is_active: bool
    is_admin: bool
    last_seen_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class UserPublic(BaseModel):
    """Public user information (limited fields)."""
    id: str
    name: str

    model_config = {"from_attributes": True}
