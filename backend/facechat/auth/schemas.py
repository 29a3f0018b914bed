"""Pydantic schemas for accounts and authentication requests."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class User(BaseModel):
    """Public view of an account."""
    id: str
    username: str
    email: str
    createdAt: datetime


class UserRecord(User):
    """Stored account including opaque credential material."""
    passwordHash: str = Field(..., exclude=True)
    faceTemplate: str = Field(..., exclude=True)


class Identity(BaseModel):
    """What a verified bearer credential says about its holder."""
    userId: str
    username: str


class SignupRequest(BaseModel):
    username: str
    email: str
    password: str
    faceImage: str = Field(..., description="Base64 image (data URL prefix allowed)")


class LoginRequest(BaseModel):
    username: str
    password: str
    faceImage: Optional[str] = None


class RefreshRequest(BaseModel):
    refreshToken: Optional[str] = None


class TokenResponse(BaseModel):
    message: str
    token: str
    refreshToken: Optional[str] = None
    user: Optional[User] = None
