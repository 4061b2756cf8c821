"""User SQLAlchemy model and Pydantic schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import BigInteger, Boolean, DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from davbox.db.session import Base


class User(Base):
    """User table: id is primary key, login identifier and storage folder name."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    # Quota in bytes. 0 = unlimited. quota_used is only changed by the QuotaLedger.
    quota_limit: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    quota_used: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)


# Pydantic schemas for API
class UserCreate(BaseModel):
    """Payload for admin creating a new user."""

    id: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=8)
    quota_limit: Optional[int] = Field(default=None, ge=0)
    is_admin: bool = False


class UserResponse(BaseModel):
    """User as returned by API (no password)."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    is_admin: bool
    created_at: datetime
    quota_used: int
    quota_limit: int


class UserLogin(BaseModel):
    """Login request body."""

    login: str
    password: str


class SessionResponse(BaseModel):
    """Session token response."""

    token: str
    token_type: str = "bearer"
    expires_at: datetime
    expires_in: int  # seconds


class ChangePassword(BaseModel):
    """Request body for changing own password."""

    current_password: str
    new_password: str = Field(min_length=8)


class QuotaUpdate(BaseModel):
    """Request body for admin to set a user's quota (bytes). 0 = unlimited."""

    quota_limit: int = Field(ge=0)


class QuotaResponse(BaseModel):
    used_bytes: int
    limit_bytes: int
    # None when unlimited
    free_bytes: Optional[int] = None
