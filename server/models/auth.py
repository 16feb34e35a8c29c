"""User account model (identity comes from the OAuth provider)."""

import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlmodel import SQLModel, Field, Column, DateTime
from sqlalchemy import UniqueConstraint, func


class User(SQLModel, table=True):
    """Journal owner, created on first OAuth login."""

    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("provider", "provider_id", name="uq_users_provider_identity"),)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True, max_length=64)
    email: str = Field(index=True, max_length=255)
    name: str = Field(max_length=255)
    provider: str = Field(default="google", max_length=32)  # google | linkedin
    provider_id: str = Field(max_length=255)
    avatar_url: Optional[str] = Field(default=None, max_length=1024)
    job_title: Optional[str] = Field(default=None, max_length=255)
    industry: Optional[str] = Field(default=None, max_length=255)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    last_login: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )
