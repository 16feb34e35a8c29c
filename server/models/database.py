"""SQLModel tables for journal entries and extracted career data."""

import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import UniqueConstraint, func

from models.auth import User


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Entry(SQLModel, table=True):
    """One journal entry per user per day."""

    __tablename__ = "entries"
    __table_args__ = (UniqueConstraint("user_id", "date", name="uq_entries_user_date"),)

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=64)
    user_id: str = Field(foreign_key="users.id", index=True, max_length=64)
    date: str = Field(max_length=10)  # YYYY-MM-DD
    raw_text: str = Field(default="")
    word_count: int = Field(default=0)
    extracted_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    sentiment: Optional[str] = Field(default=None, max_length=32)
    project_ids: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    skill_ids: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    competency_ids: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class Project(SQLModel, table=True):
    """Project mentioned in a user's entries."""

    __tablename__ = "projects"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_projects_user_name"),)

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=64)
    user_id: str = Field(foreign_key="users.id", index=True, max_length=64)
    name: str = Field(max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    status: str = Field(default="active", max_length=32)
    entry_count: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class Skill(SQLModel, table=True):
    """Skill demonstrated in a user's entries."""

    __tablename__ = "skills"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_skills_user_name"),)

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=64)
    user_id: str = Field(foreign_key="users.id", index=True, max_length=64)
    name: str = Field(max_length=255)
    category: str = Field(default="other", max_length=64)
    usage_count: int = Field(default=0)
    first_used: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    last_used: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class Competency(SQLModel, table=True):
    """Competency evidenced in a user's entries."""

    __tablename__ = "competencies"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_competencies_user_name"),)

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=64)
    user_id: str = Field(foreign_key="users.id", index=True, max_length=64)
    name: str = Field(max_length=255)
    framework: str = Field(default="custom", max_length=64)
    description: Optional[str] = Field(default=None, max_length=2000)
    demonstration_count: int = Field(default=0)
    last_demonstrated: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


# Model names used by the generic store operations
MODEL_REGISTRY: Dict[str, type] = {
    "user": User,
    "entry": Entry,
    "project": Project,
    "skill": Skill,
    "competency": Competency,
}
