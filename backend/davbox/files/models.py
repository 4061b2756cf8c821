"""SQLAlchemy model for file and directory metadata, plus the API schema."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from davbox.db.session import Base

FILE = "file"
DIRECTORY = "directory"


def new_version() -> str:
    """Opaque version tag; a fresh one is assigned on every mutation."""
    return uuid.uuid4().hex


class StorageEntry(Base):
    """One file or directory owned by a user. Path is the canonical logical path ("/a/b")."""

    __tablename__ = "entries"
    __table_args__ = (Index("ix_entries_owner_parent", "owner_id", "parent"),)

    owner_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    path: Mapped[str] = mapped_column(String(4096), primary_key=True)
    parent: Mapped[str] = mapped_column(String(4096), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    modified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    version: Mapped[str] = mapped_column(String(32), default=new_version, nullable=False)
    content_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # SHA-256 hex

    @property
    def is_dir(self) -> bool:
        return self.kind == DIRECTORY

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    def __repr__(self) -> str:
        return f"<StorageEntry {self.owner_id}:{self.path} {self.kind} size={self.size} v={self.version}>"


class EntryResponse(BaseModel):
    """Entry as returned by the listing API."""

    model_config = ConfigDict(from_attributes=True)

    path: str
    name: str
    kind: str
    size: int
    modified_at: datetime
    version: str
    content_hash: Optional[str] = None
