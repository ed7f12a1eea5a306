"""SearchSession model scoping fingerprint dedup for one logical search."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class SearchSession(Base):
    """Active (or retired) billing scope for a derived search key."""

    __tablename__ = "search_sessions"
    __table_args__ = (Index("ix_search_sessions_user_active", "user_id", "is_active"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    search_key = Column(String, nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), index=True)

    user = relationship("User", back_populates="search_sessions")
    charged_rows = relationship("SearchChargedRow", back_populates="session", cascade="all, delete-orphan")
