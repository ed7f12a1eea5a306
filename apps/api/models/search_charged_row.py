"""SearchChargedRow model: one billed row fingerprint within a search session."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class SearchChargedRow(Base):
    """Fingerprint already billed under a search session."""

    __tablename__ = "search_charged_rows"
    __table_args__ = (
        UniqueConstraint("session_id", "row_fingerprint", name="uq_search_charged_rows_session_fingerprint"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String, ForeignKey("search_sessions.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    row_fingerprint = Column(String, nullable=False)
    ledger_entry_id = Column(String, ForeignKey("credit_ledger.id"), nullable=True, index=True)
    charged_at = Column(DateTime(timezone=True), server_default=func.now())

    session = relationship("SearchSession", back_populates="charged_rows")
