"""CreditLedger model for metered usage accounting."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Index, Integer, JSON, String
from sqlalchemy.orm import relationship

from database import Base


class ActionType(str, enum.Enum):
    """Closed set of balance-affecting actions."""

    SEARCH_PAGE_CHARGE = "SEARCH_PAGE_CHARGE"
    AI_ENRICH_CHARGE = "AI_ENRICH_CHARGE"
    REFUND = "REFUND"
    INITIAL_GRANT = "INITIAL_GRANT"
    TOP_UP = "TOP_UP"


CHARGE_ACTIONS = frozenset({ActionType.SEARCH_PAGE_CHARGE, ActionType.AI_ENRICH_CHARGE})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditLedger(Base):
    """Immutable credit ledger entry."""

    __tablename__ = "credit_ledger"
    __table_args__ = (Index("ix_credit_ledger_user_created", "user_id", "created_at"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    idempotency_key = Column(String, nullable=False, unique=True)
    action_type = Column(
        Enum(ActionType, name="credit_action_type", native_enum=False, length=32),
        nullable=False,
        index=True,
    )
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    metadata_json = Column(JSON, nullable=True)
    reference_entry_id = Column(String, ForeignKey("credit_ledger.id"), nullable=True, index=True)
    # Microsecond timestamps keep per-account insertion order stable.
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    user = relationship("User", back_populates="credit_entries")
