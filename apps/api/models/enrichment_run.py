"""EnrichmentRun model tracking one metered AI enrichment invocation."""

import enum

from sqlalchemy import Boolean, Column, DateTime, Enum, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class EnrichmentStatus(str, enum.Enum):
    PENDING = "PENDING"
    CHARGED = "CHARGED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


TERMINAL_ENRICHMENT_STATUSES = frozenset(
    {EnrichmentStatus.CHARGED, EnrichmentStatus.SKIPPED, EnrichmentStatus.REFUNDED}
)


class EnrichmentRun(Base):
    """Charge-after-value-delivered record for a single buyer enrichment."""

    __tablename__ = "enrichment_runs"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    target_id = Column(String, nullable=False, index=True)
    idempotency_key = Column(String, nullable=False, unique=True)
    status = Column(
        Enum(EnrichmentStatus, name="enrichment_status", native_enum=False, length=16),
        nullable=False,
        default=EnrichmentStatus.PENDING,
        index=True,
    )
    charged = Column(Boolean, nullable=False, default=False)
    credit_cost = Column(Integer, nullable=False, default=0)
    ledger_entry_id = Column(String, ForeignKey("credit_ledger.id"), nullable=True)
    refund_entry_id = Column(String, ForeignKey("credit_ledger.id"), nullable=True)
    input_json = Column(JSON, nullable=True)
    output_json = Column(JSON, nullable=True)
    filled_fields = Column(JSON, nullable=True)
    result_summary = Column(Text, nullable=True)
    confidence_level = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="enrichment_runs")
