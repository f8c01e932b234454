"""Presentment batch models: bank file artifacts and their lines."""
import enum

from sqlalchemy import Column, Enum as SQLEnum, ForeignKey, Index, Integer, Numeric, String, Text, Uuid, text
from sqlalchemy.orm import relationship

from agency_billing.models.base import Base, JSONType, UTCDateTime


class BatchDirection(str, enum.Enum):
    """Whether the file goes to or comes from the bank."""

    OUTBOUND = "OUTBOUND"
    INBOUND = "INBOUND"


class BatchStatus(str, enum.Enum):
    """Batch lifecycle status."""

    CREATING = "CREATING"
    EMPTY = "EMPTY"
    READY = "READY"
    FAILED = "FAILED"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    RECONCILED = "RECONCILED"
    REJECTED = "REJECTED"


class BatchItemStatus(str, enum.Enum):
    """Outcome of one line of a batch."""

    PENDING = "PENDING"
    PRESENTED = "PRESENTED"
    PAID = "PAID"
    REJECTED = "REJECTED"
    ERROR = "ERROR"


class PresentmentBatch(Base):
    """
    Outbound presentment file or inbound response file.

    Control totals are stored as built (outbound) or as declared by the bank
    (inbound).
    """

    __tablename__ = "billing_file_batches"
    __table_args__ = (
        # One processed response file per content hash and outbound batch
        Index(
            "uq_billing_file_batches_inbound_sha",
            "parent_batch_id",
            "sha256",
            unique=True,
            postgresql_where=text("status = 'PROCESSED'"),
            sqlite_where=text("status = 'PROCESSED'"),
        ),
    )

    parent_batch_id = Column(
        Uuid(as_uuid=True), ForeignKey("billing_file_batches.id", ondelete="SET NULL"), nullable=True, index=True
    )
    direction = Column(SQLEnum(BatchDirection), nullable=False, index=True)
    channel = Column(String, nullable=False, default="DIRECT_DEBIT")
    adapter = Column(String, nullable=False)
    business_date = Column(UTCDateTime, nullable=False, index=True)
    status = Column(SQLEnum(BatchStatus), nullable=False, default=BatchStatus.CREATING, index=True)
    record_count = Column(Integer, nullable=False, default=0)
    amount_total = Column(Numeric(18, 2), nullable=False, default=0)
    checksum = Column(String(64), nullable=True)
    storage_key = Column(String, nullable=True)
    sha256 = Column(String(64), nullable=True, index=True)
    original_file_name = Column(String, nullable=True)
    total_paid_rows = Column(Integer, nullable=False, default=0)
    total_rejected_rows = Column(Integer, nullable=False, default=0)
    total_error_rows = Column(Integer, nullable=False, default=0)
    meta = Column(JSONType, nullable=True)

    # Relationships
    items = relationship("BatchItem", back_populates="batch", order_by="BatchItem.line_no")

    def __repr__(self) -> str:
        """String representation."""
        return f"<PresentmentBatch(id={self.id}, direction={self.direction.value}, status={self.status.value})>"


class BatchItem(Base):
    """One presented or received line of a batch file."""

    __tablename__ = "billing_file_batch_items"

    batch_id = Column(
        Uuid(as_uuid=True), ForeignKey("billing_file_batches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    line_no = Column(Integer, nullable=False)
    attempt_id = Column(Uuid(as_uuid=True), ForeignKey("billing_attempts.id", ondelete="SET NULL"), nullable=True)
    charge_id = Column(Uuid(as_uuid=True), ForeignKey("billing_charges.id", ondelete="SET NULL"), nullable=True)
    external_reference = Column(String, nullable=True, index=True)
    row_hash = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(18, 2), nullable=True)
    status = Column(SQLEnum(BatchItemStatus), nullable=False, default=BatchItemStatus.PENDING)
    response_code = Column(String, nullable=True)
    response_message = Column(Text, nullable=True)
    paid_reference = Column(String, nullable=True)
    row_payload = Column(JSONType, nullable=True)
    processed_at = Column(UTCDateTime, nullable=True)

    # Relationships
    batch = relationship("PresentmentBatch", back_populates="items")

    def __repr__(self) -> str:
        """String representation."""
        return f"<BatchItem(batch_id={self.batch_id}, line_no={self.line_no}, status={self.status.value})>"
