"""
Shipment model

A shipment row is written after the balance debit succeeds. Its id is
generated before the debit so the debit transaction can reference it.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Boolean, DateTime, Integer, Numeric, JSON, Index, Enum as SQLEnum
)
import enum

from labelbay.core.database import Base


class ShipmentStatus(str, enum.Enum):
    """Shipment lifecycle status"""
    CREATED = "created"  # Paid for, label not yet bought from the provider
    LABEL_PURCHASED = "label_purchased"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Shipment(Base):
    """Paid shipment created from a rate quote."""
    __tablename__ = "shipments"
    __table_args__ = (
        Index("ix_shipments_user_id", "user_id"),
        Index("ix_shipments_status", "status"),
        Index("ix_shipments_needs_reconciliation", "needs_reconciliation"),
    )

    id = Column(String(36), primary_key=True)
    user_id = Column(String(64), nullable=False)

    # Saved address ids when the quote used them (references for audit, not FK)
    from_address_id = Column(String(36), nullable=True)
    to_address_id = Column(String(36), nullable=True)
    from_address = Column(JSON, nullable=False)
    to_address = Column(JSON, nullable=False)
    parcel = Column(JSON, nullable=False)

    # Quote linkage
    provider = Column(String(30), nullable=False)
    provider_rate_id = Column(String(255), nullable=False)
    carrier = Column(String(30), nullable=False)
    service_code = Column(String(100), nullable=False)
    service_name = Column(String(255), nullable=True)
    estimated_days = Column(Integer, nullable=True)

    # Equals the debit amount
    cost = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    status = Column(
        SQLEnum(ShipmentStatus),
        default=ShipmentStatus.CREATED,
        nullable=False
    )
    tracking_number = Column(String(100), nullable=True)
    label_url = Column(String(500), nullable=True)
    provider_transaction_id = Column(String(255), nullable=True)

    # Set until the debit transaction is linked (completed)
    needs_reconciliation = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )
    label_purchased_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Shipment(id={self.id}, carrier={self.carrier}, cost={self.cost}, status={self.status})>"
