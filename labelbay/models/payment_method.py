"""
PaymentMethod model

Stores only the provider's token and display metadata. Raw card
numbers and CVC never reach this table.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, Boolean, DateTime, Index, text

from labelbay.core.database import Base


class PaymentMethod(Base):
    """Tokenized payment instrument owned by one user."""
    __tablename__ = "payment_methods"
    __table_args__ = (
        Index("ix_payment_methods_user_id", "user_id"),
        Index(
            "uq_payment_methods_default_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("is_default AND NOT is_deleted"),
            sqlite_where=text("is_default = 1 AND is_deleted = 0"),
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), nullable=False)

    # Provider tokenization result
    provider = Column(String(20), nullable=False, default="stripe")
    provider_token = Column(String(255), nullable=False)
    brand = Column(String(30), nullable=True)
    last_four = Column(String(4), nullable=False)
    exp_month = Column(Integer, nullable=False)
    exp_year = Column(Integer, nullable=False)
    billing_zip = Column(String(20), nullable=True)

    is_default = Column(Boolean, default=False, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self):
        return f"<PaymentMethod(id={self.id}, brand={self.brand}, last4={self.last_four}, default={self.is_default})>"
