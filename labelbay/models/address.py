"""
Address model

Saved postal addresses per user. At most one non-deleted address per
(user, address_type) carries is_default; a partial unique index backs
the invariant at the storage level.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Boolean, DateTime, Index, text, Enum as SQLEnum
)
import enum

from labelbay.core.database import Base


class AddressType(str, enum.Enum):
    """Type of address"""
    SHIPPING = "shipping"
    BILLING = "billing"
    RETURN = "return"
    BOTH = "both"


class Address(Base):
    """
    Saved address owned by one user.

    Rows are never hard-deleted; is_deleted hides them from listing and
    from default selection.
    """
    __tablename__ = "addresses"
    __table_args__ = (
        Index("ix_addresses_user_id", "user_id"),
        Index("ix_addresses_user_type", "user_id", "address_type"),
        Index(
            "uq_addresses_default_per_type",
            "user_id",
            "address_type",
            unique=True,
            postgresql_where=text("is_default AND NOT is_deleted"),
            sqlite_where=text("is_default = 1 AND is_deleted = 0"),
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), nullable=False)

    address_type = Column(
        SQLEnum(AddressType),
        default=AddressType.SHIPPING,
        nullable=False
    )

    # Recipient
    name = Column(String(100), nullable=False)
    company_name = Column(String(100), nullable=True)
    phone = Column(String(20), nullable=True)
    email = Column(String(255), nullable=True)

    # Postal fields
    address_line1 = Column(String(100), nullable=False)
    address_line2 = Column(String(100), nullable=True)
    city = Column(String(100), nullable=False)
    state = Column(String(50), nullable=False)
    postal_code = Column(String(20), nullable=False)
    country = Column(String(2), nullable=False, default="US")  # ISO 3166-1 alpha-2
    is_residential = Column(Boolean, default=True, nullable=False)

    is_default = Column(Boolean, default=False, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    def to_provider_dict(self) -> dict:
        """Address in the shape rate providers accept."""
        return {
            "name": self.name,
            "company": self.company_name,
            "street1": self.address_line1,
            "street2": self.address_line2,
            "city": self.city,
            "state": self.state,
            "zip": self.postal_code,
            "country": self.country,
            "phone": self.phone,
            "email": self.email,
            "is_residential": self.is_residential,
        }

    def __repr__(self):
        return f"<Address(id={self.id}, type={self.address_type}, city={self.city}, default={self.is_default})>"
