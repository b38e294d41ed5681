"""
Account balance and transaction models

AccountBalance.balance is written only by the Ledger. Transaction rows
are append-only; status is the one mutable column and only moves
pending -> completed or pending -> failed.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from sqlalchemy import (
    Column, String, DateTime, Numeric, Text, Index, Enum as SQLEnum
)
import enum

from labelbay.core.database import Base


class TransactionType(str, enum.Enum):
    DEBIT = "debit"
    DEPOSIT = "deposit"
    REFUND = "refund"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class AccountBalance(Base):
    """One row per user holding the prepaid balance."""
    __tablename__ = "account_balances"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), unique=True, nullable=False, index=True)
    balance = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    currency = Column(String(3), nullable=False, default="USD")
    last_deposit_date = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self):
        return f"<AccountBalance(user_id={self.user_id}, balance={self.balance})>"


class Transaction(Base):
    """
    Signed ledger entry. Debits are negative.

    transaction_reference is the idempotency key: a repeated credit or
    debit with the same reference returns this row instead of moving
    the balance again.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_user_created", "user_id", "created_at"),
        Index("ix_transactions_shipment_id", "shipment_id"),
        Index("ix_transactions_status", "status"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), nullable=False)

    # References for audit, not FK: the debit is written before the shipment exists
    shipment_id = Column(String(36), nullable=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    transaction_type = Column(SQLEnum(TransactionType), nullable=False)
    status = Column(
        SQLEnum(TransactionStatus),
        default=TransactionStatus.COMPLETED,
        nullable=False
    )
    provider = Column(String(50), nullable=False, default="account_balance")
    transaction_reference = Column(String(255), unique=True, nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)
    description = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self):
        return (
            f"<Transaction(ref={self.transaction_reference}, type={self.transaction_type}, "
            f"amount={self.amount}, status={self.status})>"
        )
