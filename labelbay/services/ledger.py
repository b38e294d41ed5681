"""
Ledger Service

The only writer of account balances. Every balance change is one storage
transaction that (a) moves the balance with a single conditional UPDATE
and (b) appends exactly one Transaction row recording balance_after.

Guarantees:
- debit never takes a balance below zero (WHERE balance >= amount, rowcount checked)
- debits/credits for one user are serialized in-process (per-user lock)
- credit and debit are idempotent on transaction_reference: a replay
  returns the original row and moves nothing
- transient storage errors are retried with bounded backoff, then
  surfaced as TransientStoreError with the balance unchanged
- InsufficientFunds / InvalidAmount are never retried
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, and_, func
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from labelbay.core.config import settings
from labelbay.core.database import AsyncSessionLocal
from labelbay.core.exceptions import (
    InsufficientFunds,
    InvalidAmount,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from labelbay.core.locks import KeyedLockManager, user_locks
from labelbay.core.retry import RetryConfig, retry_async
from labelbay.models.account import (
    AccountBalance,
    Transaction,
    TransactionStatus,
    TransactionType,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """Coerce to a 2-place Decimal. Floats go through str() to avoid binary noise."""
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidAmount(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise InvalidAmount(f"Invalid amount: {value!r}")
    rounded = amount.quantize(CENTS)
    if rounded != amount:
        raise InvalidAmount(f"Amount {value} has more than 2 decimal places")
    return rounded


@dataclass
class LedgerEntry:
    """Outcome of a ledger operation."""
    transaction_id: str
    user_id: str
    reference: str
    transaction_type: TransactionType
    status: TransactionStatus
    amount: Decimal
    balance_after: Decimal
    shipment_id: Optional[str] = None
    replayed: bool = False

    @classmethod
    def from_transaction(cls, tx: Transaction, replayed: bool = False) -> "LedgerEntry":
        return cls(
            transaction_id=tx.id,
            user_id=tx.user_id,
            reference=tx.transaction_reference,
            transaction_type=tx.transaction_type,
            status=tx.status,
            amount=Decimal(tx.amount).quantize(CENTS),
            balance_after=Decimal(tx.balance_after).quantize(CENTS),
            shipment_id=tx.shipment_id,
            replayed=replayed,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "reference": self.reference,
            "transaction_type": self.transaction_type.value,
            "status": self.status.value,
            "amount": str(self.amount),
            "balance_after": str(self.balance_after),
            "shipment_id": self.shipment_id,
            "replayed": self.replayed,
        }


class Ledger:
    """
    Balance and transaction history.

    Usage:
        ledger = Ledger()
        entry = await ledger.credit(user_id, Decimal("50.00"), reference="deposit_abc")
        entry = await ledger.debit(user_id, Decimal("12.34"), reference="ship_123")
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        retry_config: Optional[RetryConfig] = None,
        locks: Optional[KeyedLockManager] = None,
    ):
        self._session_factory = session_factory or AsyncSessionLocal
        self.retry_config = retry_config or RetryConfig(
            max_retries=settings.LEDGER_MAX_RETRIES,
            base_delay=settings.LEDGER_RETRY_BASE_DELAY,
            max_delay=settings.LEDGER_RETRY_MAX_DELAY,
        )
        self._locks = locks if locks is not None else user_locks

    # ==================== Helpers ====================

    async def _with_retry(self, operation, description: str):
        try:
            return await retry_async(
                operation,
                config=self.retry_config,
                retry_on=(OperationalError,),
                description=f"[LEDGER] {description}",
            )
        except OperationalError as e:
            raise TransientStoreError(
                f"Storage unavailable during {description}",
                details={"operation": description, "error_type": type(e.orig).__name__ if e.orig else None},
            ) from e

    @staticmethod
    async def _find(db: AsyncSession, reference: str) -> Optional[Transaction]:
        result = await db.execute(
            select(Transaction).where(Transaction.transaction_reference == reference)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _replay(tx: Transaction, user_id: str) -> LedgerEntry:
        if tx.user_id != user_id:
            raise ValidationError(
                "Transaction reference is already in use",
                field="reference",
                details={"reference": tx.transaction_reference},
            )
        logger.info(f"[LEDGER] replay of {tx.transaction_reference} for user {user_id}, no balance change")
        return LedgerEntry.from_transaction(tx, replayed=True)

    @staticmethod
    async def _balance(db: AsyncSession, user_id: str) -> Optional[Decimal]:
        result = await db.execute(
            select(AccountBalance.balance).where(AccountBalance.user_id == user_id)
        )
        balance = result.scalar_one_or_none()
        return Decimal(balance).quantize(CENTS) if balance is not None else None

    async def _commit_or_replay(
        self,
        db: AsyncSession,
        tx: Transaction,
        user_id: str,
    ) -> LedgerEntry:
        """Commit; a unique-reference race is resolved by returning the winner."""
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            existing = await self._find(db, tx.transaction_reference)
            if existing is None:
                raise
            return self._replay(existing, user_id)
        return LedgerEntry.from_transaction(tx)

    # ==================== Accounts ====================

    async def open_account(self, user_id: str, currency: Optional[str] = None) -> AccountBalance:
        """Create the zero-balance row if missing. Safe to call concurrently."""
        async def _open():
            async with self._session_factory() as db:
                result = await db.execute(
                    select(AccountBalance).where(AccountBalance.user_id == user_id)
                )
                account = result.scalar_one_or_none()
                if account is not None:
                    return account

                account = AccountBalance(
                    user_id=user_id,
                    balance=ZERO,
                    currency=currency or settings.FUNDING_CURRENCY,
                )
                db.add(account)
                try:
                    await db.commit()
                except IntegrityError:
                    # Another writer opened it first
                    await db.rollback()
                    result = await db.execute(
                        select(AccountBalance).where(AccountBalance.user_id == user_id)
                    )
                    return result.scalar_one()
                logger.info(f"[LEDGER] opened account for user {user_id}")
                return account

        return await self._with_retry(_open, f"open_account({user_id})")

    async def get_balance(self, user_id: str) -> Decimal:
        """Current balance; zero when the user has no account yet."""
        async def _get():
            async with self._session_factory() as db:
                return await self._balance(db, user_id)

        balance = await self._with_retry(_get, f"get_balance({user_id})")
        return balance if balance is not None else ZERO

    # ==================== Credit / Debit ====================

    async def credit(
        self,
        user_id: str,
        amount: Any,
        reference: str,
        transaction_type: TransactionType = TransactionType.DEPOSIT,
        provider: str = "manual",
        description: Optional[str] = None,
        shipment_id: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Increase the balance by amount.

        Raises InvalidAmount for amount <= 0. A repeated reference returns
        the original entry with its recorded balance_after.
        """
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmount(f"Credit amount must be positive, got {amount}")
        if not reference:
            raise ValidationError("Transaction reference is required", field="reference")
        if transaction_type == TransactionType.DEBIT:
            raise ValidationError("Credits cannot be recorded as debits", field="transaction_type")

        await self.open_account(user_id)

        async def _credit() -> LedgerEntry:
            async with self._session_factory() as db:
                existing = await self._find(db, reference)
                if existing is not None:
                    return self._replay(existing, user_id)

                now = datetime.now(timezone.utc)
                values = {"balance": AccountBalance.balance + amount, "updated_at": now}
                if transaction_type == TransactionType.DEPOSIT:
                    values["last_deposit_date"] = now

                await db.execute(
                    update(AccountBalance)
                    .where(AccountBalance.user_id == user_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                balance_after = await self._balance(db, user_id)

                tx = Transaction(
                    user_id=user_id,
                    shipment_id=shipment_id,
                    amount=amount,
                    currency=settings.FUNDING_CURRENCY,
                    transaction_type=transaction_type,
                    status=TransactionStatus.COMPLETED,
                    provider=provider,
                    transaction_reference=reference,
                    balance_after=balance_after,
                    description=description,
                )
                db.add(tx)
                return await self._commit_or_replay(db, tx, user_id)

        async with self._locks.hold(user_id):
            entry = await self._with_retry(_credit, f"credit({reference})")

        if not entry.replayed:
            logger.info(
                f"[LEDGER] credit {entry.amount} to user {user_id} ({transaction_type.value}, {reference}) "
                f"-> balance {entry.balance_after}"
            )
        return entry

    async def debit(
        self,
        user_id: str,
        amount: Any,
        reference: str,
        provider: str = "account_balance",
        description: Optional[str] = None,
        shipment_id: Optional[str] = None,
        status: TransactionStatus = TransactionStatus.COMPLETED,
    ) -> LedgerEntry:
        """
        Decrease the balance by amount, never below zero.

        The transaction row stores -amount. Raises InsufficientFunds when
        balance < amount; the balance is untouched in that case.
        """
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmount(f"Debit amount must be positive, got {amount}")
        if not reference:
            raise ValidationError("Transaction reference is required", field="reference")

        async def _debit() -> LedgerEntry:
            async with self._session_factory() as db:
                existing = await self._find(db, reference)
                if existing is not None:
                    return self._replay(existing, user_id)

                result = await db.execute(
                    update(AccountBalance)
                    .where(
                        and_(
                            AccountBalance.user_id == user_id,
                            AccountBalance.balance >= amount,
                        )
                    )
                    .values(
                        balance=AccountBalance.balance - amount,
                        updated_at=datetime.now(timezone.utc),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await db.rollback()
                    balance = await self._balance(db, user_id)
                    raise InsufficientFunds(
                        "Insufficient balance",
                        balance=balance if balance is not None else ZERO,
                        requested=amount,
                    )

                balance_after = await self._balance(db, user_id)
                tx = Transaction(
                    user_id=user_id,
                    shipment_id=shipment_id,
                    amount=-amount,
                    currency=settings.FUNDING_CURRENCY,
                    transaction_type=TransactionType.DEBIT,
                    status=status,
                    provider=provider,
                    transaction_reference=reference,
                    balance_after=balance_after,
                    description=description,
                )
                db.add(tx)
                return await self._commit_or_replay(db, tx, user_id)

        async with self._locks.hold(user_id):
            entry = await self._with_retry(_debit, f"debit({reference})")

        if not entry.replayed:
            logger.info(
                f"[LEDGER] debit {amount} from user {user_id} ({reference}) -> balance {entry.balance_after}"
            )
        return entry

    # ==================== Transactions ====================

    async def find_transaction(self, user_id: str, reference: str) -> Optional[LedgerEntry]:
        async def _get():
            async with self._session_factory() as db:
                return await self._find(db, reference)

        tx = await self._with_retry(_get, f"find_transaction({reference})")
        if tx is None or tx.user_id != user_id:
            return None
        return LedgerEntry.from_transaction(tx)

    async def transition_status(
        self,
        user_id: str,
        reference: str,
        new_status: TransactionStatus,
    ) -> LedgerEntry:
        """
        Move a pending transaction to completed or failed.

        Re-applying the status it already has is a no-op. Any other
        transition raises ValidationError.
        """
        new_status = TransactionStatus(new_status)
        if new_status == TransactionStatus.PENDING:
            raise ValidationError("Transactions cannot move back to pending", field="status")

        async def _transition() -> LedgerEntry:
            async with self._session_factory() as db:
                result = await db.execute(
                    update(Transaction)
                    .where(
                        and_(
                            Transaction.transaction_reference == reference,
                            Transaction.user_id == user_id,
                            Transaction.status == TransactionStatus.PENDING,
                        )
                    )
                    .values(status=new_status, updated_at=datetime.now(timezone.utc))
                    .execution_options(synchronize_session=False)
                )
                await db.commit()

                tx = await self._find(db, reference)
                if tx is None or tx.user_id != user_id:
                    raise NotFoundError("Transaction not found", resource="transaction", resource_id=reference)
                if result.rowcount != 1 and tx.status != new_status:
                    raise ValidationError(
                        f"Cannot move transaction from {tx.status.value} to {new_status.value}",
                        field="status",
                    )
                return LedgerEntry.from_transaction(tx)

        return await self._with_retry(_transition, f"transition_status({reference})")

    async def list_transactions(
        self,
        user_id: str,
        page: int = 1,
        page_size: int = 10,
    ) -> Tuple[List[Transaction], int]:
        """Newest first. Returns (rows, total)."""
        page = max(page, 1)
        page_size = min(max(page_size, 1), 100)

        async def _list():
            async with self._session_factory() as db:
                total = (
                    await db.execute(
                        select(func.count()).select_from(Transaction).where(Transaction.user_id == user_id)
                    )
                ).scalar_one()
                result = await db.execute(
                    select(Transaction)
                    .where(Transaction.user_id == user_id)
                    .order_by(Transaction.created_at.desc(), Transaction.id)
                    .offset((page - 1) * page_size)
                    .limit(page_size)
                )
                return list(result.scalars().all()), total

        return await self._with_retry(_list, f"list_transactions({user_id})")
