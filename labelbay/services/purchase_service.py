"""
Shipment Purchase Service

Turns a rate quote into a paid shipment. The purchase is made of separate
storage transactions, so it runs as an explicit state machine:

    QUOTED -> DEBITING -> SHIPMENT_RECORDED -> TRANSACTION_LINKED -> DONE
       |          |               |
       |          |               +-> (link failed) DONE, shipment flagged for reconciliation
       |          +-> DEBITING_FAILED_NO_REFUND_NEEDED   (nothing to undo)
       |          +-> SHIPMENT_RECORD_FAILED_AFTER_DEBIT -> refund -> FAILED
       +-> FAILED (quote missing/expired)

Compensation:
- Insert failure after a debit issues a refund credit (reference refund_<id>)
  and marks the debit failed, retried with bounded backoff
- If the refund cannot be completed an operator alert is raised and the
  caller gets ConsistencyError
- Shipments are inserted with needs_reconciliation set; it is cleared once
  the debit transaction is completed. reconcile() and get_shipment() repair
  any shipment left flagged.
"""
import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, update, and_, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from labelbay.core.config import settings
from labelbay.core.database import AsyncSessionLocal
from labelbay.core.exceptions import (
    ConsistencyError,
    LabelBayError,
    NotFoundError,
    ProviderError,
    PurchaseFailedError,
    TransientStoreError,
    ValidationError,
)
from labelbay.core.retry import RetryConfig, retry_async
from labelbay.models.account import TransactionStatus, TransactionType
from labelbay.models.shipment import Shipment, ShipmentStatus
from labelbay.modules.shipping.providers import ProviderFactory
from labelbay.modules.shipping.providers.base import BaseRateProvider
from labelbay.services.alerting import alert_reconciliation_failure, alert_refund_failure
from labelbay.services.ledger import Ledger, LedgerEntry
from labelbay.services.quote_book import QuoteBook, RateQuote, quote_book as default_quote_book

logger = logging.getLogger(__name__)


class PurchaseState(str, enum.Enum):
    QUOTED = "quoted"
    DEBITING = "debiting"
    SHIPMENT_RECORDED = "shipment_recorded"
    TRANSACTION_LINKED = "transaction_linked"
    DONE = "done"
    FAILED = "failed"
    DEBITING_FAILED_NO_REFUND_NEEDED = "debiting_failed_no_refund_needed"
    SHIPMENT_RECORD_FAILED_AFTER_DEBIT = "shipment_record_failed_after_debit"


TERMINAL_STATES = {
    PurchaseState.DONE,
    PurchaseState.FAILED,
    PurchaseState.DEBITING_FAILED_NO_REFUND_NEEDED,
}


def debit_reference(shipment_id: str) -> str:
    return f"ship_{shipment_id}"


def refund_reference(shipment_id: str) -> str:
    return f"refund_{shipment_id}"


def cancel_reference(shipment_id: str) -> str:
    return f"cancel_{shipment_id}"


@dataclass
class PurchaseAttempt:
    """State of one purchase attempt."""
    user_id: str
    quote_id: str
    shipment_id: str
    state: PurchaseState = PurchaseState.QUOTED
    history: List[PurchaseState] = field(default_factory=lambda: [PurchaseState.QUOTED])

    def advance(self, new_state: PurchaseState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Purchase {self.shipment_id} already finished in {self.state.value}")
        logger.debug(f"[PURCHASE] {self.shipment_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)


@dataclass
class PurchaseResult:
    shipment_id: str
    status: ShipmentStatus
    state: PurchaseState
    amount: Decimal
    balance_after: Decimal
    transaction_id: str
    needs_reconciliation: bool = False

    def to_dict(self) -> Dict:
        return {
            "shipment_id": self.shipment_id,
            "status": self.status.value,
            "amount": self.amount,
            "balance_after": self.balance_after,
            "transaction_id": self.transaction_id,
        }


class PurchaseService:
    """
    Shipment purchase orchestrator.

    Usage:
        service = PurchaseService()
        result = await service.purchase_shipment(user_id, quote_id)
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        ledger: Optional[Ledger] = None,
        quote_book: Optional[QuoteBook] = None,
        compensation_retry: Optional[RetryConfig] = None,
        providers: Optional[Dict[str, BaseRateProvider]] = None,
    ):
        self._session_factory = session_factory or AsyncSessionLocal
        self.ledger = ledger or Ledger(self._session_factory)
        self.quote_book = quote_book if quote_book is not None else default_quote_book
        self.compensation_retry = compensation_retry or RetryConfig(
            max_retries=settings.COMPENSATION_MAX_RETRIES,
            base_delay=settings.COMPENSATION_RETRY_BASE_DELAY,
            max_delay=settings.COMPENSATION_RETRY_MAX_DELAY,
        )
        self._providers = providers

    # ==================== Purchase ====================

    async def purchase_shipment(self, user_id: str, quote_id: str) -> PurchaseResult:
        """
        Debit the quote amount and record the shipment.

        Raises:
            NotFoundError / QuoteExpiredError: quote unusable, nothing debited
            ValidationError: quote is not in the account currency, nothing debited
            InsufficientFunds / TransientStoreError: debit failed, nothing to undo
            PurchaseFailedError: shipment insert failed, debit refunded
            ConsistencyError: shipment insert failed and the refund failed too
        """
        quote = self.quote_book.get(quote_id, user_id)
        if quote.currency.upper() != settings.FUNDING_CURRENCY.upper():
            raise ValidationError(
                f"Quote currency {quote.currency} does not match account currency {settings.FUNDING_CURRENCY}",
                field="quote_id",
            )
        quote = self.quote_book.claim(quote_id, user_id)
        attempt = PurchaseAttempt(user_id=user_id, quote_id=quote_id, shipment_id=str(uuid.uuid4()))
        shipment_id = attempt.shipment_id

        # Step 2: debit, pending until linked to the recorded shipment
        attempt.advance(PurchaseState.DEBITING)
        try:
            entry = await self.ledger.debit(
                user_id,
                quote.amount,
                reference=debit_reference(shipment_id),
                shipment_id=shipment_id,
                status=TransactionStatus.PENDING,
                description=f"Shipping label: {quote.carrier} {quote.service_name}",
            )
        except (LabelBayError, SQLAlchemyError):
            attempt.advance(PurchaseState.DEBITING_FAILED_NO_REFUND_NEEDED)
            self.quote_book.release(quote)
            raise

        # Step 3: record the shipment; refund if that fails
        try:
            await self._record_shipment(shipment_id, user_id, quote)
        except Exception as e:
            attempt.advance(PurchaseState.SHIPMENT_RECORD_FAILED_AFTER_DEBIT)
            logger.error(f"[PURCHASE] shipment {shipment_id} insert failed after debit: {e}")
            await self._compensate(attempt, quote.amount, e)
            attempt.advance(PurchaseState.FAILED)
            self.quote_book.release(quote)
            raise PurchaseFailedError(
                "Shipment could not be recorded. Your balance has been refunded.",
                shipment_id=shipment_id,
                refunded=True,
            ) from e
        attempt.advance(PurchaseState.SHIPMENT_RECORDED)

        # Step 4: link; a failure here leaves the shipment flagged, purchase still succeeds
        linked = await self._link_transaction(user_id, shipment_id)
        if linked:
            attempt.advance(PurchaseState.TRANSACTION_LINKED)
        attempt.advance(PurchaseState.DONE)

        logger.info(
            f"[PURCHASE] user {user_id} bought {quote.carrier} {quote.service_code} for {quote.amount} "
            f"-> shipment {shipment_id} (balance {entry.balance_after})"
        )
        return PurchaseResult(
            shipment_id=shipment_id,
            status=ShipmentStatus.CREATED,
            state=attempt.state,
            amount=entry.amount,
            balance_after=entry.balance_after,
            transaction_id=entry.transaction_id,
            needs_reconciliation=not linked,
        )

    async def _record_shipment(self, shipment_id: str, user_id: str, quote: RateQuote) -> Shipment:
        snapshot = quote.request.snapshot()
        async with self._session_factory() as db:
            shipment = Shipment(
                id=shipment_id,
                user_id=user_id,
                from_address_id=quote.request.from_address_id,
                to_address_id=quote.request.to_address_id,
                from_address=snapshot["address_from"],
                to_address=snapshot["address_to"],
                parcel=snapshot["parcel"],
                provider=quote.provider,
                provider_rate_id=quote.provider_rate_id,
                carrier=quote.carrier,
                service_code=quote.service_code,
                service_name=quote.service_name,
                estimated_days=quote.estimated_days,
                cost=quote.amount,
                currency=quote.currency,
                status=ShipmentStatus.CREATED,
                needs_reconciliation=True,
            )
            db.add(shipment)
            await db.commit()
        return shipment

    async def _set_reconciliation_flag(self, shipment_id: str, value: bool) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(Shipment)
                .where(Shipment.id == shipment_id)
                .values(needs_reconciliation=value, updated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def _link_transaction(self, user_id: str, shipment_id: str) -> bool:
        try:
            await self.ledger.transition_status(user_id, debit_reference(shipment_id), TransactionStatus.COMPLETED)
            await self._set_reconciliation_flag(shipment_id, False)
            return True
        except (LabelBayError, SQLAlchemyError) as e:
            logger.error(
                f"[PURCHASE] could not link debit for shipment {shipment_id}: {e}. "
                f"Shipment left flagged for reconciliation"
            )
            return False

    async def _refund(
        self,
        user_id: str,
        shipment_id: str,
        amount: Decimal,
        reference: str,
        reason: str,
        mark_debit_failed: bool,
        cause: Optional[Exception] = None,
    ) -> LedgerEntry:
        """Idempotent refund credit, retried with backoff; escalates on exhaustion."""
        async def _do_refund() -> LedgerEntry:
            entry = await self.ledger.credit(
                user_id,
                amount,
                reference=reference,
                transaction_type=TransactionType.REFUND,
                provider="account_balance",
                description=reason,
                shipment_id=shipment_id,
            )
            if mark_debit_failed:
                await self.ledger.transition_status(
                    user_id, debit_reference(shipment_id), TransactionStatus.FAILED
                )
            return entry

        try:
            return await retry_async(
                _do_refund,
                config=self.compensation_retry,
                retry_on=(TransientStoreError, SQLAlchemyError),
                description=f"[PURCHASE] refund {reference}",
            )
        except (TransientStoreError, SQLAlchemyError) as e:
            await alert_refund_failure(
                user_id=user_id,
                shipment_id=shipment_id,
                amount=str(amount),
                error=f"{cause}; refund: {e}" if cause else str(e),
            )
            raise ConsistencyError(
                "Balance was debited but could not be refunded. Support has been alerted.",
                user_id=user_id,
                reference=reference,
            ) from e

    async def _compensate(self, attempt: PurchaseAttempt, amount: Decimal, cause: Exception) -> LedgerEntry:
        try:
            entry = await self._refund(
                attempt.user_id,
                attempt.shipment_id,
                amount,
                reference=refund_reference(attempt.shipment_id),
                reason="Refund: shipment could not be recorded",
                cause=cause,
                mark_debit_failed=True,
            )
        except ConsistencyError:
            attempt.advance(PurchaseState.FAILED)
            raise
        logger.warning(
            f"[PURCHASE] refunded {amount} to user {attempt.user_id} for unrecorded shipment "
            f"{attempt.shipment_id} (balance {entry.balance_after})"
        )
        return entry

    # ==================== Shipments ====================

    async def _load(self, user_id: str, shipment_id: str) -> Shipment:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Shipment).where(
                    and_(Shipment.id == shipment_id, Shipment.user_id == user_id)
                )
            )
            shipment = result.scalar_one_or_none()
        if shipment is None:
            raise NotFoundError("Shipment not found", resource="shipment", resource_id=shipment_id)
        return shipment

    async def get_shipment(self, user_id: str, shipment_id: str, repair: bool = True) -> Shipment:
        """Owner-filtered read. Flagged shipments are reconciled on the way out."""
        shipment = await self._load(user_id, shipment_id)
        if repair and shipment.needs_reconciliation:
            try:
                await self._reconcile_one(shipment)
            except (LabelBayError, SQLAlchemyError) as e:
                logger.warning(f"[RECONCILE] on-read repair of {shipment_id} failed: {e}")
        return shipment

    async def list_shipments(
        self,
        user_id: str,
        page: int = 1,
        page_size: int = 20,
        status: Optional[ShipmentStatus] = None,
    ) -> Tuple[List[Shipment], int]:
        page = max(page, 1)
        page_size = min(max(page_size, 1), 100)
        conditions = [Shipment.user_id == user_id]
        if status is not None:
            conditions.append(Shipment.status == ShipmentStatus(status))

        async with self._session_factory() as db:
            total = (
                await db.execute(select(func.count()).select_from(Shipment).where(and_(*conditions)))
            ).scalar_one()
            result = await db.execute(
                select(Shipment)
                .where(and_(*conditions))
                .order_by(Shipment.created_at.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            return list(result.scalars().all()), total

    # ==================== Label purchase ====================

    def _get_provider(self, name: str) -> Tuple[BaseRateProvider, bool]:
        if self._providers is not None and name in self._providers:
            return self._providers[name], False
        provider = ProviderFactory.get_provider(name)
        if provider is None:
            raise ProviderError(f"Rate provider {name} is not configured", provider=name)
        return provider, True

    async def _require_paid(self, shipment: Shipment) -> None:
        """The shipment's debit must exist and must not have been failed and refunded."""
        entry = await self.ledger.find_transaction(shipment.user_id, debit_reference(shipment.id))
        if entry is None or entry.status == TransactionStatus.FAILED:
            reason = "debit transaction missing" if entry is None else "debit transaction marked failed"
            logger.error(f"[PURCHASE] shipment {shipment.id} is not paid for: {reason}")
            raise ValidationError(
                "Shipment has no completed payment and is under review",
                field="status",
                details={"shipment_id": shipment.id, "reason": reason},
            )

    async def purchase_label(self, user_id: str, shipment_id: str) -> Shipment:
        """Buy the label from the quoting provider: created -> label_purchased."""
        shipment = await self.get_shipment(user_id, shipment_id)
        if shipment.status != ShipmentStatus.CREATED:
            raise ValidationError(
                f"Label can only be purchased for created shipments (status: {shipment.status.value})",
                field="status",
            )

        await self._require_paid(shipment)
        provider, owned = self._get_provider(shipment.provider)
        try:
            label = await provider.purchase_label(shipment.provider_rate_id)
        finally:
            if owned:
                await provider.close()

        now = datetime.now(timezone.utc)
        async with self._session_factory() as db:
            result = await db.execute(
                update(Shipment)
                .where(
                    and_(
                        Shipment.id == shipment_id,
                        Shipment.user_id == user_id,
                        Shipment.status == ShipmentStatus.CREATED,
                    )
                )
                .values(
                    status=ShipmentStatus.LABEL_PURCHASED,
                    tracking_number=label.tracking_number,
                    label_url=label.label_url,
                    provider_transaction_id=label.provider_transaction_id,
                    label_purchased_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if result.rowcount != 1:
            # Cancelled while the provider call was in flight
            logger.error(
                f"[PURCHASE] label {label.tracking_number} bought for shipment {shipment_id} "
                f"that is no longer in created state"
            )
            raise ValidationError("Shipment changed state during label purchase", field="status")

        logger.info(f"[PURCHASE] label purchased for shipment {shipment_id}: {label.tracking_number}")
        return await self._load(user_id, shipment_id)

    # ==================== Cancellation ====================

    async def cancel_shipment(self, user_id: str, shipment_id: str) -> Shipment:
        """
        Cancel an unlabelled shipment and refund its cost.

        Repeating the call on a cancelled shipment re-applies the (idempotent)
        refund and returns the shipment.
        """
        shipment = await self.get_shipment(user_id, shipment_id)
        if shipment.status not in (ShipmentStatus.CREATED, ShipmentStatus.CANCELLED):
            raise ValidationError(
                f"Only created shipments can be cancelled (status: {shipment.status.value})",
                field="status",
            )

        await self._require_paid(shipment)

        if shipment.status == ShipmentStatus.CREATED:
            async with self._session_factory() as db:
                result = await db.execute(
                    update(Shipment)
                    .where(
                        and_(
                            Shipment.id == shipment_id,
                            Shipment.user_id == user_id,
                            Shipment.status == ShipmentStatus.CREATED,
                        )
                    )
                    .values(status=ShipmentStatus.CANCELLED, updated_at=datetime.now(timezone.utc))
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
            if result.rowcount != 1:
                shipment = await self._load(user_id, shipment_id)
                if shipment.status != ShipmentStatus.CANCELLED:
                    raise ValidationError(
                        f"Only created shipments can be cancelled (status: {shipment.status.value})",
                        field="status",
                    )

        await self._refund(
            user_id,
            shipment_id,
            Decimal(shipment.cost),
            reference=cancel_reference(shipment_id),
            reason="Refund: shipment cancelled",
            mark_debit_failed=False,
        )
        logger.info(f"[PURCHASE] shipment {shipment_id} cancelled and refunded {shipment.cost}")
        return await self._load(user_id, shipment_id)

    # ==================== Reconciliation ====================

    async def _reconcile_one(self, shipment: Shipment) -> bool:
        reference = debit_reference(shipment.id)
        entry = await self.ledger.find_transaction(shipment.user_id, reference)

        if entry is None or entry.status == TransactionStatus.FAILED:
            reason = "debit transaction missing" if entry is None else "debit transaction marked failed"
            logger.error(f"[RECONCILE] shipment {shipment.id}: {reason}")
            await alert_reconciliation_failure(shipment.id, shipment.user_id, reason)
            return False

        if entry.status == TransactionStatus.PENDING:
            await self.ledger.transition_status(shipment.user_id, reference, TransactionStatus.COMPLETED)

        await self._set_reconciliation_flag(shipment.id, False)
        shipment.needs_reconciliation = False
        logger.info(f"[RECONCILE] shipment {shipment.id} linked to {reference}")
        return True

    async def reconcile(self, user_id: Optional[str] = None, limit: int = 100) -> Dict[str, int]:
        """Sweep flagged shipments and link their debit transactions."""
        conditions = [Shipment.needs_reconciliation == True]  # noqa: E712
        if user_id is not None:
            conditions.append(Shipment.user_id == user_id)

        async with self._session_factory() as db:
            result = await db.execute(
                select(Shipment)
                .where(and_(*conditions))
                .order_by(Shipment.created_at)
                .limit(limit)
            )
            shipments = list(result.scalars().all())

        report = {"checked": len(shipments), "repaired": 0, "unresolved": 0}
        for shipment in shipments:
            if await self._reconcile_one(shipment):
                report["repaired"] += 1
            else:
                report["unresolved"] += 1

        if shipments:
            logger.info(f"[RECONCILE] sweep: {report}")
        return report
