"""
Tests for the shipment purchase flow, compensation and reconciliation.
"""
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from labelbay.core.exceptions import (
    ConsistencyError,
    InsufficientFunds,
    NotFoundError,
    PurchaseFailedError,
    QuoteExpiredError,
    TransientStoreError,
    ValidationError,
)
from labelbay.models.account import Transaction, TransactionStatus, TransactionType
from labelbay.models.shipment import Shipment, ShipmentStatus
from labelbay.services.purchase_service import (
    PurchaseService,
    PurchaseState,
    debit_reference,
    refund_reference,
)
from labelbay.services.quote_book import QuoteBook


class Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def quote_book(clock):
    return QuoteBook(ttl_seconds=300, clock=clock)


@pytest.fixture
def label_provider(fake_provider_cls):
    return fake_provider_cls("alpha")


@pytest.fixture
def service(session_factory, ledger, quote_book, fast_retry, label_provider):
    return PurchaseService(
        session_factory,
        ledger=ledger,
        quote_book=quote_book,
        compensation_retry=fast_retry,
        providers={"alpha": label_provider},
    )


@pytest.fixture
def issue_quote(quote_book, rate_factory, shipment_request):
    def _issue(user_id: str, amount: str = "12.34"):
        return quote_book.issue(user_id, rate_factory("alpha", amount), shipment_request)
    return _issue


async def transactions_for(session_factory, user_id):
    async with session_factory() as db:
        result = await db.execute(select(Transaction).where(Transaction.user_id == user_id))
        return {tx.transaction_reference: tx for tx in result.scalars().all()}


async def shipments_for(session_factory, user_id):
    async with session_factory() as db:
        result = await db.execute(select(Shipment).where(Shipment.user_id == user_id))
        return list(result.scalars().all())


class TestPurchaseShipment:

    @pytest.mark.asyncio
    async def test_successful_purchase(self, service, ledger, session_factory, issue_quote, user_id):
        await ledger.credit(user_id, Decimal("50.00"), reference="deposit_1")
        quote = issue_quote(user_id)

        result = await service.purchase_shipment(user_id, quote.quote_id)

        assert result.state == PurchaseState.DONE
        assert result.status == ShipmentStatus.CREATED
        assert result.balance_after == Decimal("37.66")
        assert await ledger.get_balance(user_id) == Decimal("37.66")

        txs = await transactions_for(session_factory, user_id)
        debit = txs[debit_reference(result.shipment_id)]
        assert debit.transaction_type == TransactionType.DEBIT
        assert debit.status == TransactionStatus.COMPLETED
        assert Decimal(str(debit.amount)) == Decimal("-12.34")
        assert debit.shipment_id == result.shipment_id

        shipment = await service.get_shipment(user_id, result.shipment_id)
        assert shipment.status == ShipmentStatus.CREATED
        assert shipment.needs_reconciliation is False
        assert shipment.carrier == "USPS"
        assert shipment.to_address["zip"] == "95122"

    @pytest.mark.asyncio
    async def test_quote_is_single_use(self, service, ledger, issue_quote, user_id):
        await ledger.credit(user_id, Decimal("50.00"), reference="deposit_1")
        quote = issue_quote(user_id)

        await service.purchase_shipment(user_id, quote.quote_id)

        with pytest.raises(NotFoundError):
            await service.purchase_shipment(user_id, quote.quote_id)
        assert await ledger.get_balance(user_id) == Decimal("37.66")

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, service, ledger, session_factory, quote_book, issue_quote, user_id):
        await ledger.credit(user_id, Decimal("10.00"), reference="deposit_1")
        quote = issue_quote(user_id)

        with pytest.raises(InsufficientFunds):
            await service.purchase_shipment(user_id, quote.quote_id)

        assert await ledger.get_balance(user_id) == Decimal("10.00")
        assert await shipments_for(session_factory, user_id) == []
        # The quote can be retried after topping up
        assert quote_book.get(quote.quote_id, user_id) is quote

    @pytest.mark.asyncio
    async def test_expired_quote_debits_nothing(self, service, ledger, clock, issue_quote, user_id):
        await ledger.credit(user_id, Decimal("50.00"), reference="deposit_1")
        quote = issue_quote(user_id)
        clock.now += timedelta(seconds=301)

        with pytest.raises(QuoteExpiredError):
            await service.purchase_shipment(user_id, quote.quote_id)

        assert await ledger.get_balance(user_id) == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_other_users_quote_not_found(self, service, ledger, issue_quote, user_id):
        await ledger.credit(user_id, Decimal("50.00"), reference="deposit_1")
        quote = issue_quote("someone-else")

        with pytest.raises(NotFoundError):
            await service.purchase_shipment(user_id, quote.quote_id)

    @pytest.mark.asyncio
    async def test_insert_failure_refunds_debit(self, service, ledger, session_factory, issue_quote, user_id):
        await ledger.credit(user_id, Decimal("50.00"), reference="deposit_1")
        quote = issue_quote(user_id)

        with patch.object(service, "_record_shipment", new=AsyncMock(side_effect=SQLAlchemyError("insert failed"))):
            with pytest.raises(PurchaseFailedError) as exc_info:
                await service.purchase_shipment(user_id, quote.quote_id)

        shipment_id = exc_info.value.details["shipment_id"]
        assert exc_info.value.details["refunded"] is True
        assert await ledger.get_balance(user_id) == Decimal("50.00")
        assert await shipments_for(session_factory, user_id) == []

        txs = await transactions_for(session_factory, user_id)
        assert txs[debit_reference(shipment_id)].status == TransactionStatus.FAILED
        refund = txs[refund_reference(shipment_id)]
        assert refund.transaction_type == TransactionType.REFUND
        assert Decimal(str(refund.amount)) == Decimal("12.34")

    @pytest.mark.asyncio
    async def test_injected_empty_quote_book_is_used(self, session_factory, ledger, rate_factory, shipment_request, user_id):
        book = QuoteBook(ttl_seconds=300)
        service = PurchaseService(session_factory, ledger=ledger, quote_book=book)
        await ledger.credit(user_id, Decimal("50.00"), reference="deposit_1")
        quote = book.issue(user_id, rate_factory("alpha", "12.34"), shipment_request)

        result = await service.purchase_shipment(user_id, quote.quote_id)

        assert service.quote_book is book
        assert result.balance_after == Decimal("37.66")

    @pytest.mark.asyncio
    async def test_foreign_currency_quote_rejected(self, service, ledger, quote_book, rate_factory, shipment_request, user_id):
        await ledger.credit(user_id, Decimal("50.00"), reference="deposit_1")
        rate = rate_factory("alpha", "12.34")
        rate.currency = "CAD"
        quote = quote_book.issue(user_id, rate, shipment_request)

        with pytest.raises(ValidationError, match="currency CAD"):
            await service.purchase_shipment(user_id, quote.quote_id)

        assert await ledger.get_balance(user_id) == Decimal("50.00")
        assert quote_book.get(quote.quote_id, user_id) is quote

    @pytest.mark.asyncio
    async def test_storage_error_on_debit_releases_quote(self, service, ledger, quote_book, issue_quote, user_id):
        quote = issue_quote(user_id)
        error = IntegrityError("INSERT INTO transactions", {}, Exception("duplicate key"))

        with patch.object(ledger, "debit", new=AsyncMock(side_effect=error)):
            with pytest.raises(IntegrityError):
                await service.purchase_shipment(user_id, quote.quote_id)

        assert quote_book.get(quote.quote_id, user_id) is quote

    @pytest.mark.asyncio
    async def test_refund_failure_escalates(self, service, ledger, issue_quote, user_id):
        await ledger.credit(user_id, Decimal("50.00"), reference="deposit_1")
        quote = issue_quote(user_id)

        with patch.object(service, "_record_shipment", new=AsyncMock(side_effect=SQLAlchemyError("insert failed"))), \
                patch.object(ledger, "credit", new=AsyncMock(side_effect=TransientStoreError("store down"))), \
                patch("labelbay.services.purchase_service.alert_refund_failure", new=AsyncMock()) as alert:
            with pytest.raises(ConsistencyError) as exc_info:
                await service.purchase_shipment(user_id, quote.quote_id)

        assert exc_info.value.severity == "P0"
        alert.assert_awaited_once()
        assert alert.await_args.kwargs["user_id"] == user_id
        assert await ledger.get_balance(user_id) == Decimal("37.66")


class TestReconciliation:

    @pytest.mark.asyncio
    async def test_link_failure_flags_shipment_and_sweep_repairs(self, service, ledger, session_factory, issue_quote, user_id):
        await ledger.credit(user_id, Decimal("50.00"), reference="deposit_1")
        quote = issue_quote(user_id)

        with patch.object(ledger, "transition_status", new=AsyncMock(side_effect=TransientStoreError("store down"))):
            result = await service.purchase_shipment(user_id, quote.quote_id)

        assert result.needs_reconciliation is True
        assert result.state == PurchaseState.DONE
        txs = await transactions_for(session_factory, user_id)
        assert txs[debit_reference(result.shipment_id)].status == TransactionStatus.PENDING

        report = await service.reconcile(user_id=user_id)

        assert report == {"checked": 1, "repaired": 1, "unresolved": 0}
        shipment = await service.get_shipment(user_id, result.shipment_id, repair=False)
        assert shipment.needs_reconciliation is False
        txs = await transactions_for(session_factory, user_id)
        assert txs[debit_reference(result.shipment_id)].status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_flagged_shipment_repaired_on_read(self, service, ledger, issue_quote, user_id):
        await ledger.credit(user_id, Decimal("50.00"), reference="deposit_1")
        quote = issue_quote(user_id)
        with patch.object(ledger, "transition_status", new=AsyncMock(side_effect=TransientStoreError("store down"))):
            result = await service.purchase_shipment(user_id, quote.quote_id)

        shipment = await service.get_shipment(user_id, result.shipment_id)

        assert shipment.needs_reconciliation is False
        entry = await ledger.find_transaction(user_id, debit_reference(result.shipment_id))
        assert entry.status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_shipment_without_debit_alerts(self, service, session_factory, user_id):
        shipment_id = str(uuid.uuid4())
        async with session_factory() as db:
            db.add(Shipment(
                id=shipment_id,
                user_id=user_id,
                from_address={"zip": "94117"},
                to_address={"zip": "95122"},
                parcel={"weight": "2"},
                provider="alpha",
                provider_rate_id="rate_1",
                carrier="USPS",
                service_code="usps_ground",
                cost=Decimal("5.00"),
                needs_reconciliation=True,
            ))
            await db.commit()

        with patch("labelbay.services.purchase_service.alert_reconciliation_failure", new=AsyncMock()) as alert:
            report = await service.reconcile(user_id=user_id)

        assert report == {"checked": 1, "repaired": 0, "unresolved": 1}
        alert.assert_awaited_once_with(shipment_id, user_id, "debit transaction missing")


class TestShipmentLifecycle:

    @pytest.mark.asyncio
    async def test_purchase_label(self, service, ledger, label_provider, issue_quote, user_id):
        await ledger.credit(user_id, Decimal("50.00"), reference="deposit_1")
        result = await service.purchase_shipment(user_id, issue_quote(user_id).quote_id)

        shipment = await service.purchase_label(user_id, result.shipment_id)

        assert shipment.status == ShipmentStatus.LABEL_PURCHASED
        assert shipment.tracking_number == "9400111899223197428490"
        assert shipment.label_purchased_at is not None
        assert len(label_provider.label_calls) == 1

        with pytest.raises(ValidationError):
            await service.purchase_label(user_id, result.shipment_id)
        with pytest.raises(ValidationError):
            await service.cancel_shipment(user_id, result.shipment_id)

    @pytest.mark.asyncio
    async def test_cancel_refunds_once(self, service, ledger, session_factory, issue_quote, user_id):
        await ledger.credit(user_id, Decimal("50.00"), reference="deposit_1")
        result = await service.purchase_shipment(user_id, issue_quote(user_id).quote_id)

        cancelled = await service.cancel_shipment(user_id, result.shipment_id)
        again = await service.cancel_shipment(user_id, result.shipment_id)

        assert cancelled.status == ShipmentStatus.CANCELLED
        assert again.status == ShipmentStatus.CANCELLED
        assert await ledger.get_balance(user_id) == Decimal("50.00")
        txs = await transactions_for(session_factory, user_id)
        assert sum(1 for tx in txs.values() if tx.transaction_type == TransactionType.REFUND) == 1

    @pytest.mark.asyncio
    async def test_list_shipments_filters_by_owner_and_status(self, service, ledger, issue_quote, user_id):
        await ledger.credit(user_id, Decimal("50.00"), reference="deposit_1")
        first = await service.purchase_shipment(user_id, issue_quote(user_id, "5.00").quote_id)
        await service.purchase_shipment(user_id, issue_quote(user_id, "6.00").quote_id)
        await service.cancel_shipment(user_id, first.shipment_id)

        shipments, total = await service.list_shipments(user_id)
        cancelled, cancelled_total = await service.list_shipments(user_id, status=ShipmentStatus.CANCELLED)
        others, others_total = await service.list_shipments("someone-else")

        assert total == 2
        assert cancelled_total == 1 and cancelled[0].id == first.shipment_id
        assert others_total == 0 and others == []

    @pytest.mark.asyncio
    async def test_refunded_shipment_cannot_be_labelled_or_cancelled(
        self, service, ledger, session_factory, label_provider, issue_quote, user_id
    ):
        await ledger.credit(user_id, Decimal("50.00"), reference="deposit_1")
        quote = issue_quote(user_id)
        record_shipment = service._record_shipment

        async def committed_but_reported_failed(*args):
            await record_shipment(*args)
            raise SQLAlchemyError("connection lost during commit")

        with patch.object(service, "_record_shipment", new=committed_but_reported_failed):
            with pytest.raises(PurchaseFailedError):
                await service.purchase_shipment(user_id, quote.quote_id)

        [shipment] = await shipments_for(session_factory, user_id)
        assert await ledger.get_balance(user_id) == Decimal("50.00")

        with patch("labelbay.services.purchase_service.alert_reconciliation_failure", new=AsyncMock()):
            with pytest.raises(ValidationError, match="no completed payment"):
                await service.purchase_label(user_id, shipment.id)
            with pytest.raises(ValidationError, match="no completed payment"):
                await service.cancel_shipment(user_id, shipment.id)

        assert label_provider.label_calls == []
        assert await ledger.get_balance(user_id) == Decimal("50.00")
        txs = await transactions_for(session_factory, user_id)
        assert sum(1 for tx in txs.values() if tx.transaction_type == TransactionType.REFUND) == 1

    @pytest.mark.asyncio
    async def test_unpaid_shipment_cannot_be_cancelled(self, service, ledger, session_factory, user_id):
        shipment_id = str(uuid.uuid4())
        async with session_factory() as db:
            db.add(Shipment(
                id=shipment_id,
                user_id=user_id,
                from_address={"zip": "94117"},
                to_address={"zip": "95122"},
                parcel={"weight": "2"},
                provider="alpha",
                provider_rate_id="rate_1",
                carrier="USPS",
                service_code="usps_ground",
                cost=Decimal("5.00"),
                needs_reconciliation=False,
            ))
            await db.commit()

        with pytest.raises(ValidationError, match="no completed payment"):
            await service.cancel_shipment(user_id, shipment_id)

        assert await ledger.get_balance(user_id) == Decimal("0.00")
