"""
Tests for the ledger: balances, idempotency and concurrent debits.
"""
import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError

from labelbay.core.exceptions import (
    InsufficientFunds,
    InvalidAmount,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from labelbay.models.account import Transaction, TransactionStatus, TransactionType
from labelbay.services.ledger import Ledger, to_money


async def count_transactions(session_factory, user_id, transaction_type=None) -> int:
    async with session_factory() as db:
        query = select(func.count()).select_from(Transaction).where(Transaction.user_id == user_id)
        if transaction_type is not None:
            query = query.where(Transaction.transaction_type == transaction_type)
        return (await db.execute(query)).scalar_one()


class FlakySessionFactory:
    """Raises OperationalError for the first `failures` sessions."""

    def __init__(self, real, failures: int):
        self.real = real
        self.failures = failures
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))
        return self.real()


class TestToMoney:

    def test_accepts_two_places(self):
        assert to_money("12.34") == Decimal("12.34")
        assert to_money(5) == Decimal("5.00")
        assert to_money(12.5) == Decimal("12.50")

    @pytest.mark.parametrize("value", ["1.234", "abc", None, "NaN", "Infinity"])
    def test_rejects_bad_values(self, value):
        with pytest.raises(InvalidAmount) as exc_info:
            to_money(value)
        assert exc_info.value.code == "INVALID_AMOUNT"


class TestCredit:

    @pytest.mark.asyncio
    async def test_credit_opens_account_and_updates_balance(self, ledger, user_id):
        assert await ledger.get_balance(user_id) == Decimal("0")

        entry = await ledger.credit(user_id, Decimal("50.00"), reference="deposit_1")

        assert entry.balance_after == Decimal("50.00")
        assert entry.transaction_type == TransactionType.DEPOSIT
        assert entry.status == TransactionStatus.COMPLETED
        assert entry.replayed is False
        assert await ledger.get_balance(user_id) == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_credit_replay_is_idempotent(self, ledger, session_factory, user_id):
        first = await ledger.credit(user_id, Decimal("20.00"), reference="deposit_dup")
        second = await ledger.credit(user_id, Decimal("20.00"), reference="deposit_dup")

        assert second.replayed is True
        assert second.transaction_id == first.transaction_id
        assert second.balance_after == Decimal("20.00")
        assert await ledger.get_balance(user_id) == Decimal("20.00")
        assert await count_transactions(session_factory, user_id) == 1

    @pytest.mark.asyncio
    async def test_concurrent_replays_credit_once(self, ledger, session_factory, user_id):
        results = await asyncio.gather(
            *[ledger.credit(user_id, Decimal("10.00"), reference="deposit_race") for _ in range(5)]
        )

        assert sum(1 for r in results if not r.replayed) == 1
        assert await ledger.get_balance(user_id) == Decimal("10.00")
        assert await count_transactions(session_factory, user_id) == 1

    @pytest.mark.asyncio
    async def test_reference_owned_by_other_user_rejected(self, ledger, user_id):
        await ledger.credit(user_id, Decimal("5.00"), reference="shared_ref")

        with pytest.raises(ValidationError):
            await ledger.credit("someone-else", Decimal("5.00"), reference="shared_ref")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5.00")])
    async def test_non_positive_credit_rejected(self, ledger, user_id, amount):
        with pytest.raises(InvalidAmount):
            await ledger.credit(user_id, amount, reference="bad_credit")

    @pytest.mark.asyncio
    async def test_credit_cannot_be_recorded_as_debit(self, ledger, user_id):
        with pytest.raises(ValidationError):
            await ledger.credit(user_id, Decimal("5.00"), reference="x", transaction_type=TransactionType.DEBIT)


class TestDebit:

    @pytest.mark.asyncio
    async def test_debit_reduces_balance_and_stores_negative_amount(self, ledger, user_id):
        await ledger.credit(user_id, Decimal("50.00"), reference="deposit_1")

        entry = await ledger.debit(user_id, Decimal("12.34"), reference="ship_abc", shipment_id="abc")

        assert entry.amount == Decimal("-12.34")
        assert entry.balance_after == Decimal("37.66")
        assert entry.shipment_id == "abc"
        assert await ledger.get_balance(user_id) == Decimal("37.66")

    @pytest.mark.asyncio
    async def test_insufficient_funds_leaves_balance_untouched(self, ledger, session_factory, user_id):
        await ledger.credit(user_id, Decimal("10.00"), reference="deposit_1")

        with pytest.raises(InsufficientFunds) as exc_info:
            await ledger.debit(user_id, Decimal("12.34"), reference="ship_too_much")

        assert exc_info.value.details["balance"] == "10.00"
        assert exc_info.value.details["requested"] == "12.34"
        assert await ledger.get_balance(user_id) == Decimal("10.00")
        assert await count_transactions(session_factory, user_id, TransactionType.DEBIT) == 0

    @pytest.mark.asyncio
    async def test_debit_without_account_is_insufficient(self, ledger, user_id):
        with pytest.raises(InsufficientFunds):
            await ledger.debit(user_id, Decimal("1.00"), reference="ship_none")

    @pytest.mark.asyncio
    async def test_debit_replay_does_not_charge_twice(self, ledger, user_id):
        await ledger.credit(user_id, Decimal("30.00"), reference="deposit_1")

        await ledger.debit(user_id, Decimal("10.00"), reference="ship_once")
        replay = await ledger.debit(user_id, Decimal("10.00"), reference="ship_once")

        assert replay.replayed is True
        assert await ledger.get_balance(user_id) == Decimal("20.00")

    @pytest.mark.asyncio
    async def test_concurrent_debits_never_overdraw(self, ledger, session_factory, user_id):
        await ledger.credit(user_id, Decimal("100.00"), reference="deposit_1")

        results = await asyncio.gather(
            *[ledger.debit(user_id, Decimal("15.00"), reference=f"ship_{i}") for i in range(10)],
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(succeeded) == 6
        assert all(isinstance(e, InsufficientFunds) for e in failed)

        balance = await ledger.get_balance(user_id)
        assert balance == Decimal("100.00") - Decimal("15.00") * len(succeeded)
        assert balance >= 0
        assert await count_transactions(session_factory, user_id, TransactionType.DEBIT) == len(succeeded)


class TestTransitionStatus:

    @pytest.mark.asyncio
    async def test_pending_to_completed_is_idempotent(self, ledger, user_id):
        await ledger.credit(user_id, Decimal("20.00"), reference="deposit_1")
        await ledger.debit(user_id, Decimal("5.00"), reference="ship_p", status=TransactionStatus.PENDING)

        entry = await ledger.transition_status(user_id, "ship_p", TransactionStatus.COMPLETED)
        again = await ledger.transition_status(user_id, "ship_p", TransactionStatus.COMPLETED)

        assert entry.status == TransactionStatus.COMPLETED
        assert again.status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_completed_cannot_become_failed(self, ledger, user_id):
        await ledger.credit(user_id, Decimal("20.00"), reference="deposit_1")

        with pytest.raises(ValidationError):
            await ledger.transition_status(user_id, "deposit_1", TransactionStatus.FAILED)

    @pytest.mark.asyncio
    async def test_unknown_reference(self, ledger, user_id):
        with pytest.raises(NotFoundError):
            await ledger.transition_status(user_id, "missing", TransactionStatus.COMPLETED)


class TestTransientErrors:

    @pytest.mark.asyncio
    async def test_operational_error_is_retried(self, session_factory, locks, fast_retry, user_id):
        flaky = FlakySessionFactory(session_factory, failures=1)
        ledger = Ledger(flaky, retry_config=fast_retry, locks=locks)

        assert await ledger.get_balance(user_id) == Decimal("0")
        assert flaky.calls == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted_raise_transient_store_error(self, session_factory, locks, fast_retry, user_id):
        flaky = FlakySessionFactory(session_factory, failures=100)
        ledger = Ledger(flaky, retry_config=fast_retry, locks=locks)

        with pytest.raises(TransientStoreError) as exc_info:
            await ledger.get_balance(user_id)

        assert exc_info.value.code == "STORE_UNAVAILABLE"
        assert flaky.calls == fast_retry.max_retries + 1


class TestListTransactions:

    @pytest.mark.asyncio
    async def test_pagination(self, ledger, user_id):
        for i in range(3):
            await ledger.credit(user_id, Decimal("1.00"), reference=f"deposit_{i}")

        rows, total = await ledger.list_transactions(user_id, page=1, page_size=2)
        rest, _ = await ledger.list_transactions(user_id, page=2, page_size=2)

        assert total == 3
        assert len(rows) == 2
        assert len(rest) == 1
        assert {r.id for r in rows}.isdisjoint({r.id for r in rest})


class TestUserLocks:

    @pytest.mark.asyncio
    async def test_debit_waits_for_the_users_lock(self, ledger, locks, user_id):
        await ledger.credit(user_id, Decimal("20.00"), reference="dep_1")

        async with locks.hold(user_id):
            debit = asyncio.create_task(ledger.debit(user_id, Decimal("5.00"), reference="ship_1"))
            await asyncio.sleep(0.05)
            assert not debit.done()

        entry = await debit
        assert entry.balance_after == Decimal("15.00")
        assert len(locks) == 0
