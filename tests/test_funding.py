"""
Tests for account funding: PayPal and Stripe verification, FundingService.
"""
import json
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import stripe

from labelbay.core.exceptions import (
    InvalidAmount,
    PaymentVerificationError,
    ProviderError,
    ValidationError,
)
from labelbay.models.account import TransactionType
from labelbay.modules.funding.providers import FundingProviderFactory
from labelbay.modules.funding.providers.base import FundingOrder, VerifiedPayment
from labelbay.modules.funding.providers.paypal import PayPalProvider
from labelbay.modules.funding.providers.stripe_payments import StripeProvider
from labelbay.services.funding_service import FundingService


def paypal_order(order_id, status, custom_id, value="25.00"):
    unit = {"custom_id": custom_id, "amount": {"currency_code": "USD", "value": value}}
    if status == "COMPLETED":
        unit["payments"] = {"captures": [{"id": "cap_1", "amount": {"currency_code": "USD", "value": value}}]}
    return {"id": order_id, "status": status, "purchase_units": [unit]}


class FakePayPal:
    """Routes PayPal Orders API calls; records what was sent."""

    def __init__(self, order=None, capture_status=201, capture_body=None, order_after_capture=None):
        self.order = order
        self.capture_status = capture_status
        self.capture_body = capture_body
        self.order_after_capture = order_after_capture
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21AA-token", "expires_in": 32400})
        if path == "/v2/checkout/orders" and request.method == "POST":
            body = json.loads(request.content)
            return httpx.Response(201, json={
                "id": "5O190127TN364715T",
                "status": "CREATED",
                "links": [
                    {"rel": "self", "href": "https://api.sandbox.paypal.com/v2/checkout/orders/5O190127TN364715T"},
                    {"rel": "approve", "href": "https://www.sandbox.paypal.com/checkoutnow?token=5O190127TN364715T"},
                ],
                "echo": body,
            })
        if path.endswith("/capture"):
            if self.order_after_capture is not None:
                self.order = self.order_after_capture
            return httpx.Response(self.capture_status, json=self.capture_body or {})
        if path.startswith("/v2/checkout/orders/"):
            if self.order is None:
                return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})
            return httpx.Response(200, json=self.order)
        return httpx.Response(404)

    def provider(self) -> PayPalProvider:
        return PayPalProvider(
            client_id="client",
            secret="secret",
            base_url="https://api-m.sandbox.paypal.com",
            transport=httpx.MockTransport(self.handler),
        )


class TestPayPalProvider:

    @pytest.mark.asyncio
    async def test_create_order(self, user_id):
        fake = FakePayPal()
        provider = fake.provider()

        order = await provider.create_order(user_id, Decimal("25"), "USD")
        await provider.close()

        assert order.order_id == "5O190127TN364715T"
        assert order.approval_url.startswith("https://www.sandbox.paypal.com/checkoutnow")
        token_request, create_request = fake.requests
        assert token_request.headers["Authorization"].startswith("Basic ")
        assert create_request.headers["Authorization"] == "Bearer A21AA-token"
        unit = json.loads(create_request.content)["purchase_units"][0]
        assert unit["amount"]["value"] == "25.00"
        assert unit["custom_id"] == user_id

    @pytest.mark.asyncio
    async def test_access_token_is_cached(self, user_id):
        fake = FakePayPal(order=paypal_order("O1", "COMPLETED", user_id))
        provider = fake.provider()

        await provider.verify_payment(user_id, "O1")
        await provider.verify_payment(user_id, "O1")

        token_calls = [r for r in fake.requests if r.url.path == "/v1/oauth2/token"]
        assert len(token_calls) == 1

    @pytest.mark.asyncio
    async def test_approved_order_is_captured(self, user_id):
        fake = FakePayPal(
            order=paypal_order("O1", "APPROVED", user_id),
            capture_body=paypal_order("O1", "COMPLETED", user_id, value="40.00"),
        )

        payment = await fake.provider().verify_payment(user_id, "O1")

        assert payment.amount == Decimal("40.00")
        assert payment.currency == "USD"
        assert any(r.url.path.endswith("/capture") for r in fake.requests)

    @pytest.mark.asyncio
    async def test_capture_conflict_rereads_order(self, user_id):
        # Another request captured the order first
        fake = FakePayPal(
            order=paypal_order("O1", "APPROVED", user_id),
            capture_status=422,
            capture_body={"name": "UNPROCESSABLE_ENTITY"},
            order_after_capture=paypal_order("O1", "COMPLETED", user_id),
        )

        payment = await fake.provider().verify_payment(user_id, "O1")

        assert payment.amount == Decimal("25.00")
        order_reads = [r for r in fake.requests if r.method == "GET"]
        assert len(order_reads) == 2

    @pytest.mark.asyncio
    async def test_capture_conflict_still_unpaid(self, user_id):
        fake = FakePayPal(order=paypal_order("O1", "APPROVED", user_id), capture_status=422)

        with pytest.raises(PaymentVerificationError, match="not completed"):
            await fake.provider().verify_payment(user_id, "O1")

    @pytest.mark.asyncio
    async def test_order_of_other_user_rejected(self, user_id):
        fake = FakePayPal(order=paypal_order("O1", "COMPLETED", "someone-else"))

        with pytest.raises(PaymentVerificationError, match="does not belong"):
            await fake.provider().verify_payment(user_id, "O1")

    @pytest.mark.asyncio
    async def test_unknown_order(self, user_id):
        fake = FakePayPal(order=None)

        with pytest.raises(PaymentVerificationError, match="not found"):
            await fake.provider().verify_payment(user_id, "missing")

    @pytest.mark.asyncio
    async def test_auth_failure(self, user_id):
        def handler(request):
            return httpx.Response(401, json={"error": "invalid_client"})

        provider = PayPalProvider("c", "s", "https://api-m.sandbox.paypal.com", transport=httpx.MockTransport(handler))

        with pytest.raises(ProviderError, match="authenticate"):
            await provider.create_order(user_id, Decimal("10"), "USD")

    @pytest.mark.asyncio
    async def test_connection_error_raises_provider_error(self, user_id):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        provider = PayPalProvider("c", "s", "https://api-m.sandbox.paypal.com", transport=httpx.MockTransport(handler))

        with pytest.raises(ProviderError, match="unreachable") as exc_info:
            await provider.verify_payment(user_id, "ORDER-1")
        assert exc_info.value.details["provider"] == "paypal"


def intent(status="succeeded", user_id="u1", amount=2500, currency="usd"):
    return SimpleNamespace(
        id="pi_123",
        status=status,
        metadata={"user_id": user_id},
        amount=amount,
        amount_received=amount if status == "succeeded" else 0,
        currency=currency,
        client_secret="pi_123_secret_abc",
    )


class TestStripeProvider:

    @pytest.mark.asyncio
    async def test_verified_intent(self, user_id):
        with patch.object(stripe.PaymentIntent, "retrieve", return_value=intent(user_id=user_id)) as retrieve:
            payment = await StripeProvider(api_key="sk_test_123").verify_payment(user_id, "pi_123")

        retrieve.assert_called_once_with("pi_123", api_key="sk_test_123")
        assert payment.amount == Decimal("25.00")
        assert payment.currency == "USD"

    @pytest.mark.asyncio
    async def test_unfinished_intent_rejected(self, user_id):
        with patch.object(stripe.PaymentIntent, "retrieve", return_value=intent(status="requires_payment_method", user_id=user_id)):
            with pytest.raises(PaymentVerificationError, match="requires_payment_method"):
                await StripeProvider(api_key="sk").verify_payment(user_id, "pi_123")

    @pytest.mark.asyncio
    async def test_other_users_intent_rejected(self, user_id):
        with patch.object(stripe.PaymentIntent, "retrieve", return_value=intent(user_id="someone-else")):
            with pytest.raises(PaymentVerificationError, match="does not belong"):
                await StripeProvider(api_key="sk").verify_payment(user_id, "pi_123")

    @pytest.mark.asyncio
    async def test_unknown_intent(self, user_id):
        error = stripe.InvalidRequestError("No such payment_intent: 'pi_404'", "intent")
        with patch.object(stripe.PaymentIntent, "retrieve", side_effect=error):
            with pytest.raises(PaymentVerificationError):
                await StripeProvider(api_key="sk").verify_payment(user_id, "pi_404")

    @pytest.mark.asyncio
    async def test_create_order_in_cents(self, user_id):
        with patch.object(stripe.PaymentIntent, "create", return_value=intent(status="requires_payment_method")) as create:
            order = await StripeProvider(api_key="sk").create_order(user_id, Decimal("12.34"), "USD")

        assert create.call_args.kwargs["amount"] == 1234
        assert create.call_args.kwargs["currency"] == "usd"
        assert create.call_args.kwargs["metadata"]["user_id"] == user_id
        assert order.client_secret == "pi_123_secret_abc"


class StaticProvider:
    """Funding provider double that returns a fixed verified payment."""

    name = "paypal"

    def __init__(self, amount="25.00", currency="USD"):
        self.amount = Decimal(amount)
        self.currency = currency
        self.verify_calls = 0
        self.create_calls = 0

    async def create_order(self, user_id, amount, currency):
        self.create_calls += 1
        return FundingOrder(provider=self.name, order_id="O1", amount=amount, currency=currency, status="CREATED")

    async def verify_payment(self, user_id, order_id):
        self.verify_calls += 1
        return VerifiedPayment(
            provider=self.name,
            order_id=order_id,
            user_id=user_id,
            amount=self.amount,
            currency=self.currency,
            status="COMPLETED",
        )

    async def close(self):
        pass


class TestFundingService:

    @pytest.mark.asyncio
    async def test_fund_account_credits_verified_amount(self, ledger, user_id):
        service = FundingService(ledger=ledger, providers={"paypal": StaticProvider("25.00")})

        entry = await service.fund_account(user_id, "O1")

        assert entry.amount == Decimal("25.00")
        assert entry.transaction_type == TransactionType.DEPOSIT
        assert entry.reference == "O1"
        assert await ledger.get_balance(user_id) == Decimal("25.00")

    @pytest.mark.asyncio
    async def test_replayed_order_credits_once(self, ledger, user_id):
        provider = StaticProvider("25.00")
        service = FundingService(ledger=ledger, providers={"paypal": provider})

        first = await service.fund_account(user_id, "O1")
        second = await service.fund_account(user_id, "O1")

        assert second.replayed is True
        assert second.transaction_id == first.transaction_id
        assert provider.verify_calls == 1
        assert await ledger.get_balance(user_id) == Decimal("25.00")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reference", ["ship_abc", "refund_abc", "cancel_abc"])
    async def test_non_deposit_reference_is_not_a_replay(self, ledger, user_id, reference):
        await ledger.credit(user_id, Decimal("30.00"), reference="dep_1")
        if reference.startswith("ship_"):
            await ledger.debit(user_id, Decimal("12.34"), reference=reference)
        else:
            await ledger.credit(user_id, Decimal("12.34"), reference=reference, transaction_type=TransactionType.REFUND)
        balance = await ledger.get_balance(user_id)
        provider = StaticProvider("25.00")
        service = FundingService(ledger=ledger, providers={"paypal": provider})

        with pytest.raises(ValidationError, match="not a deposit reference"):
            await service.fund_account(user_id, reference)

        assert provider.verify_calls == 0
        assert await ledger.get_balance(user_id) == balance

    @pytest.mark.asyncio
    async def test_currency_mismatch_rejected(self, ledger, user_id):
        service = FundingService(ledger=ledger, providers={"paypal": StaticProvider("25.00", currency="EUR")})

        with pytest.raises(ValidationError):
            await service.fund_account(user_id, "O1")
        assert await ledger.get_balance(user_id) == Decimal("0")

    @pytest.mark.asyncio
    async def test_verification_failure_credits_nothing(self, ledger, user_id):
        provider = StaticProvider()
        provider.verify_payment = AsyncMock(side_effect=PaymentVerificationError("not completed", provider="paypal"))
        service = FundingService(ledger=ledger, providers={"paypal": provider})

        with pytest.raises(PaymentVerificationError):
            await service.fund_account(user_id, "O1")
        assert await ledger.find_transaction(user_id, "O1") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["4.99", "10000.01", "0"])
    async def test_deposit_bounds(self, ledger, user_id, amount):
        provider = StaticProvider()
        service = FundingService(ledger=ledger, providers={"paypal": provider})

        with pytest.raises(InvalidAmount):
            await service.create_funding_order(user_id, amount)
        assert provider.create_calls == 0

    @pytest.mark.asyncio
    async def test_create_funding_order(self, ledger, user_id):
        service = FundingService(ledger=ledger, providers={"paypal": StaticProvider()})

        order = await service.create_funding_order(user_id, "20")

        assert order.amount == Decimal("20.00")
        assert order.currency == "USD"

    @pytest.mark.asyncio
    async def test_unknown_provider(self, ledger, user_id):
        service = FundingService(ledger=ledger, providers={})

        with pytest.raises(ValidationError):
            await service.fund_account(user_id, "O1", provider="bitcoin")

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self, ledger, user_id):
        service = FundingService(ledger=ledger, providers={})

        with pytest.raises(ProviderError):
            await service.fund_account(user_id, "O1", provider="paypal")


class TestFundingProviderFactory:

    def test_registered(self):
        assert set(FundingProviderFactory.get_registered_providers()) == {"paypal", "stripe"}

    def test_unconfigured_returns_none(self):
        assert FundingProviderFactory.get_provider("paypal") is None
        assert FundingProviderFactory.get_provider("stripe") is None
