"""
Quote Book

Issued rate quotes live here for their validity window. A quote is bound
to the user who requested it; the purchase flow re-validates ownership
and expiry before debiting.

Quotes are ephemeral and per-process. A restart forces a re-quote.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from labelbay.core.config import settings
from labelbay.core.exceptions import NotFoundError, QuoteExpiredError
from labelbay.modules.shipping.providers.base import ProviderRate, ShipmentRequestData

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RateQuote:
    """Normalized, purchasable rate."""
    quote_id: str
    user_id: str
    provider: str
    carrier: str
    service_code: str
    service_name: str
    amount: Decimal
    currency: str
    estimated_days: Optional[int]
    duration_terms: Optional[str]
    provider_rate_id: str
    request: ShipmentRequestData
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quote_id": self.quote_id,
            "provider": self.provider,
            "carrier": self.carrier,
            "service_code": self.service_code,
            "service_name": self.service_name,
            "amount": self.amount,
            "currency": self.currency,
            "estimated_days": self.estimated_days,
            "duration_terms": self.duration_terms,
            "expires_at": self.expires_at,
        }


class QuoteBook:
    """In-memory quote store keyed by quote id."""

    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else settings.RATE_QUOTE_TTL_SECONDS)
        self._clock = clock or _utcnow
        self._quotes: Dict[str, RateQuote] = {}

    def issue(self, user_id: str, rate: ProviderRate, request: ShipmentRequestData) -> RateQuote:
        now = self._clock()
        quote = RateQuote(
            quote_id=str(uuid.uuid4()),
            user_id=user_id,
            provider=rate.provider,
            carrier=rate.carrier,
            service_code=rate.service_code,
            service_name=rate.service_name,
            amount=rate.amount,
            currency=rate.currency,
            estimated_days=rate.estimated_days,
            duration_terms=rate.duration_terms,
            provider_rate_id=rate.provider_rate_id,
            request=request,
            issued_at=now,
            expires_at=now + self.ttl,
        )
        self._quotes[quote.quote_id] = quote
        return quote

    def get(self, quote_id: str, user_id: str) -> RateQuote:
        """
        Return the caller's unexpired quote.

        A quote owned by someone else is reported as not found.
        """
        quote = self._quotes.get(quote_id)
        if quote is None or quote.user_id != user_id:
            raise NotFoundError("Rate quote not found", resource="rate_quote", resource_id=quote_id)
        if quote.is_expired(self._clock()):
            self._quotes.pop(quote_id, None)
            raise QuoteExpiredError(
                "Rate quote has expired, request new rates",
                details={"quote_id": quote_id, "expired_at": quote.expires_at.isoformat()},
            )
        return quote

    def claim(self, quote_id: str, user_id: str) -> RateQuote:
        """
        Validate and remove the quote so it cannot be purchased twice.

        Call release() to hand it back when the purchase did not go through.
        """
        quote = self.get(quote_id, user_id)
        del self._quotes[quote_id]
        return quote

    def release(self, quote: RateQuote) -> None:
        if not quote.is_expired(self._clock()):
            self._quotes[quote.quote_id] = quote

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [qid for qid, q in self._quotes.items() if q.is_expired(now)]
        for qid in expired:
            del self._quotes[qid]
        if expired:
            logger.debug(f"[RATES] purged {len(expired)} expired quotes")
        return len(expired)

    def __len__(self) -> int:
        return len(self._quotes)


# Process-wide quote book
quote_book = QuoteBook()
