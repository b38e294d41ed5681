"""
API dependencies

Identity comes from the bearer token's `sub` claim. Services are built
per request on top of the shared session factory, so tests can swap the
factory through dependency_overrides.
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import async_sessionmaker

from labelbay.core.database import get_session_factory
from labelbay.core.security import decode_token
from labelbay.services.address_service import AddressService
from labelbay.services.funding_service import FundingService
from labelbay.services.ledger import Ledger
from labelbay.services.payment_method_service import PaymentMethodService
from labelbay.services.purchase_service import PurchaseService
from labelbay.services.rate_aggregator import RateAggregator

security = HTTPBearer()


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """Get the authenticated user id"""
    payload = decode_token(credentials.credentials)

    if not payload or payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no subject"
        )
    return str(user_id)


def get_ledger(session_factory: async_sessionmaker = Depends(get_session_factory)) -> Ledger:
    return Ledger(session_factory)


def get_address_service(session_factory: async_sessionmaker = Depends(get_session_factory)) -> AddressService:
    return AddressService(session_factory)


def get_payment_method_service(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> PaymentMethodService:
    return PaymentMethodService(session_factory)


def get_rate_aggregator(
    address_service: AddressService = Depends(get_address_service),
) -> RateAggregator:
    return RateAggregator(address_service=address_service)


def get_purchase_service(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    ledger: Ledger = Depends(get_ledger),
) -> PurchaseService:
    return PurchaseService(session_factory, ledger=ledger)


def get_funding_service(ledger: Ledger = Depends(get_ledger)) -> FundingService:
    return FundingService(ledger=ledger)
