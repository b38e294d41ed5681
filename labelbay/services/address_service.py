"""
Address Service

Saved addresses per user. Default selection goes through ExclusiveFlag
with scope (user, address_type); deletion is soft.
"""
import logging
from typing import List, Optional, Union

import httpx
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import async_sessionmaker

from labelbay.core.database import AsyncSessionLocal
from labelbay.core.exceptions import NotFoundError, ProviderError
from labelbay.core.exclusive_flag import ExclusiveFlag
from labelbay.core.locks import KeyedLockManager
from labelbay.core.validation import parse_model
from labelbay.models.address import Address, AddressType
from labelbay.modules.shipping.providers import ProviderFactory
from labelbay.modules.shipping.providers.base import AddressValidationResult, ShipmentAddress
from labelbay.schemas.address import (
    AddressCreate,
    AddressFields,
    AddressUpdate,
    AddressValidateRequest,
)

logger = logging.getLogger(__name__)


class AddressService:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        locks: Optional[KeyedLockManager] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._session_factory = session_factory or AsyncSessionLocal
        self._transport = transport
        self._flag = ExclusiveFlag(
            Address,
            self._session_factory,
            scope_fields=("address_type",),
            locks=locks,
        )

    # ==================== Queries ====================

    async def get_address(self, user_id: str, address_id: str) -> Address:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Address).where(
                    and_(
                        Address.id == address_id,
                        Address.user_id == user_id,
                        Address.is_deleted == False,  # noqa: E712
                    )
                )
            )
            address = result.scalar_one_or_none()
        if address is None:
            raise NotFoundError("Address not found", resource="address", resource_id=address_id)
        return address

    async def list_addresses(
        self,
        user_id: str,
        address_type: Optional[AddressType] = None,
    ) -> List[Address]:
        """Live addresses, default first, newest first."""
        conditions = [Address.user_id == user_id, Address.is_deleted == False]  # noqa: E712
        if address_type is not None:
            conditions.append(Address.address_type == AddressType(address_type))

        async with self._session_factory() as db:
            result = await db.execute(
                select(Address)
                .where(and_(*conditions))
                .order_by(Address.is_default.desc(), Address.created_at.desc())
            )
            return list(result.scalars().all())

    async def get_default(self, user_id: str, address_type: AddressType) -> Optional[Address]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Address).where(
                    and_(
                        Address.user_id == user_id,
                        Address.address_type == AddressType(address_type),
                        Address.is_default == True,  # noqa: E712
                        Address.is_deleted == False,  # noqa: E712
                    )
                )
            )
            return result.scalar_one_or_none()

    # ==================== Mutations ====================

    async def add_address(self, user_id: str, data: Union[AddressCreate, dict]) -> Address:
        """Validate and insert a non-default address."""
        fields = parse_model(AddressCreate, data)
        address = Address(user_id=user_id, **fields.model_dump())
        address = await self._flag.insert(address, make_default=False)
        logger.info(f"[ADDRESS] user {user_id} added {address.address_type.value} address {address.id}")
        return address

    async def update_address(
        self,
        user_id: str,
        address_id: str,
        data: Union[AddressUpdate, dict],
    ) -> Address:
        changes = parse_model(AddressUpdate, data).model_dump(exclude_unset=True)

        async with self._session_factory() as db:
            result = await db.execute(
                select(Address).where(
                    and_(
                        Address.id == address_id,
                        Address.user_id == user_id,
                        Address.is_deleted == False,  # noqa: E712
                    )
                )
            )
            address = result.scalar_one_or_none()
            if address is None:
                raise NotFoundError("Address not found", resource="address", resource_id=address_id)

            merged = {name: getattr(address, name) for name in AddressFields.model_fields}
            merged.update(changes)
            validated = parse_model(AddressFields, merged)

            for name, value in validated.model_dump().items():
                setattr(address, name, value)
            await db.commit()
            await db.refresh(address)
        return address

    async def set_default(self, user_id: str, address_id: str, address_type: AddressType) -> Address:
        """Make address_id the only default for (user, address_type)."""
        return await self._flag.set_default(
            user_id,
            address_id,
            address_type=AddressType(address_type),
        )

    async def delete_address(self, user_id: str, address_id: str) -> Address:
        address = await self._flag.soft_delete(user_id, address_id)
        logger.info(f"[ADDRESS] user {user_id} deleted address {address_id}")
        return address

    # ==================== Provider validation ====================

    async def validate_address(self, data: Union[AddressValidateRequest, dict]) -> AddressValidationResult:
        """Check an address with Shippo's validation endpoint."""
        request = parse_model(AddressValidateRequest, data)
        provider = ProviderFactory.get_provider("shippo", transport=self._transport)
        if provider is None:
            raise ProviderError("Address validation is not configured", provider="shippo")
        try:
            return await provider.validate_address(
                ShipmentAddress(
                    street1=request.street1,
                    street2=request.street2,
                    city=request.city,
                    state=request.state,
                    zip=request.zip,
                    country=request.country.upper(),
                )
            )
        finally:
            await provider.close()


def to_shipment_address(address: Address) -> ShipmentAddress:
    return ShipmentAddress(**address.to_provider_dict())
