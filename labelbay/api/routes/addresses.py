"""
Address API Routes
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from labelbay.api.deps import get_address_service, get_current_user_id
from labelbay.models.address import AddressType
from labelbay.schemas.address import (
    AddressCreate,
    AddressResponse,
    AddressUpdate,
    AddressValidateRequest,
    AddressValidateResponse,
    SetDefaultAddressRequest,
)
from labelbay.services.address_service import AddressService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/addresses", tags=["addresses"])


@router.get("", response_model=List[AddressResponse])
async def list_addresses(
    address_type: Optional[AddressType] = Query(None),
    user_id: str = Depends(get_current_user_id),
    service: AddressService = Depends(get_address_service),
):
    return await service.list_addresses(user_id, address_type)


@router.post("", response_model=AddressResponse, status_code=status.HTTP_201_CREATED)
async def create_address(
    payload: AddressCreate,
    user_id: str = Depends(get_current_user_id),
    service: AddressService = Depends(get_address_service),
):
    """Save an address. New addresses are never the default."""
    return await service.add_address(user_id, payload)


@router.post("/validate", response_model=AddressValidateResponse)
async def validate_address(
    payload: AddressValidateRequest,
    user_id: str = Depends(get_current_user_id),
    service: AddressService = Depends(get_address_service),
):
    result = await service.validate_address(payload)
    return AddressValidateResponse(
        is_valid=result.is_valid,
        normalized_address=result.normalized_address,
        messages=result.messages,
    )


@router.get("/{address_id}", response_model=AddressResponse)
async def get_address(
    address_id: str,
    user_id: str = Depends(get_current_user_id),
    service: AddressService = Depends(get_address_service),
):
    return await service.get_address(user_id, address_id)


@router.patch("/{address_id}", response_model=AddressResponse)
async def update_address(
    address_id: str,
    payload: AddressUpdate,
    user_id: str = Depends(get_current_user_id),
    service: AddressService = Depends(get_address_service),
):
    return await service.update_address(user_id, address_id, payload)


@router.post("/{address_id}/default", response_model=AddressResponse)
async def set_default_address(
    address_id: str,
    payload: SetDefaultAddressRequest,
    user_id: str = Depends(get_current_user_id),
    service: AddressService = Depends(get_address_service),
):
    return await service.set_default(user_id, address_id, payload.address_type)


@router.delete("/{address_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_address(
    address_id: str,
    user_id: str = Depends(get_current_user_id),
    service: AddressService = Depends(get_address_service),
):
    await service.delete_address(user_id, address_id)
