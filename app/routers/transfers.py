from fastapi import APIRouter, Depends, Query
from typing import List, Optional
from app.core.dependencies import get_authenticated_user, AuthenticatedUser
from app.models.transfer import (
    TicketTransfer, TransferCreate, TransferRespondRequest, TransferDirection, TransferStatus
)
from app.services import transfer_service

router = APIRouter()


@router.post("", response_model=TicketTransfer, status_code=201)
async def create_transfer(
    data: TransferCreate,
    user: AuthenticatedUser = Depends(get_authenticated_user)
):
    """
    Offer a ticket to another user.

    The ticket must be confirmed and have no other pending offer. The
    recipient has `TRANSFER_EXPIRATION_DAYS` to answer.
    """
    return await transfer_service.create_transfer(user.user_id, data, user.meta)


@router.get("", response_model=List[TicketTransfer])
async def list_transfers(
    direction: TransferDirection = Query(TransferDirection.ALL),
    status: Optional[TransferStatus] = Query(None),
    user: AuthenticatedUser = Depends(get_authenticated_user)
):
    """Transfers sent and/or received by the caller"""
    return await transfer_service.list_transfers(user.user_id, direction, status)


@router.get("/{transfer_id}", response_model=TicketTransfer)
async def get_transfer(
    transfer_id: str,
    user: AuthenticatedUser = Depends(get_authenticated_user)
):
    return await transfer_service.get_transfer(transfer_id, user.user_id, user.is_staff)


@router.post("/{transfer_id}/respond", response_model=TicketTransfer)
async def respond_to_transfer(
    transfer_id: str,
    data: TransferRespondRequest,
    user: AuthenticatedUser = Depends(get_authenticated_user)
):
    """
    Accept or reject a transfer (recipient only).

    Returns 409 when the offer was already resolved or has expired.
    """
    return await transfer_service.respond_to_transfer(
        transfer_id, user.user_id, data.action, data.message, data.reason, user.meta
    )


@router.post("/{transfer_id}/cancel", response_model=TicketTransfer)
async def cancel_transfer(
    transfer_id: str,
    user: AuthenticatedUser = Depends(get_authenticated_user)
):
    """Withdraw a pending offer (sender only)"""
    return await transfer_service.cancel_transfer(transfer_id, user.user_id, user.meta)
