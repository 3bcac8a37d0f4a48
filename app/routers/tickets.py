from fastapi import APIRouter, Depends, Query, Response
from typing import List, Optional
from app.core.dependencies import get_authenticated_user, require_staff, AuthenticatedUser
from app.models.ticket import (
    Ticket, TicketStatus, TicketValidation, QRValidationRequest,
    CheckInRequest, QRCheckInRequest, CheckInResult, UserTicketStats
)
from app.services import ticket_service

router = APIRouter()


@router.get("/mine", response_model=List[Ticket])
async def list_my_tickets(
    status: Optional[TicketStatus] = Query(None),
    user: AuthenticatedUser = Depends(get_authenticated_user)
):
    """Tickets currently held by the caller, including ones received by transfer"""
    return await ticket_service.list_user_tickets(user.user_id, status)


@router.get("/stats", response_model=UserTicketStats)
async def my_ticket_stats(
    user: AuthenticatedUser = Depends(get_authenticated_user)
):
    """Totals over the caller's tickets: held, used, refunded and handed over"""
    return await ticket_service.get_user_ticket_stats(user.user_id)


@router.post("/validate-qr", response_model=TicketValidation)
async def validate_qr(
    data: QRValidationRequest,
    user: AuthenticatedUser = Depends(require_staff)
):
    """
    Validate a scanned QR without using the ticket (staff only).

    The QR only points at the ticket; the answer always comes from the
    ticket's stored status.
    """
    return await ticket_service.validate_qr(data.qr_payload, data.event_id)


@router.post("/check-in-qr", response_model=CheckInResult)
async def check_in_by_qr(
    data: QRCheckInRequest,
    user: AuthenticatedUser = Depends(require_staff)
):
    """Check in from a scanned QR (staff only). A second scan returns 409."""
    return await ticket_service.check_in_by_qr(
        data.qr_payload, user.user_id, data.location, data.device, data.event_id, user.meta
    )


@router.get("/{ticket_id}", response_model=Ticket)
async def get_ticket(
    ticket_id: str,
    user: AuthenticatedUser = Depends(get_authenticated_user)
):
    return await ticket_service.get_ticket(ticket_id, user.user_id, user.is_staff)


@router.get("/{ticket_id}/validate", response_model=TicketValidation)
async def validate_ticket(
    ticket_id: str,
    user: AuthenticatedUser = Depends(require_staff)
):
    """Check whether a ticket admits entry right now (staff only)"""
    return await ticket_service.validate_ticket(ticket_id)


@router.post("/{ticket_id}/check-in", response_model=CheckInResult)
async def check_in(
    ticket_id: str,
    data: CheckInRequest,
    user: AuthenticatedUser = Depends(require_staff)
):
    """
    Mark a ticket as used (staff only).

    Returns 409 with `checked_in_at` and `checked_in_by` when the ticket was
    already used.
    """
    return await ticket_service.check_in(
        ticket_id, user.user_id, data.location, data.device, meta=user.meta
    )


@router.get("/{ticket_id}/download")
async def download_ticket(
    ticket_id: str,
    user: AuthenticatedUser = Depends(get_authenticated_user)
):
    """Download the ticket QR as PNG"""
    image = await ticket_service.download_ticket(ticket_id, user.user_id, user.is_staff)
    return Response(
        content=image,
        media_type="image/png",
        headers={"Content-Disposition": f'attachment; filename="{ticket_id}.png"'}
    )
