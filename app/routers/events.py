from fastapi import APIRouter, Query
from app.models.event import EventAvailability, TicketType
from app.services import availability_service

router = APIRouter()


@router.get("/{event_id}/availability", response_model=EventAvailability)
async def get_event_availability(
    event_id: str,
    ticket_type: TicketType = Query(TicketType.GENERAL),
    quantity: int = Query(1, ge=1, le=10)
):
    """
    Check remaining capacity for a ticket type (PUBLIC).

    Informational only: the seat is actually taken when the payment intent
    is created.
    """
    return await availability_service.check_availability(event_id, ticket_type.value, quantity)
