"""
Availability checker.

Capacity is tracked per (event, ticket type) in event_ticket_inventory.
`reserved` counts the quantity of every intent that is pending, in_process or
approved; it only moves through the conditional UPDATEs below, so two buyers
racing for the last seat cannot both get it.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from app.database import get_db_connection
from app.core.exceptions import NotFoundError, ValidationError, EventClosed, InsufficientCapacity
from app.models.event import Event, EventAvailability, DEFAULT_TICKET_PRICES

logger = logging.getLogger(__name__)


async def get_event(conn, event_id: str) -> Event:
    row = await conn.fetchrow("""
        SELECT id, name, category, location, event_date, end_date, organizer_id, is_active
        FROM events
        WHERE id = $1
    """, event_id)

    if not row:
        raise NotFoundError("Event not found", {"event_id": event_id})

    return Event(**dict(row))


def ensure_event_open(event: Event, now: Optional[datetime] = None) -> None:
    now = now or datetime.now(timezone.utc)
    if not event.is_active:
        raise EventClosed(event.id, "Event is not on sale")
    if event.event_date <= now:
        raise EventClosed(event.id, "Event date has passed")


def resolve_unit_price(ticket_type: str, configured_price: Optional[Decimal]) -> Decimal:
    if configured_price is not None:
        return Decimal(configured_price)
    price = DEFAULT_TICKET_PRICES.get(ticket_type)
    if price is None:
        raise ValidationError(f"No price configured for ticket type '{ticket_type}'")
    return price


async def _get_inventory(conn, event_id: str, ticket_type: str):
    row = await conn.fetchrow("""
        SELECT event_id, ticket_type, capacity, reserved, price
        FROM event_ticket_inventory
        WHERE event_id = $1 AND ticket_type = $2
    """, event_id, ticket_type)

    if not row:
        raise ValidationError(
            f"Ticket type '{ticket_type}' is not offered for this event",
            {"event_id": event_id, "ticket_type": ticket_type}
        )
    return row


async def check_availability(event_id: str, ticket_type: str, quantity: int = 1) -> EventAvailability:
    """Read-only availability for a (event, ticket type); the atomic gate is reserve_capacity"""
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")

    async with get_db_connection(use_transaction=False) as conn:
        event = await get_event(conn, event_id)
        ensure_event_open(event)
        inventory = await _get_inventory(conn, event_id, ticket_type)

        available = max(inventory['capacity'] - inventory['reserved'], 0)

        return EventAvailability(
            event_id=event_id,
            ticket_type=ticket_type,
            capacity=inventory['capacity'],
            sold=inventory['reserved'],
            available=available,
            requested=quantity,
            can_purchase=available >= quantity,
            unit_price=resolve_unit_price(ticket_type, inventory['price']),
            event_date=event.event_date
        )


async def reserve_capacity(conn, event_id: str, ticket_type: str, quantity: int) -> Decimal:
    """
    Atomically take `quantity` seats. Must run inside the caller's transaction.

    Returns the unit price of the ticket type.
    Raises InsufficientCapacity with the exact remaining count.
    """
    row = await conn.fetchrow("""
        UPDATE event_ticket_inventory
        SET reserved = reserved + $3, updated_at = NOW()
        WHERE event_id = $1 AND ticket_type = $2
          AND capacity - reserved >= $3
        RETURNING capacity, reserved, price
    """, event_id, ticket_type, quantity)

    if row:
        logger.info(f"Reserved {quantity} x {ticket_type} for event {event_id} ({row['reserved']}/{row['capacity']})")
        return resolve_unit_price(ticket_type, row['price'])

    inventory = await _get_inventory(conn, event_id, ticket_type)
    available = inventory['capacity'] - inventory['reserved']
    logger.info(f"Capacity exhausted for event {event_id}/{ticket_type}: {available} left, {quantity} requested")
    raise InsufficientCapacity(available=available, requested=quantity)


async def release_capacity(conn, event_id: str, ticket_type: str, quantity: int) -> None:
    """Give seats back (floored at zero)"""
    result = await conn.execute("""
        UPDATE event_ticket_inventory
        SET reserved = GREATEST(reserved - $3, 0), updated_at = NOW()
        WHERE event_id = $1 AND ticket_type = $2
    """, event_id, ticket_type, quantity)

    if result != "UPDATE 1":
        logger.warning(f"Capacity release found no inventory row for event {event_id}/{ticket_type}")
    else:
        logger.info(f"Released {quantity} x {ticket_type} for event {event_id}")
