"""
Ticket issuer and validator.

A ticket is issued once, when its payment intent is first approved, and reuses
the ticket id and QR payload generated with the intent. Check-in is a
conditional UPDATE on status='confirmed', so concurrent scans of the same
ticket cannot both succeed.
"""
import json
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, List

from app.config import settings
from app.database import get_db_connection
from app.core.exceptions import (
    APIError, NotFoundError, AuthorizationError, ValidationError,
    AlreadyCheckedIn, StateConflictError
)
from app.core.middleware import RequestMeta
from app.models.audit import AuditAction
from app.models.ticket import (
    Ticket, TicketStatus, TicketValidation, CheckInResult, UserTicketStats
)
from app.services import audit_service
from app.services.transitions import evaluate_ticket, next_ticket_status
from app.utils.qr_generator import decode_qr_payload, generate_qr_image

logger = logging.getLogger(__name__)

TICKET_COLUMNS = """
    t.ticket_id, t.intent_id, t.event_id, t.holder_id, t.original_user_id,
    t.ticket_type, t.quantity, t.unit_price, t.total_amount, t.status, t.qr_payload,
    t.checked_in_at, t.checked_in_by, t.check_in_location, t.check_in_device,
    t.transfer_history, t.download_history, t.expires_at, t.created_at, t.updated_at
"""


def _parse_json_field(value, default):
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_ticket(row) -> Ticket:
    data = dict(row)
    data['transfer_history'] = _parse_json_field(data.get('transfer_history'), [])
    data['download_history'] = _parse_json_field(data.get('download_history'), [])
    return Ticket(**data)


def compute_expiry(event_date: datetime, end_date: Optional[datetime]) -> datetime:
    """Tickets stay valid until the event ends plus the grace window"""
    return (end_date or event_date) + timedelta(days=settings.ticket_grace_days)


async def _fetch_ticket(conn, ticket_id: str):
    return await conn.fetchrow(f"""
        SELECT {TICKET_COLUMNS}, e.name AS event_name, e.event_date
        FROM tickets t
        JOIN events e ON e.id = t.event_id
        WHERE t.ticket_id = $1
    """, ticket_id)


async def issue_ticket(conn, intent, meta: Optional[RequestMeta] = None):
    """
    Create the Ticket for an approved intent. Safe to call twice: the second
    call finds the existing ticket and issues nothing.
    """
    event = await conn.fetchrow(
        "SELECT event_date, end_date FROM events WHERE id = $1",
        intent['event_id']
    )
    expires_at = compute_expiry(event['event_date'], event['end_date']) if event else None

    row = await conn.fetchrow("""
        INSERT INTO tickets (
            ticket_id, intent_id, event_id, holder_id, original_user_id,
            ticket_type, quantity, unit_price, total_amount, status, qr_payload, expires_at
        ) VALUES ($1, $2, $3, $4, $4, $5, $6, $7, $8, 'confirmed', $9, $10)
        ON CONFLICT (ticket_id) DO NOTHING
        RETURNING ticket_id, status
    """,
        intent['ticket_id'],
        intent['id'],
        intent['event_id'],
        intent['user_id'],
        intent['ticket_type'],
        intent['quantity'],
        intent['unit_price'],
        intent['amount'],
        intent['ticket_qr'],
        expires_at
    )

    if not row:
        logger.info(f"Ticket {intent['ticket_id']} already issued, skipping")
        return None

    await audit_service.record(
        conn, AuditAction.TICKET_ISSUE, "ticket", intent['ticket_id'],
        actor_id="system",
        after={
            "status": TicketStatus.CONFIRMED.value,
            "intent_id": intent['id'],
            "holder_id": intent['user_id'],
            "quantity": intent['quantity'],
        },
        meta=meta
    )

    logger.info(f"Ticket {intent['ticket_id']} issued for intent {intent['id']}")
    return row


async def mark_refunded(conn, ticket_id: str, actor_id: str, meta: Optional[RequestMeta] = None) -> bool:
    """Refund an issued ticket and cancel any open transfer offer for it"""
    current = await conn.fetchrow(
        "SELECT status FROM tickets WHERE ticket_id = $1 FOR UPDATE", ticket_id
    )
    if not current:
        return False

    if current['status'] not in (TicketStatus.CONFIRMED.value, TicketStatus.PENDING.value):
        logger.warning(f"Ticket {ticket_id} is {current['status']}, leaving it as is on refund")
        return False

    next_ticket_status(current['status'], TicketStatus.REFUNDED.value)
    await conn.execute("""
        UPDATE tickets SET status = 'refunded', updated_at = NOW()
        WHERE ticket_id = $1
    """, ticket_id)

    await conn.execute("""
        UPDATE ticket_transfers
        SET status = 'cancelled', resolved_at = NOW(), updated_at = NOW(),
            history = history || $2::jsonb
        WHERE ticket_id = $1 AND status = 'pending'
    """, ticket_id, json.dumps([{
        "action": "cancelled",
        "actor_id": actor_id,
        "at": datetime.now(timezone.utc).isoformat(),
        "note": "ticket refunded",
    }]))

    await audit_service.record(
        conn, AuditAction.TICKET_REFUND, "ticket", ticket_id,
        actor_id=actor_id,
        before={"status": current['status']},
        after={"status": TicketStatus.REFUNDED.value},
        meta=meta
    )
    return True


async def get_ticket(ticket_id: str, user_id: str, is_staff: bool = False) -> Ticket:
    async with get_db_connection(use_transaction=False) as conn:
        row = await _fetch_ticket(conn, ticket_id)
        if not row:
            raise NotFoundError("Ticket not found", {"ticket_id": ticket_id})

        if not is_staff and row['holder_id'] != user_id:
            raise AuthorizationError("You don't hold this ticket")

        return _row_to_ticket(row)


async def list_user_tickets(user_id: str, status: Optional[TicketStatus] = None) -> List[Ticket]:
    """Tickets currently held by a user"""
    async with get_db_connection(use_transaction=False) as conn:
        rows = await conn.fetch(f"""
            SELECT {TICKET_COLUMNS}, e.name AS event_name, e.event_date
            FROM tickets t
            JOIN events e ON e.id = t.event_id
            WHERE t.holder_id = $1
              AND t.archived = false
              AND ($2::text IS NULL OR t.status = $2)
            ORDER BY e.event_date ASC, t.created_at DESC
        """, user_id, status.value if status else None)
        return [_row_to_ticket(row) for row in rows]


async def get_user_ticket_stats(user_id: str) -> UserTicketStats:
    """
    Counts over the tickets a user holds. A ticket the user bought and later
    handed over counts as transferred, not held.
    """
    async with get_db_connection(use_transaction=False) as conn:
        row = await conn.fetchrow("""
            SELECT
                COUNT(*) FILTER (WHERE holder_id = $1) AS total_tickets,
                COUNT(*) FILTER (WHERE holder_id = $1 AND status = 'confirmed') AS confirmed_tickets,
                COUNT(*) FILTER (WHERE holder_id = $1 AND status = 'used') AS used_tickets,
                COUNT(*) FILTER (WHERE holder_id = $1 AND status = 'refunded') AS refunded_tickets,
                COUNT(*) FILTER (WHERE original_user_id = $1 AND holder_id <> $1) AS transferred_tickets,
                COALESCE(SUM(total_amount) FILTER (WHERE holder_id = $1), 0) AS total_amount
            FROM tickets
            WHERE holder_id = $1 OR original_user_id = $1
        """, user_id)

    if not row:
        return UserTicketStats(user_id=user_id)
    return UserTicketStats(user_id=user_id, **dict(row))


def _validation_from_row(row, now: datetime) -> TicketValidation:
    valid, reason = evaluate_ticket(row, now)
    return TicketValidation(
        valid=valid,
        reason=reason,
        ticket_id=row['ticket_id'],
        event_id=row['event_id'],
        status=row['status'],
        holder_id=row['holder_id'],
        ticket_type=row['ticket_type'],
        quantity=row['quantity'],
        checked_in_at=row['checked_in_at'],
        checked_in_by=row['checked_in_by']
    )


async def validate_ticket(ticket_id: str) -> TicketValidation:
    async with get_db_connection(use_transaction=False) as conn:
        row = await _fetch_ticket(conn, ticket_id)
        if not row:
            raise NotFoundError("Ticket not found", {"ticket_id": ticket_id})
        return _validation_from_row(row, datetime.now(timezone.utc))


async def validate_qr(qr_payload: str, event_id: Optional[str] = None) -> TicketValidation:
    """
    Resolve a scanned QR to its ticket. The payload only points at a ticket;
    the ticket row decides validity.
    """
    claims = decode_qr_payload(qr_payload)
    if not claims:
        return TicketValidation(valid=False, reason="invalid qr")

    async with get_db_connection(use_transaction=False) as conn:
        row = await _fetch_ticket(conn, claims['ticketId'])

    if not row:
        return TicketValidation(valid=False, reason="not found", ticket_id=claims['ticketId'])

    if row['event_id'] != claims['eventId']:
        logger.warning(f"QR for ticket {row['ticket_id']} carries event {claims['eventId']}, ticket belongs to {row['event_id']}")
        return TicketValidation(valid=False, reason="invalid qr", ticket_id=row['ticket_id'])

    if event_id and row['event_id'] != event_id:
        return TicketValidation(
            valid=False, reason="wrong event",
            ticket_id=row['ticket_id'], event_id=row['event_id'], status=row['status']
        )

    return _validation_from_row(row, datetime.now(timezone.utc))


async def check_in(
    ticket_id: str,
    actor_id: str,
    location: Optional[str] = None,
    device: Optional[str] = None,
    event_id: Optional[str] = None,
    meta: Optional[RequestMeta] = None
) -> CheckInResult:
    """Mark a ticket as used at the venue (once)"""
    now = datetime.now(timezone.utc)

    async with get_db_connection() as conn:
        ticket = await conn.fetchrow("""
            SELECT ticket_id, event_id, holder_id, status, expires_at,
                   checked_in_at, checked_in_by
            FROM tickets
            WHERE ticket_id = $1
        """, ticket_id)

        if not ticket:
            raise NotFoundError("Ticket not found", {"ticket_id": ticket_id})

        if event_id and ticket['event_id'] != event_id:
            raise ValidationError("Ticket belongs to another event", {"reason": "wrong event"})

        valid, reason = evaluate_ticket(ticket, now)
        if not valid:
            if reason == "already used":
                raise AlreadyCheckedIn(ticket_id, ticket['checked_in_at'], ticket['checked_in_by'])
            raise ValidationError(f"Ticket is not valid: {reason}", {"reason": reason})

        next_ticket_status(ticket['status'], TicketStatus.USED.value)

        row = await conn.fetchrow("""
            UPDATE tickets
            SET status = 'used', checked_in_at = NOW(), checked_in_by = $2,
                check_in_location = $3, check_in_device = $4, updated_at = NOW()
            WHERE ticket_id = $1 AND status = 'confirmed'
            RETURNING ticket_id, event_id, holder_id, status, checked_in_at, checked_in_by
        """, ticket_id, actor_id, location, device)

        if not row:
            current = await conn.fetchrow(
                "SELECT status, checked_in_at, checked_in_by FROM tickets WHERE ticket_id = $1",
                ticket_id
            )
            if current and current['status'] == TicketStatus.USED.value:
                raise AlreadyCheckedIn(ticket_id, current['checked_in_at'], current['checked_in_by'])
            raise StateConflictError("Ticket changed state during check-in, retry", {"ticket_id": ticket_id})

        await conn.execute("""
            UPDATE payment_intents
            SET ticket_is_valid = false, ticket_used_at = $2, ticket_used_by = $3, updated_at = NOW()
            WHERE ticket_id = $1
        """, ticket_id, row['checked_in_at'], actor_id)

        await audit_service.record(
            conn, AuditAction.TICKET_CHECK_IN, "ticket", ticket_id,
            actor_id=actor_id,
            before={"status": ticket['status']},
            after={"status": TicketStatus.USED.value, "location": location, "device": device},
            meta=meta
        )

        logger.info(f"Ticket {ticket_id} checked in by {actor_id} at {location or 'unknown gate'}")

        return CheckInResult(
            ticket_id=row['ticket_id'],
            event_id=row['event_id'],
            holder_id=row['holder_id'],
            status=row['status'],
            checked_in_at=row['checked_in_at'],
            checked_in_by=row['checked_in_by'],
            location=location,
            device=device
        )


async def check_in_by_qr(
    qr_payload: str,
    actor_id: str,
    location: Optional[str] = None,
    device: Optional[str] = None,
    event_id: Optional[str] = None,
    meta: Optional[RequestMeta] = None
) -> CheckInResult:
    claims = decode_qr_payload(qr_payload)
    if not claims:
        raise ValidationError("Invalid QR code", {"reason": "invalid qr"})

    async with get_db_connection(use_transaction=False) as conn:
        owner_event = await conn.fetchval(
            "SELECT event_id FROM tickets WHERE ticket_id = $1", claims['ticketId']
        )

    if owner_event is None:
        raise NotFoundError("Ticket not found", {"ticket_id": claims['ticketId']})

    if owner_event != claims['eventId']:
        raise ValidationError("Invalid QR code", {"reason": "invalid qr"})

    return await check_in(claims['ticketId'], actor_id, location, device, event_id, meta)


async def _record_download(ticket_id: str, user_id: str, success: bool, error: Optional[str]) -> None:
    entry = {
        "user_id": user_id,
        "downloaded_at": datetime.now(timezone.utc).isoformat(),
        "success": success,
        "error": error,
    }
    async with get_db_connection() as conn:
        await conn.execute("""
            UPDATE tickets
            SET download_history = download_history || $2::jsonb
            WHERE ticket_id = $1
        """, ticket_id, json.dumps([entry]))

        await audit_service.record(
            conn, AuditAction.TICKET_DOWNLOAD, "ticket", ticket_id,
            actor_id=user_id, after={"success": success}, success=success, error_message=error
        )


async def download_ticket(ticket_id: str, user_id: str, is_staff: bool = False) -> bytes:
    """
    Render the ticket QR as PNG. Every attempt, successful or not, is appended
    to the ticket's download history.
    """
    async with get_db_connection(use_transaction=False) as conn:
        row = await conn.fetchrow(
            "SELECT ticket_id, holder_id, status, qr_payload FROM tickets WHERE ticket_id = $1",
            ticket_id
        )

    if not row:
        raise NotFoundError("Ticket not found", {"ticket_id": ticket_id})

    if not is_staff and row['holder_id'] != user_id:
        raise AuthorizationError("You don't hold this ticket")

    if row['status'] not in (TicketStatus.CONFIRMED.value, TicketStatus.USED.value):
        error = f"Cannot download ticket with status: {row['status']}"
        await _record_download(ticket_id, user_id, False, error)
        raise ValidationError(error)

    try:
        image = generate_qr_image(row['qr_payload'])
    except Exception as e:
        logger.error(f"Failed to render ticket {ticket_id}: {e}")
        await _record_download(ticket_id, user_id, False, str(e))
        raise APIError("Could not render ticket", 500, {"ticket_id": ticket_id})

    await _record_download(ticket_id, user_id, True, None)
    return image
