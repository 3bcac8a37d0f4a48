"""
Ticket transfer workflow.

An offer moves pending -> accepted | rejected | cancelled | expired, and every
one of those is final. Responses lock the transfer row so only the first of
two competing responses wins. Offers past expires_at are flipped to expired
whenever they are read, so a late accept fails even if the sweep has not run.
"""
import json
import logging
import uuid
from datetime import datetime, timezone, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List

import asyncpg

from app.config import settings
from app.database import get_db_connection
from app.core.exceptions import (
    NotFoundError, AuthorizationError, ValidationError,
    TicketNotTransferable, TransferAlreadyResolved
)
from app.core.middleware import RequestMeta
from app.models.audit import AuditAction
from app.models.ticket import TicketStatus
from app.models.transfer import (
    TicketTransfer, TransferCreate, TransferStatus, TransferType, TransferDirection
)
from app.services import audit_service
from app.services.transitions import is_transfer_expired, next_transfer_status

logger = logging.getLogger(__name__)

TRANSFER_COLUMNS = """
    id, ticket_id, from_user_id, to_user_id, status, transfer_type,
    transfer_price, platform_fee, seller_message, buyer_message, rejection_reason,
    expires_at, history, resolved_at, created_at, updated_at
"""

RESOLUTION_AUDIT = {
    TransferStatus.ACCEPTED: AuditAction.TRANSFER_ACCEPT,
    TransferStatus.REJECTED: AuditAction.TRANSFER_REJECT,
    TransferStatus.CANCELLED: AuditAction.TRANSFER_CANCEL,
    TransferStatus.EXPIRED: AuditAction.TRANSFER_EXPIRE,
}


def _parse_json_field(value):
    if value is None:
        return []
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_transfer(row) -> TicketTransfer:
    data = dict(row)
    data['history'] = _parse_json_field(data.get('history'))
    return TicketTransfer(**data)


def _history(action: str, actor_id: Optional[str], note: Optional[str] = None) -> str:
    """One history entry, encoded for `history || $n::jsonb`"""
    return json.dumps([{
        "action": action,
        "actor_id": actor_id,
        "at": datetime.now(timezone.utc).isoformat(),
        "note": note,
    }])


def compute_platform_fee(transfer_type: TransferType, price: Optional[Decimal]) -> Decimal:
    if transfer_type != TransferType.SALE or not price:
        return Decimal("0.00")
    fee = Decimal(price) * settings.transfer_platform_fee_percent / Decimal(100)
    return fee.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _parse_transfer_id(transfer_id: str) -> str:
    try:
        return str(uuid.UUID(str(transfer_id)))
    except ValueError:
        raise NotFoundError("Transfer not found", {"id": transfer_id})


async def _expire(conn, transfer, actor_id: str = "system"):
    """Flip one locked pending transfer to expired"""
    next_transfer_status(transfer['status'], TransferStatus.EXPIRED.value)
    row = await conn.fetchrow(f"""
        UPDATE ticket_transfers
        SET status = 'expired', resolved_at = NOW(), updated_at = NOW(),
            history = history || $2::jsonb
        WHERE id = $1 AND status = 'pending'
        RETURNING {TRANSFER_COLUMNS}
    """, transfer['id'], _history("expired", actor_id))

    if not row:
        return transfer

    await audit_service.record(
        conn, AuditAction.TRANSFER_EXPIRE, "ticket_transfer", str(row['id']),
        actor_id=actor_id,
        before={"status": transfer['status']},
        after={"status": TransferStatus.EXPIRED.value, "expires_at": transfer['expires_at']}
    )
    logger.info(f"Transfer {row['id']} expired")
    return row


async def _expire_stale(conn, where: str, *args) -> int:
    """Expire every pending transfer past its window matching an extra condition"""
    rows = await conn.fetch(f"""
        UPDATE ticket_transfers
        SET status = 'expired', resolved_at = NOW(), updated_at = NOW(),
            history = history || ${len(args) + 1}::jsonb
        WHERE status = 'pending' AND expires_at <= NOW() AND ({where})
        RETURNING id, expires_at
    """, *args, _history("expired", "system"))

    for row in rows:
        await audit_service.record(
            conn, AuditAction.TRANSFER_EXPIRE, "ticket_transfer", str(row['id']),
            actor_id="system",
            before={"status": TransferStatus.PENDING.value},
            after={"status": TransferStatus.EXPIRED.value, "expires_at": row['expires_at']}
        )
    return len(rows)


async def create_transfer(from_user_id: str, data: TransferCreate, meta: Optional[RequestMeta] = None) -> TicketTransfer:
    """Offer a held ticket to another user"""
    if data.to_user_id == from_user_id:
        raise ValidationError("You cannot transfer a ticket to yourself")

    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(days=settings.transfer_expiration_days)
    price = data.price if data.transfer_type == TransferType.SALE else Decimal("0.00")
    fee = compute_platform_fee(data.transfer_type, price)

    async with get_db_connection() as conn:
        ticket = await conn.fetchrow("""
            SELECT ticket_id, holder_id, status, expires_at
            FROM tickets
            WHERE ticket_id = $1
            FOR UPDATE
        """, data.ticket_id)

        if not ticket:
            raise NotFoundError("Ticket not found", {"ticket_id": data.ticket_id})

        if ticket['holder_id'] != from_user_id:
            raise AuthorizationError("You don't hold this ticket")

        if ticket['status'] != TicketStatus.CONFIRMED.value:
            raise TicketNotTransferable(data.ticket_id, f"Cannot transfer ticket with status: {ticket['status']}")

        if ticket['expires_at'] is not None and ticket['expires_at'] <= now:
            raise TicketNotTransferable(data.ticket_id, "Ticket has expired")

        await _expire_stale(conn, "ticket_id = $1", data.ticket_id)

        existing = await conn.fetchval("""
            SELECT id FROM ticket_transfers
            WHERE ticket_id = $1 AND status = 'pending'
        """, data.ticket_id)

        if existing:
            raise TicketNotTransferable(data.ticket_id, "This ticket already has a pending transfer")

        try:
            row = await conn.fetchrow(f"""
                INSERT INTO ticket_transfers (
                    ticket_id, from_user_id, to_user_id, status, transfer_type,
                    transfer_price, platform_fee, seller_message, expires_at, history
                ) VALUES ($1, $2, $3, 'pending', $4, $5, $6, $7, $8, $9::jsonb)
                RETURNING {TRANSFER_COLUMNS}
            """,
                data.ticket_id, from_user_id, data.to_user_id, data.transfer_type.value,
                price, fee, data.message, expires_at,
                _history("created", from_user_id, data.message)
            )
        except asyncpg.exceptions.UniqueViolationError:
            raise TicketNotTransferable(data.ticket_id, "This ticket already has a pending transfer")

        await audit_service.record(
            conn, AuditAction.TRANSFER_CREATE, "ticket_transfer", str(row['id']),
            actor_id=from_user_id,
            after={
                "status": TransferStatus.PENDING.value,
                "ticket_id": data.ticket_id,
                "to_user_id": data.to_user_id,
                "transfer_type": data.transfer_type.value,
                "price": price,
                "platform_fee": fee,
                "expires_at": expires_at,
            },
            meta=meta
        )

        logger.info(f"Transfer {row['id']} created: ticket {data.ticket_id} from {from_user_id} to {data.to_user_id}")
        return _row_to_transfer(row)


async def _hand_over_ticket(conn, transfer) -> None:
    """Move the ticket to the recipient and log it on the ticket"""
    entry = json.dumps([{
        "transfer_id": str(transfer['id']),
        "from_user_id": transfer['from_user_id'],
        "to_user_id": transfer['to_user_id'],
        "reason": transfer['transfer_type'],
        "transferred_at": datetime.now(timezone.utc).isoformat(),
    }])

    result = await conn.execute("""
        UPDATE tickets
        SET holder_id = $2,
            transfer_history = transfer_history || $3::jsonb,
            updated_at = NOW()
        WHERE ticket_id = $1 AND holder_id = $4 AND status = 'confirmed'
    """, transfer['ticket_id'], transfer['to_user_id'], entry, transfer['from_user_id'])

    if result != "UPDATE 1":
        raise TicketNotTransferable(transfer['ticket_id'], "Ticket can no longer be transferred")


async def _resolve(
    transfer_id: str,
    user_id: str,
    target: TransferStatus,
    meta: Optional[RequestMeta] = None,
    buyer_message: Optional[str] = None,
    rejection_reason: Optional[str] = None
) -> TicketTransfer:
    transfer_id = _parse_transfer_id(transfer_id)
    expired = None

    async with get_db_connection() as conn:
        transfer = await conn.fetchrow(
            f"SELECT {TRANSFER_COLUMNS} FROM ticket_transfers WHERE id = $1 FOR UPDATE",
            transfer_id
        )

        if not transfer:
            raise NotFoundError("Transfer not found", {"id": transfer_id})

        if target == TransferStatus.CANCELLED:
            if transfer['from_user_id'] != user_id:
                raise AuthorizationError("Only the sender can cancel this transfer")
        elif transfer['to_user_id'] != user_id:
            raise AuthorizationError("Only the recipient can respond to this transfer")

        if is_transfer_expired(transfer, datetime.now(timezone.utc)):
            expired = await _expire(conn, transfer)
        elif transfer['status'] != TransferStatus.PENDING.value:
            raise TransferAlreadyResolved(transfer_id, transfer['status'])
        else:
            next_transfer_status(transfer['status'], target.value)

            if target == TransferStatus.ACCEPTED:
                await _hand_over_ticket(conn, transfer)

            row = await conn.fetchrow(f"""
                UPDATE ticket_transfers
                SET status = $2, resolved_at = NOW(), updated_at = NOW(),
                    buyer_message = COALESCE($3, buyer_message),
                    rejection_reason = COALESCE($4, rejection_reason),
                    history = history || $5::jsonb
                WHERE id = $1 AND status = 'pending'
                RETURNING {TRANSFER_COLUMNS}
            """,
                transfer_id, target.value, buyer_message, rejection_reason,
                _history(target.value, user_id, buyer_message or rejection_reason)
            )

            await audit_service.record(
                conn, RESOLUTION_AUDIT[target], "ticket_transfer", transfer_id,
                actor_id=user_id,
                before={"status": transfer['status'], "holder_id": transfer['from_user_id']},
                after={
                    "status": target.value,
                    "holder_id": transfer['to_user_id'] if target == TransferStatus.ACCEPTED else transfer['from_user_id'],
                },
                meta=meta
            )

            logger.info(f"Transfer {transfer_id} {target.value} by {user_id}")
            return _row_to_transfer(row)

    # The expiry above is committed before reporting the conflict
    raise TransferAlreadyResolved(transfer_id, expired['status'])


async def accept_transfer(transfer_id: str, user_id: str, message: Optional[str] = None,
                          meta: Optional[RequestMeta] = None) -> TicketTransfer:
    return await _resolve(transfer_id, user_id, TransferStatus.ACCEPTED, meta, buyer_message=message)


async def reject_transfer(transfer_id: str, user_id: str, reason: Optional[str] = None,
                          meta: Optional[RequestMeta] = None) -> TicketTransfer:
    return await _resolve(transfer_id, user_id, TransferStatus.REJECTED, meta, rejection_reason=reason)


async def cancel_transfer(transfer_id: str, user_id: str, meta: Optional[RequestMeta] = None) -> TicketTransfer:
    return await _resolve(transfer_id, user_id, TransferStatus.CANCELLED, meta)


async def respond_to_transfer(
    transfer_id: str,
    user_id: str,
    action: str,
    message: Optional[str] = None,
    reason: Optional[str] = None,
    meta: Optional[RequestMeta] = None
) -> TicketTransfer:
    """Recipient answer: accept or reject"""
    if action == "accept":
        return await accept_transfer(transfer_id, user_id, message, meta)
    if action == "reject":
        return await reject_transfer(transfer_id, user_id, reason, meta)
    raise ValidationError(f"Unknown transfer action: {action}")


async def get_transfer(transfer_id: str, user_id: str, is_staff: bool = False) -> TicketTransfer:
    transfer_id = _parse_transfer_id(transfer_id)

    async with get_db_connection() as conn:
        row = await conn.fetchrow(
            f"SELECT {TRANSFER_COLUMNS} FROM ticket_transfers WHERE id = $1 FOR UPDATE",
            transfer_id
        )

        if not row:
            raise NotFoundError("Transfer not found", {"id": transfer_id})

        if not is_staff and user_id not in (row['from_user_id'], row['to_user_id']):
            raise AuthorizationError("Access denied")

        if is_transfer_expired(row, datetime.now(timezone.utc)):
            row = await _expire(conn, row)

        return _row_to_transfer(row)


async def list_transfers(
    user_id: str,
    direction: TransferDirection = TransferDirection.ALL,
    status: Optional[TransferStatus] = None
) -> List[TicketTransfer]:
    """Transfers sent and/or received by a user, with stale offers expired first"""
    if direction == TransferDirection.SENT:
        condition = "from_user_id = $1"
    elif direction == TransferDirection.RECEIVED:
        condition = "to_user_id = $1"
    else:
        condition = "(from_user_id = $1 OR to_user_id = $1)"

    async with get_db_connection() as conn:
        await _expire_stale(conn, condition, user_id)

        rows = await conn.fetch(f"""
            SELECT {TRANSFER_COLUMNS}
            FROM ticket_transfers
            WHERE {condition} AND ($2::text IS NULL OR status = $2)
            ORDER BY created_at DESC
        """, user_id, status.value if status else None)

        return [_row_to_transfer(row) for row in rows]


async def expire_stale_transfers() -> int:
    """Bulk sweep for offers nobody has touched since they expired"""
    async with get_db_connection() as conn:
        count = await _expire_stale(conn, "true")

    if count:
        logger.info(f"Transfer expiration sweep expired {count} transfers")
    return count
