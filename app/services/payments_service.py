"""
Payment intent manager and settlement.

Purchase flow:
1. One transaction reserves capacity, redeems the coupon and persists a
   pending intent with its ticket id and QR already generated.
2. The provider preference is created outside the transaction.
3. The preference id and redirect URL are attached to the intent.

If step 2 fails the intent is cancelled and everything it held is given back,
so no preference ever exists without an intent that references it.

Every later status change goes through apply_provider_payment (webhooks,
buyer confirmation, reconciliation) or refund_intent, under a row lock on the
intent, using the transitions in app.services.transitions.
"""
import json
import logging
import math
import uuid
from datetime import datetime, timezone, timedelta
from decimal import Decimal
from typing import Optional, List, Dict, Any

from app.config import settings
from app.database import get_db_connection
from app.core.cache import TTLCache
from app.core.exceptions import (
    APIError, NotFoundError, AuthorizationError, ValidationError,
    ProviderError, PaymentProviderError, InvalidTransition
)
from app.core.middleware import RequestMeta
from app.models.audit import AuditAction
from app.models.payment import (
    PaymentIntent, PaymentIntentCreate, PaymentIntentResponse, PaymentStats,
    PaymentStatus, PaymentSearchResult, TicketClaim
)
from app.services import audit_service, coupon_service, ticket_service
from app.services.availability_service import (
    get_event, ensure_event_open, reserve_capacity, release_capacity
)
from app.services.gateways import get_provider, PreferenceItem, PreferenceRequest, ProviderPayment
from app.services.transitions import next_payment_status, is_first_approval, releases_capacity
from app.utils.identifiers import generate_ticket_id, generate_external_reference
from app.utils.qr_generator import generate_ticket_qr_data

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

_stats_cache = TTLCache(settings.stats_cache_ttl_seconds)

INTENT_COLUMNS = """
    id, user_id, event_id, ticket_type, quantity, unit_price, subtotal,
    discount_amount, amount, currency, coupon_code, status, status_detail,
    external_reference, preference_id, redirect_url, provider_payment_id,
    provider_expires_at, payment_method, installments, transaction_amount,
    transaction_details, refund_id, refunded_amount, ticket_id, ticket_qr,
    ticket_is_valid, ticket_used_at, ticket_used_by, approved_at,
    created_at, updated_at
"""


def _parse_json_field(value):
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return value


def row_to_intent(row) -> PaymentIntent:
    data = dict(row)
    data['transaction_details'] = _parse_json_field(data.get('transaction_details'))
    data['ticket'] = TicketClaim(
        ticket_id=data.pop('ticket_id'),
        qr_payload=data.pop('ticket_qr'),
        is_valid=data.pop('ticket_is_valid'),
        used_at=data.pop('ticket_used_at'),
        used_by=data.pop('ticket_used_by')
    )
    return PaymentIntent(**data)


def _state_snapshot(row) -> Dict[str, Any]:
    return {
        "status": row['status'],
        "status_detail": row['status_detail'],
        "provider_payment_id": row['provider_payment_id'],
    }


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_uuid(value: str, label: str = "Payment intent") -> str:
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        raise NotFoundError(f"{label} not found", {"id": value})


# ---------------------------------------------------------------------------
# Intent creation
# ---------------------------------------------------------------------------

async def create_intent(
    user_id: str,
    data: PaymentIntentCreate,
    payer_email: Optional[str] = None,
    meta: Optional[RequestMeta] = None
) -> PaymentIntentResponse:
    """Start a purchase and return where to send the buyer"""
    provider = get_provider()
    intent_id = str(uuid.uuid4())
    ticket_id = generate_ticket_id()
    external_reference = generate_external_reference(data.event_id, user_id)
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(hours=settings.payment_expiration_hours)

    async with get_db_connection() as conn:
        event = await get_event(conn, data.event_id)
        ensure_event_open(event, now)

        unit_price = await reserve_capacity(conn, event.id, data.ticket_type, data.quantity)
        subtotal = (unit_price * data.quantity).quantize(CENT)
        discount = Decimal("0.00")
        amount = subtotal

        if data.coupon_code:
            discount, amount = await coupon_service.redeem_coupon_for_intent(
                conn, data.coupon_code, user_id, event.id, event.category,
                subtotal, intent_id, meta
            )

        qr_payload = generate_ticket_qr_data(ticket_id, event.id, user_id, now, provider.name)

        row = await conn.fetchrow(f"""
            INSERT INTO payment_intents (
                id, user_id, event_id, ticket_type, quantity, unit_price, subtotal,
                discount_amount, amount, currency, coupon_code, status,
                external_reference, provider_expires_at, ticket_id, ticket_qr
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, 'pending', $12, $13, $14, $15)
            RETURNING {INTENT_COLUMNS}
        """,
            intent_id, user_id, event.id, data.ticket_type, data.quantity,
            unit_price, subtotal, discount, amount, settings.default_currency,
            data.coupon_code, external_reference, expires_at, ticket_id, qr_payload
        )

        await audit_service.record(
            conn, AuditAction.PAYMENT_CREATE, "payment_intent", intent_id,
            actor_id=user_id,
            after={
                "status": PaymentStatus.PENDING.value,
                "event_id": event.id,
                "ticket_type": data.ticket_type,
                "quantity": data.quantity,
                "amount": amount,
                "coupon_code": data.coupon_code,
                "external_reference": external_reference,
            },
            meta=meta
        )

        if amount <= 0:
            # Fully discounted: nothing to collect, settle right away
            row = await _transition(
                conn, row, PaymentStatus.APPROVED, "free_of_charge",
                actor_id=user_id, meta=meta, action=AuditAction.PAYMENT_CONFIRM
            )
            logger.info(f"Intent {intent_id} fully discounted, approved without provider checkout")

    invalidate_stats()
    if data.coupon_code:
        coupon_service.invalidate_stats(data.coupon_code)

    if amount <= 0:
        return _to_response(row)

    logger.info(f"Intent {intent_id} created: {data.quantity} x {data.ticket_type} for event {data.event_id}, amount {amount}")

    try:
        preference = await provider.create_preference(PreferenceRequest(
            items=[PreferenceItem(
                id=ticket_id,
                title=f"{event.name} - {data.ticket_type}",
                description=f"{data.quantity} x {data.ticket_type}",
                quantity=1,
                unit_price=amount,
                currency=settings.default_currency
            )],
            external_reference=external_reference,
            notification_url=settings.webhook_url,
            expires_at=expires_at,
            payer_email=payer_email,
            back_urls={
                "success": f"{settings.frontend_url}/payment/success",
                "failure": f"{settings.frontend_url}/payment/failure",
                "pending": f"{settings.frontend_url}/payment/pending",
            },
            metadata={"intent_id": intent_id, "ticket_id": ticket_id}
        ))
    except Exception as e:
        cause = e.cause if isinstance(e, PaymentProviderError) else str(e)
        logger.error(f"Provider preference failed for intent {intent_id}: {cause}")
        await _abandon_intent(intent_id, user_id, cause, meta)
        if isinstance(e, ProviderError):
            raise
        raise PaymentProviderError("create_preference", cause)

    async with get_db_connection() as conn:
        row = await conn.fetchrow(f"""
            UPDATE payment_intents
            SET preference_id = $2, redirect_url = $3, updated_at = NOW()
            WHERE id = $1
            RETURNING {INTENT_COLUMNS}
        """, intent_id, preference.id, preference.redirect_url)

    return _to_response(row)


def _to_response(row) -> PaymentIntentResponse:
    return PaymentIntentResponse(
        intent_id=str(row['id']),
        status=row['status'],
        preference_id=row['preference_id'],
        redirect_url=row['redirect_url'],
        external_reference=row['external_reference'],
        ticket_id=row['ticket_id'],
        subtotal=row['subtotal'],
        discount_amount=row['discount_amount'],
        amount=row['amount'],
        currency=row['currency'],
        expires_at=row['provider_expires_at']
    )


async def _abandon_intent(intent_id: str, user_id: str, cause: Optional[str], meta: Optional[RequestMeta]) -> None:
    """Cancel an intent whose preference could not be created and give back what it held"""
    async with get_db_connection() as conn:
        row = await _lock_intent_by_id(conn, intent_id)
        if not row or row['status'] != PaymentStatus.PENDING.value:
            return

        await _transition(
            conn, row, PaymentStatus.CANCELLED, "provider_error",
            actor_id=user_id, meta=meta, action=AuditAction.PAYMENT_FAIL
        )
        await coupon_service.reverse_redemption(conn, intent_id)

    invalidate_stats()
    coupon_service.invalidate_stats()


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

async def _lock_intent_by_id(conn, intent_id: str):
    return await conn.fetchrow(
        f"SELECT {INTENT_COLUMNS} FROM payment_intents WHERE id = $1 FOR UPDATE",
        intent_id
    )


async def lock_intent(conn, provider_payment_id: Optional[str], external_reference: Optional[str]):
    """Find an intent by provider payment id, falling back to the external reference"""
    if provider_payment_id:
        row = await conn.fetchrow(
            f"SELECT {INTENT_COLUMNS} FROM payment_intents WHERE provider_payment_id = $1 FOR UPDATE",
            provider_payment_id
        )
        if row:
            return row

    if external_reference:
        return await conn.fetchrow(
            f"SELECT {INTENT_COLUMNS} FROM payment_intents WHERE external_reference = $1 FOR UPDATE",
            external_reference
        )

    return None


async def _transition(
    conn,
    intent,
    target: Optional[PaymentStatus],
    status_detail: Optional[str],
    actor_id: str,
    meta: Optional[RequestMeta] = None,
    payment: Optional[ProviderPayment] = None,
    action: AuditAction = AuditAction.PAYMENT_STATUS_CHANGE,
    extra: Optional[Dict[str, Any]] = None
):
    """
    Apply a status change to a locked intent row and run its side effects.

    Illegal or out-of-order targets keep the current status; details from the
    provider are still recorded.
    """
    previous = intent['status']
    new_status = previous

    if target is not None:
        try:
            new_status = next_payment_status(previous, target.value).value
        except InvalidTransition:
            if target == PaymentStatus.APPROVED:
                logger.error(f"Approved payment arrived for {previous} intent {intent['id']}, needs manual review")
            else:
                logger.warning(f"Ignoring transition {previous} -> {target.value} for intent {intent['id']}")

    details = dict(extra or {})
    if payment:
        details.update(payment.raw_data)
        details["provider_status"] = payment.status

    extra = extra or {}

    row = await conn.fetchrow(f"""
        UPDATE payment_intents
        SET status = $2,
            status_detail = COALESCE($3, status_detail),
            provider_payment_id = COALESCE(provider_payment_id, $4),
            transaction_amount = COALESCE($5, transaction_amount),
            payment_method = COALESCE($6, payment_method),
            installments = COALESCE($7, installments),
            transaction_details = transaction_details || $8::jsonb,
            refund_id = COALESCE($9, refund_id),
            refunded_amount = COALESCE($10, refunded_amount),
            approved_at = CASE WHEN $2 = 'approved' AND approved_at IS NULL THEN NOW() ELSE approved_at END,
            ticket_is_valid = CASE WHEN $2 IN ('rejected', 'cancelled', 'refunded') THEN false ELSE ticket_is_valid END,
            updated_at = NOW()
        WHERE id = $1
        RETURNING {INTENT_COLUMNS}
    """,
        intent['id'],
        new_status,
        status_detail or (payment.status_detail if payment else None),
        payment.id if payment else None,
        payment.transaction_amount if payment else None,
        payment.payment_method if payment else None,
        payment.installments if payment else None,
        json.dumps(details, default=str),
        extra.get("refund_id"),
        extra.get("refunded_amount")
    )

    if new_status == previous:
        return row

    if is_first_approval(previous, new_status):
        await ticket_service.issue_ticket(conn, row, meta)

    if releases_capacity(previous, new_status):
        await release_capacity(conn, row['event_id'], row['ticket_type'], row['quantity'])

    if new_status == PaymentStatus.REFUNDED.value:
        await ticket_service.mark_refunded(conn, row['ticket_id'], actor_id, meta)

    await audit_service.record(
        conn, action, "payment_intent", str(row['id']),
        actor_id=actor_id,
        before=_state_snapshot(intent),
        after=_state_snapshot(row),
        meta=meta
    )

    logger.info(f"Intent {row['id']} moved {previous} -> {new_status}")
    return row


async def apply_provider_payment(
    conn,
    intent,
    payment: ProviderPayment,
    actor_id: str = "system",
    meta: Optional[RequestMeta] = None,
    action: AuditAction = AuditAction.PAYMENT_STATUS_CHANGE
):
    """Map a provider payment onto a locked intent row"""
    target = get_provider().map_status(payment.status)
    if target is None:
        logger.warning(f"Unmapped provider status '{payment.status}' for intent {intent['id']}, recording details only")
    return await _transition(
        conn, intent, target, payment.status_detail,
        actor_id=actor_id, meta=meta, payment=payment, action=action
    )


# ---------------------------------------------------------------------------
# Buyer operations
# ---------------------------------------------------------------------------

async def get_intent(intent_id: str, user_id: str, is_staff: bool = False) -> PaymentIntent:
    intent_id = _parse_uuid(intent_id)
    async with get_db_connection(use_transaction=False) as conn:
        row = await conn.fetchrow(
            f"SELECT {INTENT_COLUMNS} FROM payment_intents WHERE id = $1",
            intent_id
        )

    if not row:
        raise NotFoundError("Payment intent not found", {"id": intent_id})

    if not is_staff and row['user_id'] != user_id:
        raise AuthorizationError("Access denied")

    return row_to_intent(row)


async def list_user_intents(user_id: str, status: Optional[PaymentStatus] = None, limit: int = 50) -> List[PaymentIntent]:
    async with get_db_connection(use_transaction=False) as conn:
        rows = await conn.fetch(f"""
            SELECT {INTENT_COLUMNS}
            FROM payment_intents
            WHERE user_id = $1 AND ($2::text IS NULL OR status = $2)
            ORDER BY created_at DESC
            LIMIT $3
        """, user_id, status.value if status else None, limit)
        return [row_to_intent(row) for row in rows]


async def search_intents(
    event_id: Optional[str] = None,
    user_id: Optional[str] = None,
    status: Optional[PaymentStatus] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    page: int = 1,
    limit: int = 20
) -> PaymentSearchResult:
    """Staff search over every buyer's intents, newest first. Every filter is optional."""
    created_from, created_to = _as_utc(created_from), _as_utc(created_to)
    if created_from and created_to and created_from > created_to:
        raise ValidationError("start_date must not be after end_date")

    filters = (event_id, user_id, status.value if status else None, created_from, created_to)
    where = """
        WHERE ($1::text IS NULL OR event_id = $1)
          AND ($2::text IS NULL OR user_id = $2)
          AND ($3::text IS NULL OR status = $3)
          AND ($4::timestamptz IS NULL OR created_at >= $4)
          AND ($5::timestamptz IS NULL OR created_at <= $5)
    """

    async with get_db_connection(use_transaction=False) as conn:
        total = await conn.fetchval(f"SELECT COUNT(*) FROM payment_intents {where}", *filters)
        rows = await conn.fetch(f"""
            SELECT {INTENT_COLUMNS}
            FROM payment_intents
            {where}
            ORDER BY created_at DESC
            LIMIT $6 OFFSET $7
        """, *filters, limit, (page - 1) * limit)

    total = total or 0
    return PaymentSearchResult(
        items=[row_to_intent(row) for row in rows],
        page=page,
        limit=limit,
        total=total,
        pages=math.ceil(total / limit)
    )


async def confirm_intent(user_id: str, provider_payment_id: str, meta: Optional[RequestMeta] = None) -> PaymentIntent:
    """
    Buyer-triggered settlement after returning from checkout.
    Same transition path as the webhook, but ownership-checked and errors propagate.
    """
    payment = await get_provider().get_payment(provider_payment_id)
    if not payment:
        raise NotFoundError("Payment not found at provider", {"payment_id": provider_payment_id})

    async with get_db_connection() as conn:
        intent = await lock_intent(conn, payment.id, payment.external_reference)
        if not intent:
            raise NotFoundError("No purchase matches this payment", {"payment_id": provider_payment_id})

        if intent['user_id'] != user_id:
            raise AuthorizationError("This payment belongs to another user")

        row = await apply_provider_payment(
            conn, intent, payment, actor_id=user_id, meta=meta, action=AuditAction.PAYMENT_CONFIRM
        )

    invalidate_stats()
    return row_to_intent(row)


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------

async def refund_intent(
    intent_id: str,
    actor_id: str,
    amount: Optional[Decimal] = None,
    reason: Optional[str] = None,
    meta: Optional[RequestMeta] = None
) -> PaymentIntent:
    """
    Refund an approved purchase whose ticket has not been used.

    The ticket and intent rows stay locked from the eligibility check through
    the provider refund and the status change. A check-in or a second refund
    arriving meanwhile waits, then finds the purchase already refunded.
    """
    intent_id = _parse_uuid(intent_id)

    async with get_db_connection() as conn:
        ticket = await _lock_ticket_for_intent(conn, intent_id)
        intent = await _lock_intent_by_id(conn, intent_id)
        if not intent:
            raise NotFoundError("Payment intent not found", {"id": intent_id})

        _ensure_refundable(intent, ticket['status'] if ticket else None, amount)

        if intent['provider_payment_id']:
            refund = await get_provider().refund(intent['provider_payment_id'], amount)
            refund_id, refunded_amount = refund.refund_id, refund.amount or amount or intent['amount']
        else:
            # Settled without a provider payment (fully discounted)
            refund_id, refunded_amount = None, Decimal("0.00")

        try:
            row = await _transition(
                conn, intent, PaymentStatus.REFUNDED, reason or "refunded_by_staff",
                actor_id=actor_id, meta=meta, action=AuditAction.PAYMENT_REFUND,
                extra={"refund_id": refund_id, "refunded_amount": refunded_amount}
            )
        except Exception as e:
            logger.error(f"Refund {refund_id} issued at provider but intent {intent_id} was not updated: {e}")
            raise

    invalidate_stats()

    if row['status'] != PaymentStatus.REFUNDED.value:
        logger.error(f"Refund {refund_id} issued but intent {intent_id} stayed {row['status']}")
        raise APIError("Refund issued but the purchase could not be updated", 500, {"refund_id": refund_id})

    logger.info(f"Intent {intent_id} refunded by {actor_id} (refund {refund_id}, amount {refunded_amount})")
    return row_to_intent(row)


async def _lock_ticket_for_intent(conn, intent_id: str):
    """Ticket row is locked before the intent row, the same order check-in takes them"""
    return await conn.fetchrow("""
        SELECT t.ticket_id, t.status
        FROM tickets t
        JOIN payment_intents pi ON pi.ticket_id = t.ticket_id
        WHERE pi.id = $1
        FOR UPDATE OF t
    """, intent_id)


def _ensure_refundable(intent, ticket_status: Optional[str], amount: Optional[Decimal]) -> None:
    if intent['status'] != PaymentStatus.APPROVED.value:
        raise ValidationError(f"Cannot refund a payment with status: {intent['status']}")

    if ticket_status == "used" or intent['ticket_used_at'] is not None:
        raise ValidationError("Ticket has already been used, it cannot be refunded")

    if amount is not None and amount > intent['amount']:
        raise ValidationError("Refund amount exceeds the amount paid")


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

async def reconcile_stale_intents(limit: int = 200) -> Dict[str, int]:
    """
    Settle intents still pending past their provider expiration.

    Each intent is asked to the provider first (by payment id, or by external
    reference when no notification ever arrived). Anything still pending or
    unknown is cancelled and its capacity released.
    """
    provider = get_provider()
    summary = {"checked": 0, "updated": 0, "cancelled": 0, "errors": 0}

    async with get_db_connection(use_transaction=False) as conn:
        stale = await conn.fetch("""
            SELECT id, provider_payment_id, external_reference
            FROM payment_intents
            WHERE status = 'pending' AND provider_expires_at < NOW()
            ORDER BY provider_expires_at ASC
            LIMIT $1
        """, limit)

    for candidate in stale:
        summary["checked"] += 1
        try:
            payment = None
            if candidate['provider_payment_id']:
                payment = await provider.get_payment(candidate['provider_payment_id'])
            elif provider.is_configured:
                payment = await provider.find_payment_by_reference(candidate['external_reference'])

            async with get_db_connection() as conn:
                intent = await _lock_intent_by_id(conn, candidate['id'])
                if not intent or intent['status'] != PaymentStatus.PENDING.value:
                    continue

                target = provider.map_status(payment.status) if payment else None
                if target is not None and target != PaymentStatus.PENDING:
                    await apply_provider_payment(conn, intent, payment)
                    summary["updated"] += 1
                else:
                    await _transition(
                        conn, intent, PaymentStatus.CANCELLED, "expired",
                        actor_id="system", payment=payment, action=AuditAction.PAYMENT_EXPIRE
                    )
                    summary["cancelled"] += 1
        except Exception as e:
            summary["errors"] += 1
            logger.error(f"Reconciliation failed for intent {candidate['id']}: {e}")

    if summary["updated"] or summary["cancelled"]:
        invalidate_stats()

    if summary["checked"]:
        logger.info(f"Payment reconciliation: {summary}")
    return summary


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

def invalidate_stats() -> None:
    """Drop cached stats. Called once the change that affects them has committed."""
    _stats_cache.clear()


async def _load_payment_stats(event_id: Optional[str]) -> PaymentStats:
    async with get_db_connection(use_transaction=False) as conn:
        totals = await conn.fetchrow("""
            SELECT COUNT(*) AS total_payments,
                   COALESCE(SUM(amount), 0) AS total_revenue,
                   COALESCE(SUM(quantity), 0) AS total_tickets,
                   COALESCE(SUM(discount_amount), 0) AS total_discounts
            FROM payment_intents
            WHERE status = 'approved' AND ($1::text IS NULL OR event_id = $1)
        """, event_id)

        by_status = await conn.fetch("""
            SELECT status, COUNT(*) AS count
            FROM payment_intents
            WHERE ($1::text IS NULL OR event_id = $1)
            GROUP BY status
        """, event_id)

    total_tickets = totals['total_tickets'] or 0
    average = (Decimal(totals['total_revenue']) / total_tickets).quantize(CENT) if total_tickets else Decimal("0")

    return PaymentStats(
        event_id=event_id,
        total_payments=totals['total_payments'],
        total_revenue=totals['total_revenue'],
        total_tickets=total_tickets,
        average_ticket_price=average,
        total_discounts=totals['total_discounts'],
        by_status={row['status']: row['count'] for row in by_status},
        generated_at=datetime.now(timezone.utc)
    )


async def get_payment_stats(event_id: Optional[str] = None) -> PaymentStats:
    return await _stats_cache.get_or_load(
        f"payments:{event_id or 'all'}",
        lambda: _load_payment_stats(event_id)
    )
