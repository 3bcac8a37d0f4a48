"""
Discount engine and coupon administration.

check_coupon and calculate_discount are pure; everything that touches
current_uses goes through a row lock on the coupon.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List, Mapping, Any, Tuple

import asyncpg

from app.config import settings
from app.database import get_db_connection
from app.core.cache import TTLCache
from app.core.exceptions import CouponInvalid, NotFoundError, ValidationError
from app.core.middleware import RequestMeta
from app.models.audit import AuditAction
from app.models.coupon import (
    Coupon, CouponCreate, CouponType, CouponRedemption, CouponStats, DiscountQuote
)
from app.services import audit_service

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

_stats_cache = TTLCache(settings.stats_cache_ttl_seconds)

COUPON_COLUMNS = """
    id, code, name, description, type, value, max_discount, min_purchase,
    valid_from, valid_until, max_uses, current_uses, max_uses_per_user,
    applicable_events, applicable_categories, applicable_users,
    is_active, created_by, created_at, updated_at
"""


def check_coupon(
    coupon: Mapping[str, Any],
    user_id: str,
    event_id: str,
    event_category: Optional[str],
    amount: Decimal,
    user_uses: int,
    now: datetime
) -> None:
    """
    Validate a coupon for one purchase. Raises CouponInvalid with the first failing rule.
    Order: active, validity window, global cap, per-user cap, minimum purchase, applicability.
    """
    code = coupon['code']

    if not coupon['is_active']:
        raise CouponInvalid("inactive", "Coupon is not active", code)

    if now < coupon['valid_from']:
        raise CouponInvalid("not_yet_valid", "Coupon is not valid yet", code)

    if now > coupon['valid_until']:
        raise CouponInvalid("expired", "Coupon has expired", code)

    if coupon['max_uses'] is not None and coupon['current_uses'] >= coupon['max_uses']:
        raise CouponInvalid("exhausted", "Coupon usage limit reached", code)

    if user_uses >= coupon['max_uses_per_user']:
        raise CouponInvalid("user_limit_reached", "You have already used this coupon the maximum number of times", code)

    min_purchase = coupon['min_purchase'] or Decimal("0")
    if amount < min_purchase:
        raise CouponInvalid("below_minimum", f"Minimum purchase for this coupon is {min_purchase}", code)

    if coupon['applicable_events'] and event_id not in coupon['applicable_events']:
        raise CouponInvalid("not_applicable_event", "Coupon does not apply to this event", code)

    if coupon['applicable_categories'] and event_category not in coupon['applicable_categories']:
        raise CouponInvalid("not_applicable_category", "Coupon does not apply to this event category", code)

    if coupon['applicable_users'] and user_id not in coupon['applicable_users']:
        raise CouponInvalid("not_applicable_user", "Coupon is not available for this user", code)


def calculate_discount(coupon: Mapping[str, Any], amount: Decimal) -> Decimal:
    """
    Discount for `amount`, rounded to cents.

    percentage: amount * value / 100, capped by max_discount when set
    fixed: value, never more than amount
    free_shipping / buy_one_get_one: 0
    """
    coupon_type = coupon['type']
    value = Decimal(coupon['value'])
    amount = Decimal(amount)

    if coupon_type == CouponType.PERCENTAGE.value:
        discount = amount * value / Decimal(100)
        if coupon['max_discount'] is not None:
            discount = min(discount, Decimal(coupon['max_discount']))
    elif coupon_type == CouponType.FIXED.value:
        discount = min(value, amount)
    else:
        discount = Decimal("0")

    return discount.quantize(CENT, rounding=ROUND_HALF_UP)


async def _get_coupon_row(conn, code: str, for_update: bool = False):
    query = f"SELECT {COUPON_COLUMNS} FROM coupons WHERE code = $1"
    if for_update:
        query += " FOR UPDATE"
    return await conn.fetchrow(query, code.strip().upper())


async def _count_user_uses(conn, coupon_id, user_id: str) -> int:
    return await conn.fetchval("""
        SELECT COUNT(*) FROM coupon_redemptions
        WHERE coupon_id = $1 AND user_id = $2 AND reversed_at IS NULL
    """, coupon_id, user_id)


async def create_coupon(data: CouponCreate, actor_id: str, meta: Optional[RequestMeta] = None) -> Coupon:
    """Create a coupon (organizer/admin)"""
    if data.max_discount is not None and data.type != CouponType.PERCENTAGE:
        raise ValidationError("max_discount only applies to percentage coupons")

    async with get_db_connection() as conn:
        try:
            row = await conn.fetchrow(f"""
                INSERT INTO coupons (
                    code, name, description, type, value, max_discount, min_purchase,
                    valid_from, valid_until, max_uses, max_uses_per_user,
                    applicable_events, applicable_categories, applicable_users, created_by
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
                RETURNING {COUPON_COLUMNS}
            """,
                data.code, data.name, data.description, data.type.value, data.value,
                data.max_discount, data.min_purchase, data.valid_from, data.valid_until,
                data.max_uses, data.max_uses_per_user,
                data.applicable_events, data.applicable_categories, data.applicable_users,
                actor_id
            )
        except asyncpg.exceptions.UniqueViolationError:
            raise ValidationError(f"Coupon code '{data.code}' already exists")

        coupon = Coupon(**dict(row))

        await audit_service.record(
            conn, AuditAction.COUPON_CREATE, "coupon", coupon.code,
            actor_id=actor_id, after=coupon.model_dump(), meta=meta
        )

        logger.info(f"Coupon {coupon.code} created by {actor_id}")
        return coupon


async def get_coupon(code: str) -> Coupon:
    async with get_db_connection(use_transaction=False) as conn:
        row = await _get_coupon_row(conn, code)
        if not row:
            raise NotFoundError("Coupon not found", {"code": code.upper()})
        return Coupon(**dict(row))


async def list_active_coupons(event_id: Optional[str] = None) -> List[Coupon]:
    """Coupons active and inside their validity window, optionally usable for one event"""
    async with get_db_connection(use_transaction=False) as conn:
        rows = await conn.fetch(f"""
            SELECT {COUPON_COLUMNS}
            FROM coupons
            WHERE is_active = true
              AND valid_from <= NOW() AND valid_until >= NOW()
              AND (max_uses IS NULL OR current_uses < max_uses)
              AND ($1::text IS NULL OR cardinality(applicable_events) = 0 OR $1 = ANY(applicable_events))
            ORDER BY valid_until ASC
        """, event_id)
        return [Coupon(**dict(row)) for row in rows]


async def list_user_coupons(user_id: str) -> List[Coupon]:
    """
    Coupons the caller can use right now: open to everyone or issued to them,
    inside their window, with uses left globally and for this user.
    """
    async with get_db_connection(use_transaction=False) as conn:
        rows = await conn.fetch(f"""
            SELECT {COUPON_COLUMNS}
            FROM coupons c
            WHERE is_active = true
              AND valid_from <= NOW() AND valid_until >= NOW()
              AND (max_uses IS NULL OR current_uses < max_uses)
              AND (cardinality(applicable_users) = 0 OR $1 = ANY(applicable_users))
              AND (
                  SELECT COUNT(*) FROM coupon_redemptions r
                  WHERE r.coupon_id = c.id AND r.user_id = $1 AND r.reversed_at IS NULL
              ) < max_uses_per_user
            ORDER BY created_at DESC
        """, user_id)
        return [Coupon(**dict(row)) for row in rows]


async def deactivate_coupon(code: str, actor_id: str, meta: Optional[RequestMeta] = None) -> Coupon:
    async with get_db_connection() as conn:
        current = await _get_coupon_row(conn, code, for_update=True)
        if not current:
            raise NotFoundError("Coupon not found", {"code": code.upper()})

        row = await conn.fetchrow(f"""
            UPDATE coupons SET is_active = false, updated_at = NOW()
            WHERE id = $1
            RETURNING {COUPON_COLUMNS}
        """, current['id'])

        await audit_service.record(
            conn, AuditAction.COUPON_DEACTIVATE, "coupon", row['code'],
            actor_id=actor_id,
            before={"is_active": current['is_active']},
            after={"is_active": False},
            meta=meta
        )

    invalidate_stats(row['code'])
    logger.info(f"Coupon {row['code']} deactivated by {actor_id}")
    return Coupon(**dict(row))


async def validate_coupon(code: str, user_id: str, event_id: str, amount: Decimal) -> DiscountQuote:
    """Preview the discount for a purchase without recording a use"""
    now = datetime.now(timezone.utc)
    async with get_db_connection(use_transaction=False) as conn:
        coupon = await _get_coupon_row(conn, code)
        if not coupon:
            raise CouponInvalid("not_found", "Coupon not found", code.upper())

        event = await conn.fetchrow("SELECT id, category FROM events WHERE id = $1", event_id)
        if not event:
            raise NotFoundError("Event not found", {"event_id": event_id})

        user_uses = await _count_user_uses(conn, coupon['id'], user_id)
        check_coupon(coupon, user_id, event_id, event['category'], amount, user_uses, now)

        discount = calculate_discount(coupon, amount)
        return DiscountQuote(
            code=coupon['code'],
            type=coupon['type'],
            original_amount=amount,
            discount=discount,
            final_amount=amount - discount
        )


async def redeem_coupon_for_intent(
    conn,
    code: str,
    user_id: str,
    event_id: str,
    event_category: Optional[str],
    amount: Decimal,
    intent_id: str,
    meta: Optional[RequestMeta] = None
) -> Tuple[Decimal, Decimal]:
    """
    Consume one use of a coupon inside the purchase transaction.

    Returns (discount, final_amount).
    """
    coupon = await _get_coupon_row(conn, code, for_update=True)
    if not coupon:
        raise CouponInvalid("not_found", "Coupon not found", code.upper())

    user_uses = await _count_user_uses(conn, coupon['id'], user_id)
    check_coupon(coupon, user_id, event_id, event_category, amount, user_uses, datetime.now(timezone.utc))

    discount = calculate_discount(coupon, amount)

    result = await conn.execute("""
        UPDATE coupons
        SET current_uses = current_uses + 1, updated_at = NOW()
        WHERE id = $1 AND (max_uses IS NULL OR current_uses < max_uses)
    """, coupon['id'])

    if result != "UPDATE 1":
        raise CouponInvalid("exhausted", "Coupon usage limit reached", coupon['code'])

    await conn.execute("""
        INSERT INTO coupon_redemptions (coupon_id, user_id, intent_id, discount_amount)
        VALUES ($1, $2, $3, $4)
    """, coupon['id'], user_id, intent_id, discount)

    await audit_service.record(
        conn, AuditAction.COUPON_USE, "coupon", coupon['code'],
        actor_id=user_id,
        before={"current_uses": coupon['current_uses']},
        after={"current_uses": coupon['current_uses'] + 1, "intent_id": intent_id, "discount": discount},
        meta=meta
    )

    logger.info(f"Coupon {coupon['code']} redeemed by {user_id} for intent {intent_id}: -{discount}")
    return discount, amount - discount


async def reverse_redemption(conn, intent_id: str) -> None:
    """Give a coupon use back when its purchase never reached checkout"""
    row = await conn.fetchrow("""
        UPDATE coupon_redemptions SET reversed_at = NOW()
        WHERE intent_id = $1 AND reversed_at IS NULL
        RETURNING coupon_id
    """, intent_id)

    if not row:
        return

    await conn.execute("""
        UPDATE coupons
        SET current_uses = GREATEST(current_uses - 1, 0), updated_at = NOW()
        WHERE id = $1
    """, row['coupon_id'])
    logger.info(f"Coupon use reversed for intent {intent_id}")


async def get_coupon_usage(code: str) -> List[CouponRedemption]:
    """Usage ledger of a coupon (newest first)"""
    async with get_db_connection(use_transaction=False) as conn:
        coupon = await _get_coupon_row(conn, code)
        if not coupon:
            raise NotFoundError("Coupon not found", {"code": code.upper()})

        rows = await conn.fetch("""
            SELECT user_id, intent_id, discount_amount, used_at
            FROM coupon_redemptions
            WHERE coupon_id = $1 AND reversed_at IS NULL
            ORDER BY used_at DESC
        """, coupon['id'])
        return [CouponRedemption(**dict(row)) for row in rows]


async def _load_coupon_stats(code: str) -> CouponStats:
    async with get_db_connection(use_transaction=False) as conn:
        coupon = await _get_coupon_row(conn, code)
        if not coupon:
            raise NotFoundError("Coupon not found", {"code": code})

        totals = await conn.fetchrow("""
            SELECT COUNT(DISTINCT user_id) AS unique_users,
                   COALESCE(SUM(discount_amount), 0) AS total_discount
            FROM coupon_redemptions
            WHERE coupon_id = $1 AND reversed_at IS NULL
        """, coupon['id'])

        remaining = None
        if coupon['max_uses'] is not None:
            remaining = max(coupon['max_uses'] - coupon['current_uses'], 0)

        return CouponStats(
            code=coupon['code'],
            current_uses=coupon['current_uses'],
            max_uses=coupon['max_uses'],
            remaining_uses=remaining,
            unique_users=totals['unique_users'],
            total_discount=totals['total_discount'],
            is_active=coupon['is_active'],
            valid_until=coupon['valid_until']
        )


def invalidate_stats(code: Optional[str] = None) -> None:
    """Drop cached stats for one coupon (or all) once the change has committed"""
    if code:
        _stats_cache.invalidate(code.strip().upper())
    else:
        _stats_cache.clear()


async def get_coupon_stats(code: str) -> CouponStats:
    code = code.strip().upper()
    return await _stats_cache.get_or_load(code, lambda: _load_coupon_stats(code))


async def expire_coupons() -> int:
    """Deactivate every active coupon past valid_until. Returns how many were touched."""
    async with get_db_connection() as conn:
        rows = await conn.fetch("""
            UPDATE coupons SET is_active = false, updated_at = NOW()
            WHERE is_active = true AND valid_until < NOW()
            RETURNING code
        """)

        for row in rows:
            await audit_service.record(
                conn, AuditAction.COUPON_EXPIRE, "coupon", row['code'],
                actor_id="system",
                before={"is_active": True},
                after={"is_active": False}
            )

    if rows:
        _stats_cache.clear()
        logger.info(f"Coupon expiration sweep deactivated {len(rows)} coupons")
    return len(rows)
