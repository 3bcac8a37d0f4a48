"""
Payments Router - Mercado Pago Checkout Pro

Flow:
1. POST /payments/intent reserves capacity and returns the checkout redirect
2. Mercado Pago notifies POST /payments/webhook (always acknowledged)
3. The buyer may force a status refresh with POST /payments/confirm
"""
from fastapi import APIRouter, Depends, Query, Request
from datetime import datetime
from typing import Optional
from app.core.dependencies import get_authenticated_user, require_staff, AuthenticatedUser
from app.core.middleware import get_request_meta
from app.models.payment import (
    PaymentIntent, PaymentIntentCreate, PaymentIntentResponse, PaymentIntentList,
    PaymentConfirmRequest, RefundRequest, PaymentStats, PaymentStatus, PaymentSearchResult, WebhookAck
)
from app.services import payments_service, webhook_service

router = APIRouter()


# ============================================================================
# WEBHOOK ENDPOINT (No auth - validated by signature)
# ============================================================================

@router.post("/webhook", response_model=WebhookAck)
async def payment_webhook(request: Request):
    """
    Mercado Pago notification endpoint.

    Accepts both webhook (`{"type": "payment", "data": {"id": ...}}`) and IPN
    (`?topic=payment&id=...`) formats. Always returns 200, even for unknown
    payments or invalid signatures, so the provider stops retrying.
    """
    body = await request.body()
    await webhook_service.handle_webhook(
        dict(request.headers),
        body,
        dict(request.query_params),
        get_request_meta(request)
    )
    return WebhookAck()


# ============================================================================
# AUTHENTICATED ENDPOINTS
# ============================================================================

@router.post("/intent", response_model=PaymentIntentResponse, status_code=201)
async def create_payment_intent(
    data: PaymentIntentCreate,
    user: AuthenticatedUser = Depends(get_authenticated_user)
):
    """
    Create a payment intent for an event ticket.

    **Request Body:**
    - `event_id`: Event to buy for
    - `ticket_type`: general, vip, early_bird, student, senior
    - `quantity`: 1 to 10
    - `coupon_code`: Optional discount code

    **Returns:**
    - `redirect_url`: Mercado Pago checkout URL
    - `ticket_id`: Ticket identity reserved for this purchase
    - `amount`: Final amount after discount

    Fails with 409 when capacity is insufficient (details carry `available`
    and `requested`) and 400 with a specific `reason` for coupon failures.
    """
    return await payments_service.create_intent(user.user_id, data, user.email, user.meta)


@router.get("/mine", response_model=PaymentIntentList)
async def list_my_payments(
    status: Optional[PaymentStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    user: AuthenticatedUser = Depends(get_authenticated_user)
):
    """List the caller's payment intents, newest first"""
    intents = await payments_service.list_user_intents(user.user_id, status, limit)
    return PaymentIntentList(items=intents, total=len(intents))


@router.get("/stats", response_model=PaymentStats)
async def payment_stats(
    event_id: Optional[str] = Query(None),
    user: AuthenticatedUser = Depends(require_staff)
):
    """Approved payment totals (staff only, cached)"""
    return await payments_service.get_payment_stats(event_id)


@router.get("/search", response_model=PaymentSearchResult)
async def search_payments(
    event_id: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    status: Optional[PaymentStatus] = Query(None),
    start_date: Optional[datetime] = Query(None, description="Created at or after"),
    end_date: Optional[datetime] = Query(None, description="Created at or before"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: AuthenticatedUser = Depends(require_staff)
):
    """Search payment intents across buyers (staff only), newest first"""
    return await payments_service.search_intents(
        event_id, user_id, status, start_date, end_date, page, limit
    )


@router.post("/confirm", response_model=PaymentIntent)
async def confirm_payment(
    data: PaymentConfirmRequest,
    user: AuthenticatedUser = Depends(get_authenticated_user)
):
    """
    Refresh a payment after the checkout redirect.

    Mercado Pago appends `payment_id` to the back URL; the frontend forwards
    it here so the ticket is issued even if the webhook is delayed.
    """
    return await payments_service.confirm_intent(user.user_id, data.payment_id, user.meta)


@router.get("/{intent_id}", response_model=PaymentIntent)
async def get_payment_intent(
    intent_id: str,
    user: AuthenticatedUser = Depends(get_authenticated_user)
):
    """Get one payment intent. Buyers only see their own."""
    return await payments_service.get_intent(intent_id, user.user_id, user.is_staff)


@router.post("/{intent_id}/refund", response_model=PaymentIntent)
async def refund_payment(
    intent_id: str,
    data: RefundRequest,
    user: AuthenticatedUser = Depends(require_staff)
):
    """
    Refund an approved payment (staff only).

    The ticket must not have been checked in. Omit `amount` for a full refund.
    """
    return await payments_service.refund_intent(intent_id, user.user_id, data.amount, data.reason, user.meta)
