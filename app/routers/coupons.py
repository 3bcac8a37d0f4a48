from fastapi import APIRouter, Depends, Query
from typing import List, Optional
from app.core.dependencies import get_authenticated_user, require_staff, AuthenticatedUser
from app.models.coupon import (
    Coupon, CouponCreate, CouponRedeemRequest, DiscountQuote, CouponRedemption, CouponStats
)
from app.services import coupon_service

router = APIRouter()


@router.post("", response_model=Coupon, status_code=201)
async def create_coupon(
    data: CouponCreate,
    user: AuthenticatedUser = Depends(require_staff)
):
    """
    Create a discount coupon (staff only).

    **Types:** `percentage` (value ≤ 100, optional `max_discount`) and
    `fixed`. `free_shipping` and `buy_one_get_one` can be stored but grant
    no discount.
    """
    return await coupon_service.create_coupon(data, user.user_id, user.meta)


@router.get("/active", response_model=List[Coupon])
async def list_active_coupons(
    event_id: Optional[str] = Query(None),
    user: AuthenticatedUser = Depends(require_staff)
):
    return await coupon_service.list_active_coupons(event_id)


@router.get("/mine", response_model=List[Coupon])
async def list_my_coupons(
    user: AuthenticatedUser = Depends(get_authenticated_user)
):
    """Coupons the caller can apply right now, newest first"""
    return await coupon_service.list_user_coupons(user.user_id)


@router.post("/redeem", response_model=DiscountQuote)
async def redeem_coupon(
    data: CouponRedeemRequest,
    user: AuthenticatedUser = Depends(get_authenticated_user)
):
    """
    Preview the discount a coupon grants on an amount.

    No use is recorded here; the coupon is consumed when the payment intent
    is created. Failures return 400 with a specific `reason`
    (expired, exhausted, not_applicable_event, ...).
    """
    return await coupon_service.validate_coupon(data.code, user.user_id, data.event_id, data.amount)


@router.get("/{code}", response_model=Coupon)
async def get_coupon(
    code: str,
    user: AuthenticatedUser = Depends(require_staff)
):
    return await coupon_service.get_coupon(code)


@router.post("/{code}/deactivate", response_model=Coupon)
async def deactivate_coupon(
    code: str,
    user: AuthenticatedUser = Depends(require_staff)
):
    return await coupon_service.deactivate_coupon(code, user.user_id, user.meta)


@router.get("/{code}/usage", response_model=List[CouponRedemption])
async def coupon_usage(
    code: str,
    user: AuthenticatedUser = Depends(require_staff)
):
    return await coupon_service.get_coupon_usage(code)


@router.get("/{code}/stats", response_model=CouponStats)
async def coupon_stats(
    code: str,
    user: AuthenticatedUser = Depends(require_staff)
):
    return await coupon_service.get_coupon_stats(code)
