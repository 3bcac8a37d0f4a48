from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
from uuid import UUID
from enum import Enum


class CouponType(str, Enum):
    """Tipos de cupon"""
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    FREE_SHIPPING = "free_shipping"      # reservado, descuento 0
    BUY_ONE_GET_ONE = "buy_one_get_one"  # reservado, descuento 0


class CouponCreate(BaseModel):
    """Schema para crear un cupon"""
    code: str = Field(..., min_length=3, max_length=50, description="Codigo unico")
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    type: CouponType
    value: Decimal = Field(..., gt=0)
    max_discount: Optional[Decimal] = Field(None, gt=0)
    min_purchase: Decimal = Field(default=Decimal("0"), ge=0)
    valid_from: datetime
    valid_until: datetime
    max_uses: Optional[int] = Field(None, ge=1)
    max_uses_per_user: int = Field(default=1, ge=1)
    applicable_events: List[str] = Field(default_factory=list)
    applicable_categories: List[str] = Field(default_factory=list)
    applicable_users: List[str] = Field(default_factory=list)

    @field_validator('code', mode='before')
    @classmethod
    def uppercase_code(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @model_validator(mode='after')
    def check_rules(self):
        if self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        if self.type == CouponType.PERCENTAGE and self.value > 100:
            raise ValueError("percentage value cannot exceed 100")
        return self


class Coupon(BaseModel):
    """Cupon completo"""
    id: str
    code: str
    name: str
    description: Optional[str] = None
    type: CouponType
    value: Decimal
    max_discount: Optional[Decimal] = None
    min_purchase: Decimal = Decimal("0")
    valid_from: datetime
    valid_until: datetime
    max_uses: Optional[int] = None
    current_uses: int = 0
    max_uses_per_user: int = 1
    applicable_events: List[str] = Field(default_factory=list)
    applicable_categories: List[str] = Field(default_factory=list)
    applicable_users: List[str] = Field(default_factory=list)
    is_active: bool = True
    created_by: str
    created_at: datetime
    updated_at: datetime

    @field_validator('id', mode='before')
    @classmethod
    def convert_uuid_to_str(cls, v):
        if isinstance(v, UUID):
            return str(v)
        return v

    @field_validator('applicable_events', 'applicable_categories', 'applicable_users', mode='before')
    @classmethod
    def none_to_list(cls, v):
        return list(v) if v else []

    class Config:
        from_attributes = True


class CouponRedeemRequest(BaseModel):
    """Previsualizacion del descuento (no consume usos)"""
    code: str = Field(..., min_length=1, max_length=50)
    event_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)

    @field_validator('code', mode='before')
    @classmethod
    def uppercase_code(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v


class DiscountQuote(BaseModel):
    """Descuento calculado para un monto"""
    code: str
    type: CouponType
    original_amount: Decimal
    discount: Decimal
    final_amount: Decimal


class CouponRedemption(BaseModel):
    """Registro del ledger de usos"""
    user_id: str
    intent_id: Optional[str] = None
    discount_amount: Decimal
    used_at: datetime

    @field_validator('intent_id', mode='before')
    @classmethod
    def convert_uuid_to_str(cls, v):
        if isinstance(v, UUID):
            return str(v)
        return v


class CouponStats(BaseModel):
    code: str
    current_uses: int
    max_uses: Optional[int] = None
    remaining_uses: Optional[int] = None
    unique_users: int
    total_discount: Decimal
    is_active: bool
    valid_until: datetime
