from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal
from uuid import UUID
from enum import Enum


class PaymentStatus(str, Enum):
    """Estados de la intencion de pago"""
    PENDING = "pending"
    APPROVED = "approved"
    IN_PROCESS = "in_process"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentIntentCreate(BaseModel):
    """Schema para iniciar una compra"""
    event_id: str = Field(..., min_length=1, description="ID del evento")
    ticket_type: str = Field(default="general", min_length=1, max_length=50, description="Tipo de boleta")
    quantity: int = Field(default=1, ge=1, le=10, description="Cantidad de boletas")
    coupon_code: Optional[str] = Field(None, max_length=50, description="Codigo de cupon opcional")

    @field_validator('coupon_code', mode='before')
    @classmethod
    def normalize_coupon_code(cls, v):
        if isinstance(v, str):
            v = v.strip().upper()
            return v or None
        return v


class TicketClaim(BaseModel):
    """Boleta embebida en la intencion (existe desde antes de la aprobacion)"""
    ticket_id: str
    qr_payload: str
    is_valid: bool = True
    used_at: Optional[datetime] = None
    used_by: Optional[str] = None


class PaymentIntent(BaseModel):
    """Intencion de pago completa"""
    id: str
    user_id: str
    event_id: str
    ticket_type: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    discount_amount: Decimal = Decimal("0")
    amount: Decimal
    currency: str
    coupon_code: Optional[str] = None
    status: PaymentStatus
    status_detail: Optional[str] = None
    external_reference: str
    preference_id: Optional[str] = None
    redirect_url: Optional[str] = None
    provider_payment_id: Optional[str] = None
    provider_expires_at: datetime
    payment_method: Optional[str] = None
    installments: Optional[int] = None
    transaction_amount: Optional[Decimal] = None
    transaction_details: Dict[str, Any] = Field(default_factory=dict)
    refund_id: Optional[str] = None
    refunded_amount: Optional[Decimal] = None
    ticket: TicketClaim
    approved_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @field_validator('id', mode='before')
    @classmethod
    def convert_uuid_to_str(cls, v):
        if isinstance(v, UUID):
            return str(v)
        return v

    class Config:
        from_attributes = True


class PaymentIntentResponse(BaseModel):
    """Respuesta al crear la intencion: a donde redirigir al comprador"""
    intent_id: str
    status: PaymentStatus
    preference_id: Optional[str] = None
    redirect_url: Optional[str] = None
    external_reference: str
    ticket_id: str
    subtotal: Decimal
    discount_amount: Decimal
    amount: Decimal
    currency: str
    expires_at: datetime


class PaymentConfirmRequest(BaseModel):
    """Confirmacion manual al volver del checkout"""
    payment_id: str = Field(..., min_length=1, description="ID del pago en Mercado Pago")

    @field_validator('payment_id', mode='before')
    @classmethod
    def convert_to_str(cls, v):
        return str(v) if v is not None else v


class RefundRequest(BaseModel):
    """Solicitud de reembolso (staff)"""
    amount: Optional[Decimal] = Field(None, gt=0, description="Monto parcial; vacio = total")
    reason: Optional[str] = Field(None, max_length=500)


class PaymentStats(BaseModel):
    """Estadisticas de pagos aprobados"""
    event_id: Optional[str] = None
    total_payments: int = 0
    total_revenue: Decimal = Decimal("0")
    total_tickets: int = 0
    average_ticket_price: Decimal = Decimal("0")
    total_discounts: Decimal = Decimal("0")
    by_status: Dict[str, int] = Field(default_factory=dict)
    generated_at: datetime


class WebhookAck(BaseModel):
    """Acuse de recibo al proveedor (siempre 200)"""
    received: bool = True


class PaymentIntentList(BaseModel):
    items: List[PaymentIntent]
    total: int


class PaymentSearchResult(BaseModel):
    """Busqueda paginada de intenciones (staff)"""
    items: List[PaymentIntent]
    page: int
    limit: int
    total: int
    pages: int
