from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Literal
from datetime import datetime
from decimal import Decimal
from uuid import UUID
from enum import Enum


class TransferStatus(str, Enum):
    """Estados de transferencia"""
    PENDING = "pending"      # Esperando aceptacion
    ACCEPTED = "accepted"    # Aceptada por destinatario
    REJECTED = "rejected"    # Rechazada por destinatario
    CANCELLED = "cancelled"  # Cancelada por remitente
    EXPIRED = "expired"      # Expiro sin respuesta


class TransferType(str, Enum):
    """Tipos de transferencia"""
    GIFT = "gift"
    SALE = "sale"
    EXCHANGE = "exchange"


class TransferDirection(str, Enum):
    SENT = "sent"
    RECEIVED = "received"
    ALL = "all"


class TransferHistoryEntry(BaseModel):
    """Entrada del historial de la oferta"""
    action: str
    actor_id: Optional[str] = None
    at: datetime
    note: Optional[str] = None


class TransferCreate(BaseModel):
    """Request para ofrecer una boleta a otro usuario"""
    ticket_id: str = Field(..., min_length=1, description="ID de la boleta")
    to_user_id: str = Field(..., min_length=1, description="Usuario destinatario")
    transfer_type: TransferType = Field(default=TransferType.GIFT)
    price: Optional[Decimal] = Field(None, ge=0, description="Precio si es venta")
    message: Optional[str] = Field(None, max_length=500, description="Mensaje opcional")

    @model_validator(mode='after')
    def check_price(self):
        if self.transfer_type == TransferType.SALE and self.price is None:
            raise ValueError("price is required for sale transfers")
        return self


class TransferRespondRequest(BaseModel):
    """Respuesta del destinatario"""
    action: Literal["accept", "reject"]
    message: Optional[str] = Field(None, max_length=500, description="Mensaje del comprador al aceptar")
    reason: Optional[str] = Field(None, max_length=500, description="Motivo del rechazo")


class TicketTransfer(BaseModel):
    """Oferta de transferencia"""
    id: str
    ticket_id: str
    from_user_id: str
    to_user_id: str
    status: TransferStatus
    transfer_type: TransferType
    transfer_price: Decimal = Decimal("0")
    platform_fee: Decimal = Decimal("0")
    seller_message: Optional[str] = None
    buyer_message: Optional[str] = None
    rejection_reason: Optional[str] = None
    expires_at: datetime
    history: List[TransferHistoryEntry] = Field(default_factory=list)
    resolved_at: Optional[datetime] = None
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
