from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
from uuid import UUID
from enum import Enum


class TicketStatus(str, Enum):
    """Estados de la boleta"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    USED = "used"
    CANCELLED = "cancelled"
    TRANSFERRED = "transferred"
    REFUNDED = "refunded"


class TicketTransferEntry(BaseModel):
    """Cambio de titular registrado en la boleta"""
    transfer_id: Optional[str] = None
    from_user_id: str
    to_user_id: str
    reason: Optional[str] = None
    transferred_at: datetime


class TicketDownload(BaseModel):
    """Intento de descarga (exitoso o no)"""
    user_id: Optional[str] = None
    downloaded_at: datetime
    success: bool
    error: Optional[str] = None


class Ticket(BaseModel):
    """Boleta emitida"""
    ticket_id: str
    intent_id: str
    event_id: str
    holder_id: str
    original_user_id: str
    ticket_type: str
    quantity: int
    unit_price: Decimal
    total_amount: Decimal
    status: TicketStatus
    qr_payload: str
    checked_in_at: Optional[datetime] = None
    checked_in_by: Optional[str] = None
    check_in_location: Optional[str] = None
    check_in_device: Optional[str] = None
    transfer_history: List[TicketTransferEntry] = Field(default_factory=list)
    download_history: List[TicketDownload] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    # Info del evento
    event_name: Optional[str] = None
    event_date: Optional[datetime] = None

    @field_validator('intent_id', mode='before')
    @classmethod
    def convert_uuid_to_str(cls, v):
        if isinstance(v, UUID):
            return str(v)
        return v

    class Config:
        from_attributes = True


class TicketValidation(BaseModel):
    """Resultado de validar una boleta"""
    valid: bool
    reason: Optional[str] = None
    ticket_id: Optional[str] = None
    event_id: Optional[str] = None
    status: Optional[TicketStatus] = None
    holder_id: Optional[str] = None
    ticket_type: Optional[str] = None
    quantity: Optional[int] = None
    checked_in_at: Optional[datetime] = None
    checked_in_by: Optional[str] = None


class QRValidationRequest(BaseModel):
    """Request para validar un QR escaneado"""
    qr_payload: str = Field(..., min_length=1, description="Contenido escaneado del QR")
    event_id: Optional[str] = Field(None, description="Evento donde se escanea")


class CheckInRequest(BaseModel):
    """Metadatos del check-in en puerta"""
    location: Optional[str] = Field(None, max_length=255, description="Puerta o acceso")
    device: Optional[str] = Field(None, max_length=255, description="Dispositivo del staff")


class QRCheckInRequest(CheckInRequest):
    qr_payload: str = Field(..., min_length=1)
    event_id: Optional[str] = None


class CheckInResult(BaseModel):
    """Resultado de un check-in exitoso"""
    ticket_id: str
    event_id: str
    holder_id: str
    status: TicketStatus
    checked_in_at: datetime
    checked_in_by: str
    location: Optional[str] = None
    device: Optional[str] = None


class UserTicketStats(BaseModel):
    """Resumen de boletas de un usuario"""
    user_id: str
    total_tickets: int = 0
    confirmed_tickets: int = 0
    used_tickets: int = 0
    refunded_tickets: int = 0
    transferred_tickets: int = Field(0, description="Compradas por el usuario y hoy en manos de otro titular")
    total_amount: Decimal = Decimal("0")
