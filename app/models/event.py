from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum


class TicketType(str, Enum):
    """Tipos de boleta con precio por defecto"""
    GENERAL = "general"
    VIP = "vip"
    EARLY_BIRD = "early_bird"
    STUDENT = "student"
    SENIOR = "senior"


# Precio usado cuando el inventario del evento no define uno
DEFAULT_TICKET_PRICES = {
    TicketType.GENERAL.value: Decimal("25000"),
    TicketType.VIP.value: Decimal("50000"),
    TicketType.EARLY_BIRD.value: Decimal("20000"),
    TicketType.STUDENT.value: Decimal("15000"),
    TicketType.SENIOR.value: Decimal("15000"),
}


class Event(BaseModel):
    """Evento (solo lectura, lo administra el catalogo)"""
    id: str
    name: str
    category: Optional[str] = None
    location: Optional[str] = None
    event_date: datetime
    end_date: Optional[datetime] = None
    organizer_id: Optional[str] = None
    is_active: bool = True

    class Config:
        from_attributes = True


class EventAvailability(BaseModel):
    """Disponibilidad de un tipo de boleta para un evento"""
    event_id: str
    ticket_type: str
    capacity: int
    sold: int = Field(..., description="Cupos comprometidos (pending, in_process, approved)")
    available: int
    requested: int = 1
    can_purchase: bool
    unit_price: Decimal
    event_date: Optional[datetime] = None
