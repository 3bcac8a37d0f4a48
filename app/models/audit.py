from pydantic import BaseModel
from typing import Optional, Any, Dict
from datetime import datetime
from enum import Enum


class AuditAction(str, Enum):
    """Acciones auditadas, asignadas explicitamente en cada operacion"""
    PAYMENT_CREATE = "PAYMENT_CREATE"
    PAYMENT_CONFIRM = "PAYMENT_CONFIRM"
    PAYMENT_STATUS_CHANGE = "PAYMENT_STATUS_CHANGE"
    PAYMENT_FAIL = "PAYMENT_FAIL"
    PAYMENT_REFUND = "PAYMENT_REFUND"
    PAYMENT_EXPIRE = "PAYMENT_EXPIRE"
    TICKET_ISSUE = "TICKET_ISSUE"
    TICKET_CHECK_IN = "TICKET_CHECK_IN"
    TICKET_DOWNLOAD = "TICKET_DOWNLOAD"
    TICKET_REFUND = "TICKET_REFUND"
    TRANSFER_CREATE = "TRANSFER_CREATE"
    TRANSFER_ACCEPT = "TRANSFER_ACCEPT"
    TRANSFER_REJECT = "TRANSFER_REJECT"
    TRANSFER_CANCEL = "TRANSFER_CANCEL"
    TRANSFER_EXPIRE = "TRANSFER_EXPIRE"
    COUPON_CREATE = "COUPON_CREATE"
    COUPON_USE = "COUPON_USE"
    COUPON_DEACTIVATE = "COUPON_DEACTIVATE"
    COUPON_EXPIRE = "COUPON_EXPIRE"


class AuditSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AuditRecord(BaseModel):
    """Registro de auditoria (solo escritura)"""
    id: int
    actor_id: Optional[str] = None
    action: str
    resource_type: str
    resource_id: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None
    success: bool = True
    error_message: Optional[str] = None
    severity: AuditSeverity
    created_at: datetime

    class Config:
        from_attributes = True
