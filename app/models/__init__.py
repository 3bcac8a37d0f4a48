# Models module for MainEvents ticketing API
from app.models.event import (
    Event, EventAvailability, TicketType, DEFAULT_TICKET_PRICES
)
from app.models.payment import (
    PaymentIntent, PaymentIntentCreate, PaymentIntentResponse, PaymentIntentList,
    PaymentConfirmRequest, RefundRequest, PaymentStats, TicketClaim,
    WebhookAck, PaymentStatus
)
from app.models.ticket import (
    Ticket, TicketStatus, TicketValidation, TicketTransferEntry, TicketDownload,
    QRValidationRequest, CheckInRequest, QRCheckInRequest, CheckInResult
)
from app.models.transfer import (
    TicketTransfer, TransferCreate, TransferRespondRequest, TransferHistoryEntry,
    TransferStatus, TransferType, TransferDirection
)
from app.models.coupon import (
    Coupon, CouponCreate, CouponRedeemRequest, CouponRedemption, CouponStats,
    DiscountQuote, CouponType
)
from app.models.audit import (
    AuditRecord, AuditAction, AuditSeverity
)
