"""
Explicit state transitions for payment intents, tickets and transfers.

Every function here is pure: it takes the current state and returns the next
state (or raises InvalidTransition). Services call these before writing, so no
status change happens implicitly on save.
"""
from datetime import datetime
from typing import Any, Mapping, Optional, Tuple

from app.core.exceptions import InvalidTransition
from app.models.payment import PaymentStatus
from app.models.ticket import TicketStatus
from app.models.transfer import TransferStatus


PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {
        PaymentStatus.APPROVED,
        PaymentStatus.IN_PROCESS,
        PaymentStatus.REJECTED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.IN_PROCESS: {
        PaymentStatus.APPROVED,
        PaymentStatus.REJECTED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.APPROVED: {PaymentStatus.REFUNDED},
    PaymentStatus.REJECTED: set(),
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.REFUNDED: set(),
}

# Statuses whose quantity is held against event capacity
CAPACITY_HOLDING_STATUSES = {
    PaymentStatus.PENDING,
    PaymentStatus.IN_PROCESS,
    PaymentStatus.APPROVED,
}

TICKET_TRANSITIONS = {
    TicketStatus.PENDING: {TicketStatus.CONFIRMED, TicketStatus.CANCELLED},
    TicketStatus.CONFIRMED: {
        TicketStatus.USED,
        TicketStatus.CANCELLED,
        TicketStatus.REFUNDED,
        TicketStatus.TRANSFERRED,
    },
    TicketStatus.USED: set(),
    TicketStatus.CANCELLED: set(),
    TicketStatus.TRANSFERRED: set(),
    TicketStatus.REFUNDED: set(),
}

TRANSFER_TRANSITIONS = {
    TransferStatus.PENDING: {
        TransferStatus.ACCEPTED,
        TransferStatus.REJECTED,
        TransferStatus.CANCELLED,
        TransferStatus.EXPIRED,
    },
    TransferStatus.ACCEPTED: set(),
    TransferStatus.REJECTED: set(),
    TransferStatus.CANCELLED: set(),
    TransferStatus.EXPIRED: set(),
}


def next_payment_status(current: str, target: str) -> PaymentStatus:
    """
    Resolve the status a payment intent should move to.

    Returns the target when the move is legal, the current status when both are
    equal (replayed notification), and raises InvalidTransition otherwise.
    """
    current_status = PaymentStatus(current)
    target_status = PaymentStatus(target)
    if current_status == target_status:
        return current_status
    if target_status not in PAYMENT_TRANSITIONS[current_status]:
        raise InvalidTransition("payment", current_status.value, target_status.value)
    return target_status


def is_first_approval(previous: str, new: str) -> bool:
    return new == PaymentStatus.APPROVED.value and previous != PaymentStatus.APPROVED.value


def releases_capacity(previous: str, new: str) -> bool:
    """True when a transition drops an intent out of the capacity-holding set"""
    return (
        PaymentStatus(previous) in CAPACITY_HOLDING_STATUSES
        and PaymentStatus(new) not in CAPACITY_HOLDING_STATUSES
    )


def next_ticket_status(current: str, target: str) -> TicketStatus:
    current_status = TicketStatus(current)
    target_status = TicketStatus(target)
    if target_status not in TICKET_TRANSITIONS[current_status]:
        raise InvalidTransition("ticket", current_status.value, target_status.value)
    return target_status


def next_transfer_status(current: str, target: str) -> TransferStatus:
    current_status = TransferStatus(current)
    target_status = TransferStatus(target)
    if target_status not in TRANSFER_TRANSITIONS[current_status]:
        raise InvalidTransition("transfer", current_status.value, target_status.value)
    return target_status


def is_transfer_expired(transfer: Mapping[str, Any], now: datetime) -> bool:
    return transfer['status'] == TransferStatus.PENDING.value and transfer['expires_at'] <= now


def evaluate_ticket(ticket: Mapping[str, Any], now: datetime) -> Tuple[bool, Optional[str]]:
    """
    Decide whether a ticket admits entry right now.

    Returns (valid, reason). Reasons: "already used", "cancelled", "refunded",
    "transferred", "not confirmed", "expired".
    """
    status = ticket['status']
    if status == TicketStatus.USED.value:
        return False, "already used"
    if status == TicketStatus.CANCELLED.value:
        return False, "cancelled"
    if status == TicketStatus.REFUNDED.value:
        return False, "refunded"
    if status == TicketStatus.TRANSFERRED.value:
        return False, "transferred"
    if status != TicketStatus.CONFIRMED.value:
        return False, "not confirmed"
    expires_at = ticket.get('expires_at')
    if expires_at is not None and expires_at <= now:
        return False, "expired"
    return True, None
