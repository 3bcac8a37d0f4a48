import secrets
import time
from typing import Optional

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_ticket_id(now_ms: Optional[int] = None) -> str:
    """TKT-MP-<base36 millis>-<random>, uppercase"""
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"TKT-MP-{to_base36(now_ms)}-{secrets.token_hex(4)}".upper()


def generate_external_reference(event_id: str, user_id: str, now_ms: Optional[int] = None) -> str:
    """
    Provider external reference, also the webhook idempotency key.
    The random suffix keeps two intents from the same user in the same millisecond distinct.
    """
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"TKT-{event_id}-{user_id}-{now_ms}-{secrets.token_hex(3)}"
