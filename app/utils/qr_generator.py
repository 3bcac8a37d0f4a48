import qrcode
from io import BytesIO
import base64
import binascii
import hashlib
import hmac
import json
from typing import Optional
from datetime import datetime, timezone
from app.config import settings

QR_PROVIDER = "mercadopago"


def _sign(body: str) -> str:
    return hmac.new(
        settings.qr_signing_secret.encode(),
        body.encode(),
        hashlib.sha256
    ).hexdigest()[:16]


def _canonical(claims: dict) -> str:
    return json.dumps(claims, sort_keys=True, separators=(",", ":"))


def generate_ticket_qr_data(
    ticket_id: str,
    event_id: str,
    user_id: str,
    issued_at: Optional[datetime] = None,
    provider: str = QR_PROVIDER
) -> str:
    """
    Build the opaque QR payload for a ticket.

    base64(JSON) carrying ticketId, eventId, userId, issuedAt and provider,
    plus a short HMAC ("sig") so altered payloads are rejected before lookup.
    """
    issued_at = issued_at or datetime.now(timezone.utc)
    claims = {
        "ticketId": ticket_id,
        "eventId": event_id,
        "userId": user_id,
        "issuedAt": issued_at.isoformat(),
        "provider": provider,
    }
    claims["sig"] = _sign(_canonical(claims))
    return base64.b64encode(_canonical(claims).encode()).decode('ascii')


def decode_qr_payload(qr_data: str) -> Optional[dict]:
    """
    Decode and verify a QR payload.
    Returns the claims without the signature, or None if malformed or tampered.
    """
    if not qr_data:
        return None

    try:
        decoded = base64.b64decode(qr_data.strip(), validate=True)
        claims = json.loads(decoded)
    except (binascii.Error, ValueError):
        return None

    if not isinstance(claims, dict):
        return None

    provided_signature = claims.pop("sig", None)
    if not isinstance(provided_signature, str):
        return None

    if not hmac.compare_digest(_sign(_canonical(claims)), provided_signature):
        return None

    if not claims.get("ticketId") or not claims.get("eventId"):
        return None

    return claims


def generate_qr_image(data: str, size: int = 10, border: int = 2) -> bytes:
    """
    Generate QR code image as PNG bytes.
    """
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = BytesIO()
    img.save(buffer, format="PNG")
    buffer.seek(0)

    return buffer.getvalue()

