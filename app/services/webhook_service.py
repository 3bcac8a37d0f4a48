"""
Inbound provider notifications.

handle_webhook never raises: the provider always gets a 200 so it does not
keep retrying a notification we cannot use. Unknown payments, unknown
references, bad signatures and malformed bodies are logged and dropped.
"""
import json
import logging
from typing import Dict, Optional

from app.database import get_db_connection
from app.core.middleware import RequestMeta
from app.models.payment import PaymentIntent
from app.services.gateways import get_provider
from app.services.payments_service import lock_intent, apply_provider_payment, row_to_intent, invalidate_stats

logger = logging.getLogger(__name__)

PAYMENT_TOPICS = {"payment", "payment.created", "payment.updated"}


def extract_payment_id(payload: dict, query_params: Dict[str, str]) -> Optional[str]:
    """
    Find the payment id in either notification format:
    webhooks ({"type": "payment", "data": {"id": ...}}) or IPN (?topic=payment&id=...).
    Returns None for non-payment topics.
    """
    topic = (
        payload.get("type")
        or payload.get("topic")
        or query_params.get("type")
        or query_params.get("topic")
        or (payload.get("action") or "").split(".")[0]
    )
    if topic not in PAYMENT_TOPICS:
        return None

    payment_id = (
        (payload.get("data") or {}).get("id")
        or query_params.get("data.id")
        or query_params.get("id")
    )
    return str(payment_id) if payment_id else None


async def handle_notification(provider_payment_id: str, meta: Optional[RequestMeta] = None) -> Optional[PaymentIntent]:
    """
    Fetch the payment from the provider and apply it to the matching intent.
    Returns None when the payment or its intent is unknown.
    """
    payment = await get_provider().get_payment(provider_payment_id)
    if not payment:
        logger.warning(f"Webhook for payment {provider_payment_id} unknown to provider, discarding")
        return None

    async with get_db_connection() as conn:
        intent = await lock_intent(conn, payment.id, payment.external_reference)
        if not intent:
            logger.warning(
                f"Webhook for payment {payment.id} (ref {payment.external_reference}) matches no intent, discarding"
            )
            return None

        row = await apply_provider_payment(conn, intent, payment, actor_id="provider", meta=meta)

    invalidate_stats()
    return row_to_intent(row)


async def handle_webhook(
    headers: Dict[str, str],
    body: bytes,
    query_params: Optional[Dict[str, str]] = None,
    meta: Optional[RequestMeta] = None
) -> None:
    """Acknowledge-always entry point for provider notifications"""
    query_params = query_params or {}
    headers = {k.lower(): v for k, v in headers.items()}

    try:
        provider = get_provider()
        if not provider.verify_webhook(headers, body, query_params):
            logger.warning("Webhook signature verification failed, discarding")
            return

        try:
            payload = json.loads(body) if body else {}
        except ValueError:
            logger.warning("Webhook body is not valid JSON, discarding")
            return

        if not isinstance(payload, dict):
            logger.warning("Webhook body is not an object, discarding")
            return

        payment_id = extract_payment_id(payload, query_params)
        if not payment_id:
            logger.info(f"Ignoring webhook topic {payload.get('type') or payload.get('topic') or query_params.get('topic')}")
            return

        intent = await handle_notification(payment_id, meta)
        if intent:
            logger.info(f"Webhook for payment {payment_id} applied to intent {intent.id} ({intent.status.value})")

    except Exception as e:
        logger.error(f"Webhook processing failed: {e}", exc_info=True)
