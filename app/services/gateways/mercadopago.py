"""
Mercado Pago Payment Provider (mercadopago.com)

Checkout Pro flow:
1. Create a preference with the ticket line item and external_reference
2. Redirect the buyer to init_point (sandbox_init_point outside production)
3. Mercado Pago notifies notification_url with the payment id
4. The payment is fetched with GET /v1/payments/{id}

Documentation: https://www.mercadopago.com.ar/developers/en/docs/checkout-pro/overview
API Reference: https://www.mercadopago.com.ar/developers/en/reference/preferences/_checkout_preferences/post
"""
import json
import logging
import hashlib
import hmac
import uuid
import httpx
from typing import Dict, Any, Optional
from decimal import Decimal

from app.config import settings
from app.core.exceptions import PaymentProviderError
from app.models.payment import PaymentStatus
from app.services.gateways.base import (
    PaymentProvider, PreferenceRequest, ProviderPreference, ProviderPayment, ProviderRefund
)

logger = logging.getLogger(__name__)

# Mercado Pago API Configuration
MERCADOPAGO_API_BASE_URL = "https://api.mercadopago.com"


class MercadoPagoProvider(PaymentProvider):
    """Mercado Pago provider implementation using Checkout Pro"""

    def __init__(
        self,
        access_token: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        environment: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.access_token = access_token if access_token is not None else settings.mercadopago_access_token
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.mercadopago_webhook_secret
        self.environment = environment or settings.mercadopago_environment
        self.base_url = MERCADOPAGO_API_BASE_URL
        self._transport = transport

    @property
    def name(self) -> str:
        return "mercadopago"

    @property
    def is_configured(self) -> bool:
        return bool(self.access_token)

    def _get_headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        """Get headers for Mercado Pago API requests"""
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=30.0, transport=self._transport)

    async def create_preference(self, data: PreferenceRequest) -> ProviderPreference:
        """
        Create a checkout preference with Mercado Pago.

        API Docs: https://www.mercadopago.com.ar/developers/en/reference/preferences/_checkout_preferences/post
        """
        payload: Dict[str, Any] = {
            "items": [
                {
                    "id": item.id,
                    "title": item.title,
                    "description": item.description or item.title,
                    "quantity": item.quantity,
                    "currency_id": item.currency,
                    "unit_price": float(item.unit_price)
                }
                for item in data.items
            ],
            "external_reference": data.external_reference,
            "notification_url": data.notification_url,
            "auto_return": "approved",
            "binary_mode": False,  # Allow pending payments
            "statement_descriptor": "MAINEVENTS",
            "expires": True,
            "expiration_date_to": data.expires_at.isoformat(timespec="milliseconds"),
        }

        if data.payer_email:
            payload["payer"] = {"email": data.payer_email}

        if data.back_urls:
            payload["back_urls"] = data.back_urls

        if data.metadata:
            payload["metadata"] = data.metadata

        try:
            async with self._client() as client:
                response = await client.post(
                    "/checkout/preferences",
                    json=payload,
                    headers=self._get_headers(idempotency_key=data.external_reference)
                )
        except httpx.RequestError as e:
            logger.error(f"Mercado Pago API request failed: {e}")
            raise PaymentProviderError("create_preference", str(e))

        if response.status_code not in (200, 201):
            logger.error(f"Mercado Pago API error creating preference: {response.status_code} - {response.text[:500]}")
            raise PaymentProviderError("create_preference", f"HTTP {response.status_code}")

        response_data = response.json()

        if self.environment == "production":
            redirect_url = response_data.get("init_point")
        else:
            redirect_url = response_data.get("sandbox_init_point") or response_data.get("init_point")

        preference_id = response_data.get("id")
        if not preference_id or not redirect_url:
            logger.error(f"Mercado Pago preference response missing id or init_point: {response_data}")
            raise PaymentProviderError("create_preference", "incomplete response")

        logger.info(f"Created Mercado Pago preference: {preference_id}")

        return ProviderPreference(
            id=str(preference_id),
            redirect_url=redirect_url,
            expires_at=data.expires_at
        )

    async def get_payment(self, payment_id: str) -> Optional[ProviderPayment]:
        """
        Query a payment from Mercado Pago.

        API Docs: https://www.mercadopago.com.ar/developers/en/reference/payments/_payments_id/get
        """
        try:
            async with self._client() as client:
                response = await client.get(
                    f"/v1/payments/{payment_id}",
                    headers=self._get_headers()
                )
        except httpx.RequestError as e:
            logger.error(f"Failed to query Mercado Pago payment {payment_id}: {e}")
            raise PaymentProviderError("get_payment", str(e))

        if response.status_code == 404:
            return None

        if response.status_code != 200:
            logger.error(f"Mercado Pago API error fetching payment {payment_id}: HTTP {response.status_code}")
            raise PaymentProviderError("get_payment", f"HTTP {response.status_code}")

        return self._to_payment(response.json(), payment_id)

    async def find_payment_by_reference(self, external_reference: str) -> Optional[ProviderPayment]:
        """
        Search the most recent payment for an external reference.

        API Docs: https://www.mercadopago.com.ar/developers/en/reference/payments/_payments_search/get
        """
        try:
            async with self._client() as client:
                response = await client.get(
                    "/v1/payments/search",
                    params={
                        "external_reference": external_reference,
                        "sort": "date_created",
                        "criteria": "desc",
                        "limit": 1,
                    },
                    headers=self._get_headers()
                )
        except httpx.RequestError as e:
            logger.error(f"Mercado Pago search failed for {external_reference}: {e}")
            raise PaymentProviderError("find_payment_by_reference", str(e))

        if response.status_code != 200:
            logger.error(f"Mercado Pago search error for {external_reference}: HTTP {response.status_code}")
            raise PaymentProviderError("find_payment_by_reference", f"HTTP {response.status_code}")

        results = response.json().get("results") or []
        if not results:
            return None
        return self._to_payment(results[0], None)

    def _to_payment(self, data: Dict[str, Any], payment_id: Optional[str]) -> ProviderPayment:
        amount = data.get("transaction_amount")

        return ProviderPayment(
            id=str(data.get("id", payment_id)),
            status=(data.get("status") or "").lower(),
            status_detail=data.get("status_detail"),
            external_reference=data.get("external_reference"),
            transaction_amount=Decimal(str(amount)) if amount is not None else None,
            payment_method=data.get("payment_method_id") or data.get("payment_type_id"),
            installments=data.get("installments"),
            raw_data={
                "payment_type_id": data.get("payment_type_id"),
                "issuer_id": data.get("issuer_id"),
                "date_approved": data.get("date_approved"),
                "card_last_four": (data.get("card") or {}).get("last_four_digits"),
            }
        )

    async def refund(self, payment_id: str, amount: Optional[Decimal] = None) -> ProviderRefund:
        """
        Refund a payment.

        API Docs: https://www.mercadopago.com.ar/developers/en/reference/chargebacks/_payments_id_refunds/post
        """
        payload = {"amount": float(amount)} if amount is not None else {}

        try:
            async with self._client() as client:
                response = await client.post(
                    f"/v1/payments/{payment_id}/refunds",
                    json=payload,
                    headers=self._get_headers(idempotency_key=str(uuid.uuid4()))
                )
        except httpx.RequestError as e:
            logger.error(f"Mercado Pago refund request failed for {payment_id}: {e}")
            raise PaymentProviderError("refund", str(e))

        if response.status_code not in (200, 201):
            logger.error(f"Mercado Pago refund error for {payment_id}: {response.status_code} - {response.text[:500]}")
            raise PaymentProviderError("refund", f"HTTP {response.status_code}")

        data = response.json()
        refunded = data.get("amount")

        logger.info(f"Mercado Pago refund {data.get('id')} created for payment {payment_id}")

        return ProviderRefund(
            refund_id=str(data.get("id")),
            amount=Decimal(str(refunded)) if refunded is not None else amount,
            status=data.get("status")
        )

    def verify_webhook(
        self,
        headers: Dict[str, str],
        body: bytes,
        query_params: Optional[Dict[str, str]] = None
    ) -> bool:
        """
        Verify Mercado Pago webhook signature.

        x-signature header format: "ts=<timestamp>,v1=<hmac>"
        Signed manifest: "id:<data.id>;request-id:<x-request-id>;ts:<ts>;"
        data.id comes from the query string when present, else from the body.
        Docs: https://www.mercadopago.com.ar/developers/en/docs/your-integrations/notifications/webhooks
        """
        if not self.webhook_secret:
            logger.warning("Mercado Pago webhook secret not configured, skipping verification")
            return True

        signature_header = headers.get("x-signature")
        request_id = headers.get("x-request-id", "")

        if not signature_header:
            logger.warning("No Mercado Pago signature in webhook headers")
            return False

        try:
            signature_parts = {}
            for part in signature_header.split(","):
                key, value = part.split("=", 1)
                signature_parts[key.strip()] = value.strip()

            timestamp = signature_parts.get("ts")
            received_signature = signature_parts.get("v1")

            if not timestamp or not received_signature:
                logger.warning("Invalid Mercado Pago signature format")
                return False

            data_id = (query_params or {}).get("data.id")
            if data_id is None:
                body_data = json.loads(body) if body else {}
                data_id = (body_data.get("data") or {}).get("id", "")
            data_id = str(data_id)
            # Mercado Pago signs alphanumeric ids in lowercase
            manifest = f"id:{data_id.lower()};request-id:{request_id};ts:{timestamp};"

            expected_signature = hmac.new(
                self.webhook_secret.encode(),
                manifest.encode(),
                hashlib.sha256
            ).hexdigest()

            return hmac.compare_digest(received_signature, expected_signature)

        except (ValueError, AttributeError) as e:
            logger.error(f"Error verifying Mercado Pago webhook signature: {e}")
            return False

    def map_status(self, provider_status: Optional[str]) -> Optional[PaymentStatus]:
        """
        Map Mercado Pago status to local PaymentStatus.

        Mercado Pago statuses:
        - pending: Payment is being processed
        - approved: Payment was approved and credited
        - authorized: Payment was authorized but not captured
        - in_process: Payment is under review
        - in_mediation: Payment in dispute
        - rejected: Payment was rejected
        - cancelled: Payment was cancelled
        - refunded: Payment was refunded
        - charged_back: Chargeback was applied
        """
        if not provider_status:
            return None
        status_map = {
            "approved": PaymentStatus.APPROVED,
            "authorized": PaymentStatus.IN_PROCESS,  # Needs capture
            "pending": PaymentStatus.PENDING,
            "in_process": PaymentStatus.IN_PROCESS,
            "in_mediation": PaymentStatus.IN_PROCESS,
            "rejected": PaymentStatus.REJECTED,
            "cancelled": PaymentStatus.CANCELLED,
            "refunded": PaymentStatus.REFUNDED,
            "charged_back": PaymentStatus.REFUNDED,
        }
        return status_map.get(provider_status.lower())
