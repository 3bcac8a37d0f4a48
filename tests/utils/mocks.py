"""
Mocks para la base de datos y el proveedor de pagos.
"""
from typing import Optional, List, Any, Dict
from decimal import Decimal
from datetime import datetime, timezone

from app.services.gateways.base import (
    PaymentProvider, PreferenceRequest, ProviderPreference, ProviderPayment, ProviderRefund
)
from app.core.exceptions import PaymentProviderError


class Sequence:
    """Valores devueltos en orden; el ultimo se repite."""

    def __init__(self, values: List[Any]):
        self.values = list(values)
        self.index = 0

    def next(self, *args):
        value = self.values[min(self.index, len(self.values) - 1)]
        self.index += 1
        if callable(value):
            return value(*args)
        return value


class MockTransaction:
    """Savepoint mock: conn.transaction() como async context manager."""

    def __init__(self, connection: "MockDBConnection"):
        self.connection = connection

    async def __aenter__(self):
        self.connection.transactions += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.connection.rollbacks += 1
        return False


class MockDBConnection:
    """
    Mock de conexión asyncpg.

    Cada retorno se configura por un fragmento de la query; gana el primer
    fragmento registrado que aparezca en la query. El valor puede ser fijo,
    un callable que recibe los argumentos posicionales, una Sequence o una
    excepción (que se lanza).
    """

    def __init__(self):
        self.fetchrow_returns: Dict[str, Any] = {}
        self.fetch_returns: Dict[str, Any] = {}
        self.execute_returns: Dict[str, Any] = {}
        self.fetchval_returns: Dict[str, Any] = {}
        self.transactions = 0
        self.rollbacks = 0
        self._call_history = []

    def set_fetchrow_return(self, query_contains: str, value: Any):
        """Configura valor de retorno para fetchrow según query."""
        self.fetchrow_returns[query_contains] = value

    def set_fetchrow_sequence(self, query_contains: str, values: List[Any]):
        self.fetchrow_returns[query_contains] = Sequence(values)

    def set_fetch_return(self, query_contains: str, value: Any):
        """Configura valor de retorno para fetch según query."""
        self.fetch_returns[query_contains] = value

    def set_execute_return(self, query_contains: str, value: Any):
        self.execute_returns[query_contains] = value

    def set_fetchval_return(self, query_contains: str, value: Any):
        self.fetchval_returns[query_contains] = value

    def _resolve(self, returns: Dict[str, Any], query: str, args: tuple, default: Any):
        for key, value in returns.items():
            if key in query:
                if isinstance(value, Sequence):
                    value = value.next(*args)
                elif isinstance(value, BaseException):
                    raise value
                elif callable(value):
                    value = value(*args)
                if isinstance(value, BaseException):
                    raise value
                return value
        return default

    async def fetchrow(self, query: str, *args) -> Optional[dict]:
        self._call_history.append(("fetchrow", query, args))
        return self._resolve(self.fetchrow_returns, query, args, None)

    async def fetch(self, query: str, *args) -> List[dict]:
        self._call_history.append(("fetch", query, args))
        return self._resolve(self.fetch_returns, query, args, [])

    async def execute(self, query: str, *args) -> str:
        self._call_history.append(("execute", query, args))
        return self._resolve(self.execute_returns, query, args, "UPDATE 1")

    async def fetchval(self, query: str, *args) -> Any:
        self._call_history.append(("fetchval", query, args))
        return self._resolve(self.fetchval_returns, query, args, None)

    def transaction(self) -> MockTransaction:
        return MockTransaction(self)

    def get_call_history(self) -> List[tuple]:
        """Retorna historial de llamadas."""
        return self._call_history

    def calls(self, method: str, query_contains: str) -> List[tuple]:
        """Argumentos de cada llamada a `method` cuya query contiene el fragmento."""
        return [
            call[2] for call in self._call_history
            if call[0] == method and query_contains in call[1]
        ]

    def was_called_with(self, method: str, query_contains: str) -> bool:
        """Verifica si se llamó un método con cierta query."""
        return bool(self.calls(method, query_contains))


class MockDBContextManager:
    """Context manager mock para get_db_connection."""

    def __init__(self, connection: MockDBConnection = None):
        self.connection = connection or MockDBConnection()

    async def __aenter__(self):
        return self.connection

    async def __aexit__(self, *args):
        return False


class FakeProvider(PaymentProvider):
    """Proveedor de pagos en memoria."""

    def __init__(self):
        self.payments: Dict[str, ProviderPayment] = {}
        self.by_reference: Dict[str, ProviderPayment] = {}
        self.preferences: List[PreferenceRequest] = []
        self.refunds: List[tuple] = []
        self.fail_preference = False
        self.fail_get_payment = False
        self.signature_valid = True
        self.configured = True

    @property
    def name(self) -> str:
        return "mercadopago"

    @property
    def is_configured(self) -> bool:
        return self.configured

    def add_payment(
        self,
        payment_id: str,
        status: str,
        external_reference: Optional[str] = None,
        amount: Decimal = Decimal("25000"),
        status_detail: Optional[str] = None
    ) -> ProviderPayment:
        payment = ProviderPayment(
            id=payment_id,
            status=status,
            status_detail=status_detail or status,
            external_reference=external_reference,
            transaction_amount=amount,
            payment_method="visa",
            installments=1,
            raw_data={"payment_type_id": "credit_card"}
        )
        self.payments[payment_id] = payment
        if external_reference:
            self.by_reference[external_reference] = payment
        return payment

    async def create_preference(self, data: PreferenceRequest) -> ProviderPreference:
        if self.fail_preference:
            raise PaymentProviderError("create_preference", "HTTP 500")
        self.preferences.append(data)
        preference_id = f"pref-{len(self.preferences)}"
        return ProviderPreference(
            id=preference_id,
            redirect_url=f"https://sandbox.mercadopago.test/checkout?pref_id={preference_id}",
            expires_at=data.expires_at
        )

    async def get_payment(self, payment_id: str) -> Optional[ProviderPayment]:
        if self.fail_get_payment:
            raise PaymentProviderError("get_payment", "timeout")
        return self.payments.get(payment_id)

    async def find_payment_by_reference(self, external_reference: str) -> Optional[ProviderPayment]:
        return self.by_reference.get(external_reference)

    async def refund(self, payment_id: str, amount: Optional[Decimal] = None) -> ProviderRefund:
        self.refunds.append((payment_id, amount))
        return ProviderRefund(refund_id=f"refund-{len(self.refunds)}", amount=amount, status="approved")

    def verify_webhook(self, headers, body, query_params=None) -> bool:
        return self.signature_valid


class IntentTable:
    """
    Tabla payment_intents en memoria conectada a un MockDBConnection.

    Cubre el INSERT de create_intent, el UPDATE de la transición, el UPDATE
    de la preferencia y los SELECT ... FOR UPDATE por id, payment id y
    referencia externa.
    """

    def __init__(self, *rows: dict):
        self.rows: Dict[str, dict] = {str(row["id"]): dict(row) for row in rows}
        self.updates: List[tuple] = []

    def get(self, intent_id) -> Optional[dict]:
        return self.rows.get(str(intent_id))

    def insert(self, intent_id, user_id, event_id, ticket_type, quantity, unit_price, subtotal,
               discount_amount, amount, currency, coupon_code, external_reference,
               provider_expires_at, ticket_id, ticket_qr):
        from tests.utils.factories import PaymentIntentFactory

        row = PaymentIntentFactory.create(
            user_id=user_id, event_id=event_id, quantity=quantity, amount=amount,
            id=intent_id, ticket_type=ticket_type, unit_price=unit_price, subtotal=subtotal,
            discount_amount=discount_amount, coupon_code=coupon_code,
            external_reference=external_reference, provider_expires_at=provider_expires_at,
            ticket_id=ticket_id, preference_id=None, redirect_url=None
        )
        row["ticket_qr"] = ticket_qr
        row["currency"] = currency
        self.rows[str(intent_id)] = row
        return row

    def update(self, intent_id, status, status_detail, payment_id, transaction_amount, payment_method,
               installments, details, refund_id, refunded_amount):
        self.updates.append((str(intent_id), status, status_detail))
        row = dict(self.rows[str(intent_id)])
        row["status"] = status
        row["status_detail"] = status_detail or row["status_detail"]
        row["provider_payment_id"] = row["provider_payment_id"] or payment_id
        row["transaction_amount"] = transaction_amount or row["transaction_amount"]
        row["payment_method"] = payment_method or row["payment_method"]
        row["installments"] = installments or row["installments"]
        row["refund_id"] = refund_id or row["refund_id"]
        row["refunded_amount"] = refunded_amount if refunded_amount is not None else row["refunded_amount"]
        if status == "approved" and row["approved_at"] is None:
            row["approved_at"] = now_utc()
        if status in ("rejected", "cancelled", "refunded"):
            row["ticket_is_valid"] = False
        self.rows[str(intent_id)] = row
        return row

    def set_preference(self, intent_id, preference_id, redirect_url):
        row = self.rows[str(intent_id)]
        row["preference_id"] = preference_id
        row["redirect_url"] = redirect_url
        return row

    def by_payment_id(self, payment_id):
        return next((r for r in self.rows.values() if r["provider_payment_id"] == payment_id), None)

    def by_reference(self, external_reference):
        return next((r for r in self.rows.values() if r["external_reference"] == external_reference), None)

    def install(self, conn: MockDBConnection) -> "IntentTable":
        conn.set_fetchrow_return("INSERT INTO payment_intents", self.insert)
        conn.set_fetchrow_return("SET preference_id", self.set_preference)
        conn.set_fetchrow_return("transaction_details = transaction_details ||", self.update)
        conn.set_fetchrow_return("FROM payment_intents WHERE id = $1", self.get)
        conn.set_fetchrow_return("FROM payment_intents WHERE provider_payment_id", self.by_payment_id)
        conn.set_fetchrow_return("FROM payment_intents WHERE external_reference", self.by_reference)
        return self

    @property
    def statuses(self) -> List[str]:
        return [update[1] for update in self.updates]


def identity_headers(user_id: str = "test-user-123", role: str = "user", email: str = "test@test.com") -> dict:
    """Headers de identidad que reenvía el gateway de autenticación."""
    return {"X-User-Id": user_id, "X-User-Role": role, "X-User-Email": email}


def now_utc() -> datetime:
    return datetime.now(timezone.utc)
