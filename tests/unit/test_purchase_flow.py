"""
Tests del recorrido completo de una compra: intención, webhook aprobado,
validación en puerta y check-in.
"""
import json
import pytest
from decimal import Decimal

from app.core.exceptions import AlreadyCheckedIn
from app.models.payment import PaymentIntentCreate
from app.services import payments_service, ticket_service, webhook_service

from tests.utils.factories import EventFactory, TicketFactory
from tests.utils.mocks import IntentTable, now_utc


class TicketStore:
    """Tabla de boletas en memoria para los queries de emisión y check-in."""

    def __init__(self):
        self.rows = {}

    def insert(self, ticket_id, intent_id, event_id, holder_id, ticket_type, quantity,
               unit_price, total_amount, qr_payload, expires_at):
        if ticket_id in self.rows:
            return None
        row = TicketFactory.create(
            holder_id=holder_id, event_id=event_id, ticket_id=ticket_id, intent_id=intent_id,
            ticket_type=ticket_type, quantity=quantity, qr_payload=qr_payload, expires_at=expires_at
        )
        row["unit_price"] = unit_price
        row["total_amount"] = total_amount
        self.rows[ticket_id] = row
        return {"ticket_id": ticket_id, "status": row["status"]}

    def get(self, ticket_id):
        return self.rows.get(ticket_id)

    def mark_used(self, ticket_id, actor_id, location, device):
        row = self.rows.get(ticket_id)
        if not row or row["status"] != "confirmed":
            return None
        row.update(
            status="used", checked_in_at=now_utc(), checked_in_by=actor_id,
            check_in_location=location, check_in_device=device
        )
        return row

    def install(self, conn) -> "TicketStore":
        conn.set_fetchrow_return("INSERT INTO tickets", self.insert)
        conn.set_fetchrow_return("FROM tickets t", self.get)
        conn.set_fetchrow_return("SELECT ticket_id, event_id, holder_id, status, expires_at", self.get)
        conn.set_fetchrow_return("SET status = 'used'", self.mark_used)
        return self


class TestPurchaseFlow:
    """Una misma intención de principio a fin"""

    @pytest.mark.asyncio
    async def test_intent_to_check_in(self, patch_db, patch_provider):
        """La boleta emitida por el webhook es la reservada en la intención y solo entra una vez."""
        conn = patch_db("payments_service", "webhook_service", "ticket_service")
        conn.set_fetchrow_return("FROM events", EventFactory.create(id="evt-1"))
        conn.set_fetchrow_return("reserved = reserved +", {"capacity": 100, "reserved": 1, "price": Decimal("25000")})
        table = IntentTable().install(conn)
        store = TicketStore().install(conn)

        response = await payments_service.create_intent(
            "test-user-123", PaymentIntentCreate(event_id="evt-1"), "buyer@test.com"
        )
        intent = table.get(response.intent_id)
        assert store.rows == {}

        patch_provider.add_payment("pay-1", "approved", external_reference=response.external_reference)
        body = json.dumps({"type": "payment", "data": {"id": "pay-1"}}).encode()
        await webhook_service.handle_webhook({}, body)

        assert table.get(response.intent_id)["status"] == "approved"
        assert table.get(response.intent_id)["provider_payment_id"] == "pay-1"
        assert list(store.rows) == [response.ticket_id]
        issued = store.rows[response.ticket_id]
        assert issued["qr_payload"] == intent["ticket_qr"]
        assert issued["holder_id"] == "test-user-123"

        before = await ticket_service.validate_ticket(response.ticket_id)
        assert before.valid is True
        assert before.ticket_id == response.ticket_id

        result = await ticket_service.check_in(response.ticket_id, "staff-1", "Puerta 1")
        assert result.ticket_id == response.ticket_id
        assert result.status.value == "used"

        after = await ticket_service.validate_ticket(response.ticket_id)
        assert after.valid is False
        assert after.reason == "already used"
        assert after.checked_in_by == "staff-1"

        with pytest.raises(AlreadyCheckedIn):
            await ticket_service.check_in(response.ticket_id, "staff-2")
