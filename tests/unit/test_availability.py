"""
Tests para el control de capacidad por evento y tipo de boleta.
"""
import pytest
from datetime import timedelta
from decimal import Decimal
from httpx import AsyncClient

from app.core.exceptions import EventClosed, InsufficientCapacity, NotFoundError, ValidationError
from app.models.event import Event
from app.services import availability_service

from tests.utils.factories import EventFactory, InventoryFactory
from tests.utils.mocks import now_utc


INVENTORY = "FROM event_ticket_inventory"
RESERVE = "reserved = reserved +"
RELEASE = "GREATEST(reserved -"


class TestCheckAvailability:
    """Tests para availability_service.check_availability"""

    @pytest.mark.asyncio
    async def test_remaining_capacity(self, patch_db):
        conn = patch_db("availability_service")
        conn.set_fetchrow_return("FROM events", EventFactory.create(id="evt-1"))
        conn.set_fetchrow_return(INVENTORY, InventoryFactory.create(capacity=100, reserved=97))

        result = await availability_service.check_availability("evt-1", "general", 3)

        assert result.available == 3
        assert result.sold == 97
        assert result.can_purchase is True
        assert result.unit_price == Decimal("25000")

    @pytest.mark.asyncio
    async def test_cannot_purchase_more_than_left(self, patch_db):
        conn = patch_db("availability_service")
        conn.set_fetchrow_return("FROM events", EventFactory.create(id="evt-1"))
        conn.set_fetchrow_return(INVENTORY, InventoryFactory.create(capacity=100, reserved=99))

        result = await availability_service.check_availability("evt-1", "general", 2)

        assert result.available == 1
        assert result.can_purchase is False

    @pytest.mark.asyncio
    async def test_default_price_when_inventory_has_none(self, patch_db):
        conn = patch_db("availability_service")
        conn.set_fetchrow_return("FROM events", EventFactory.create(id="evt-1"))
        conn.set_fetchrow_return(INVENTORY, InventoryFactory.create(ticket_type="vip", price=None))

        result = await availability_service.check_availability("evt-1", "vip")

        assert result.unit_price == Decimal("50000")

    @pytest.mark.asyncio
    async def test_unknown_event(self, patch_db):
        patch_db("availability_service")

        with pytest.raises(NotFoundError):
            await availability_service.check_availability("evt-404", "general")

    @pytest.mark.asyncio
    async def test_ticket_type_not_offered(self, patch_db):
        conn = patch_db("availability_service")
        conn.set_fetchrow_return("FROM events", EventFactory.create(id="evt-1"))

        with pytest.raises(ValidationError):
            await availability_service.check_availability("evt-1", "student")

    @pytest.mark.asyncio
    async def test_zero_quantity(self, patch_db):
        conn = patch_db("availability_service")

        with pytest.raises(ValidationError):
            await availability_service.check_availability("evt-1", "general", 0)

        assert conn.get_call_history() == []


class TestEnsureEventOpen:

    def test_inactive_event(self):
        event = Event(**EventFactory.create(is_active=False))
        with pytest.raises(EventClosed) as exc:
            availability_service.ensure_event_open(event)
        assert exc.value.status_code == 409
        assert exc.value.details == {"event_id": event.id}

    def test_past_event(self):
        event = Event(**EventFactory.create(event_date=now_utc() - timedelta(hours=1)))
        with pytest.raises(EventClosed):
            availability_service.ensure_event_open(event)

    def test_upcoming_event(self):
        availability_service.ensure_event_open(Event(**EventFactory.create()))

    def test_unknown_type_without_price(self):
        with pytest.raises(ValidationError):
            availability_service.resolve_unit_price("backstage", None)


class TestReserveCapacity:
    """Tests para la reserva atómica dentro de la transacción de compra"""

    @pytest.mark.asyncio
    async def test_reserve(self, mock_conn):
        mock_conn.set_fetchrow_return(RESERVE, {"capacity": 100, "reserved": 12, "price": Decimal("30000")})

        price = await availability_service.reserve_capacity(mock_conn, "evt-1", "general", 2)

        assert price == Decimal("30000")
        assert mock_conn.calls("fetchrow", RESERVE) == [("evt-1", "general", 2)]
        assert not mock_conn.was_called_with("fetchrow", INVENTORY)

    @pytest.mark.asyncio
    async def test_sold_out_reports_exact_remaining(self, mock_conn):
        """El UPDATE condicional no afectó filas: se informa cuántos quedan."""
        mock_conn.set_fetchrow_return(RESERVE, None)
        mock_conn.set_fetchrow_return(INVENTORY, InventoryFactory.create(capacity=100, reserved=99))

        with pytest.raises(InsufficientCapacity) as exc:
            await availability_service.reserve_capacity(mock_conn, "evt-1", "general", 2)

        assert exc.value.status_code == 409
        assert exc.value.details == {"available": 1, "requested": 2}

    @pytest.mark.asyncio
    async def test_oversold_inventory_reports_zero(self, mock_conn):
        mock_conn.set_fetchrow_return(RESERVE, None)
        mock_conn.set_fetchrow_return(INVENTORY, InventoryFactory.create(capacity=10, reserved=12))

        with pytest.raises(InsufficientCapacity) as exc:
            await availability_service.reserve_capacity(mock_conn, "evt-1", "general", 1)

        assert exc.value.available == 0

    @pytest.mark.asyncio
    async def test_release(self, mock_conn):
        await availability_service.release_capacity(mock_conn, "evt-1", "vip", 3)

        assert mock_conn.calls("execute", RELEASE) == [("evt-1", "vip", 3)]

    @pytest.mark.asyncio
    async def test_release_without_inventory_row(self, mock_conn):
        mock_conn.set_execute_return(RELEASE, "UPDATE 0")

        await availability_service.release_capacity(mock_conn, "evt-1", "vip", 3)


class TestAvailabilityEndpoint:
    """Tests HTTP para GET /events/{id}/availability"""

    @pytest.mark.asyncio
    async def test_public_endpoint(self, client: AsyncClient, patch_db):
        conn = patch_db("availability_service")
        conn.set_fetchrow_return("FROM events", EventFactory.create(id="evt-1"))
        conn.set_fetchrow_return(INVENTORY, InventoryFactory.create(ticket_type="vip", capacity=50, reserved=10))

        response = await client.get("/events/evt-1/availability?ticket_type=vip&quantity=2")

        assert response.status_code == 200
        data = response.json()
        assert data["available"] == 40
        assert data["can_purchase"] is True
        assert conn.calls("fetchrow", INVENTORY) == [("evt-1", "vip")]

    @pytest.mark.asyncio
    async def test_quantity_limit(self, client: AsyncClient):
        response = await client.get("/events/evt-1/availability?quantity=11")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_closed_event(self, client: AsyncClient, patch_db):
        conn = patch_db("availability_service")
        conn.set_fetchrow_return("FROM events", EventFactory.create(id="evt-1", is_active=False))

        response = await client.get("/events/evt-1/availability")

        assert response.status_code == 409
        assert response.json()["type"] == "EventClosed"
