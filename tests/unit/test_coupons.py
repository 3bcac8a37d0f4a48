"""
Tests para el motor de descuentos y la administración de cupones.
"""
import uuid
import pytest
import asyncpg
from datetime import timedelta
from decimal import Decimal
from httpx import AsyncClient

from app.core.exceptions import CouponInvalid, NotFoundError, ValidationError
from app.models.coupon import CouponCreate, CouponType
from app.services import coupon_service
from app.services.coupon_service import check_coupon, calculate_discount

from tests.utils.factories import CouponFactory, EventFactory
from tests.utils.mocks import now_utc


COUPON_SELECT = "FROM coupons WHERE code = $1"
USER_USES = "FROM coupon_redemptions"
CONSUME = "current_uses = current_uses + 1"
MINE = "FROM coupons c"


def reason_for(coupon, amount=Decimal("10000"), user_uses=0, user_id="test-user-123",
               event_id="evt-1", category="music"):
    with pytest.raises(CouponInvalid) as exc:
        check_coupon(coupon, user_id, event_id, category, amount, user_uses, now_utc())
    return exc.value.reason


class TestCheckCoupon:
    """Tests para las reglas de validez, en orden"""

    def test_valid_coupon_passes(self):
        check_coupon(CouponFactory.create(), "test-user-123", "evt-1", "music", Decimal("10000"), 0, now_utc())

    def test_inactive(self):
        assert reason_for(CouponFactory.create(is_active=False)) == "inactive"

    def test_not_yet_valid(self):
        assert reason_for(CouponFactory.create(valid_from=now_utc() + timedelta(days=1))) == "not_yet_valid"

    def test_expired(self):
        assert reason_for(CouponFactory.create(valid_until=now_utc() - timedelta(seconds=1))) == "expired"

    def test_exhausted(self):
        assert reason_for(CouponFactory.create(max_uses=5, current_uses=5)) == "exhausted"

    def test_user_limit(self):
        assert reason_for(CouponFactory.create(max_uses_per_user=2), user_uses=2) == "user_limit_reached"

    def test_below_minimum(self):
        coupon = CouponFactory.create(min_purchase=Decimal("50000"))
        assert reason_for(coupon, amount=Decimal("49999.99")) == "below_minimum"
        check_coupon(coupon, "test-user-123", "evt-1", "music", Decimal("50000"), 0, now_utc())

    def test_not_applicable_event(self):
        assert reason_for(CouponFactory.create(applicable_events=["evt-9"])) == "not_applicable_event"

    def test_not_applicable_category(self):
        assert reason_for(CouponFactory.create(applicable_categories=["sports"])) == "not_applicable_category"

    def test_not_applicable_user(self):
        assert reason_for(CouponFactory.create(applicable_users=["vip-1"])) == "not_applicable_user"

    def test_first_failing_rule_wins(self):
        """Un cupón que rompe varias reglas reporta la primera."""
        coupon = CouponFactory.create(
            is_active=False,
            valid_until=now_utc() - timedelta(days=1),
            max_uses=1, current_uses=1,
        )
        assert reason_for(coupon) == "inactive"

        coupon["is_active"] = True
        assert reason_for(coupon) == "expired"

        coupon["valid_until"] = now_utc() + timedelta(days=1)
        assert reason_for(coupon) == "exhausted"

    def test_error_carries_code(self):
        with pytest.raises(CouponInvalid) as exc:
            check_coupon(CouponFactory.create(code="LATE", is_active=False), "u", "e", None, Decimal("1"), 0, now_utc())

        assert exc.value.status_code == 400
        assert exc.value.details == {"reason": "inactive", "code": "LATE"}


class TestCalculateDiscount:
    """Tests para el cálculo del descuento"""

    def test_percentage(self):
        assert calculate_discount(CouponFactory.create(value=Decimal("10")), Decimal("10000")) == Decimal("1000.00")

    def test_percentage_rounds_half_up(self):
        assert calculate_discount(CouponFactory.create(value=Decimal("15")), Decimal("333.33")) == Decimal("50.00")

    def test_percentage_capped(self):
        coupon = CouponFactory.create(value=Decimal("50"), max_discount=Decimal("500"))
        assert calculate_discount(coupon, Decimal("10000")) == Decimal("500.00")

    def test_fixed(self):
        assert calculate_discount(CouponFactory.create(type="fixed", value=Decimal("2000")), Decimal("10000")) == Decimal("2000.00")

    def test_fixed_never_exceeds_amount(self):
        assert calculate_discount(CouponFactory.create(type="fixed", value=Decimal("5000")), Decimal("3000")) == Decimal("3000.00")

    @pytest.mark.parametrize("coupon_type", ["free_shipping", "buy_one_get_one"])
    def test_reserved_types_grant_nothing(self, coupon_type):
        assert calculate_discount(CouponFactory.create(type=coupon_type), Decimal("10000")) == Decimal("0.00")


class TestCouponCreateModel:
    """Tests para las validaciones del schema"""

    def _payload(self, **overrides):
        now = now_utc()
        payload = {
            "code": " save10 ", "name": "Diez por ciento", "type": "percentage", "value": "10",
            "valid_from": now, "valid_until": now + timedelta(days=7),
        }
        payload.update(overrides)
        return payload

    def test_code_is_normalized(self):
        assert CouponCreate(**self._payload()).code == "SAVE10"

    def test_window_must_be_positive(self):
        now = now_utc()
        with pytest.raises(ValueError):
            CouponCreate(**self._payload(valid_from=now, valid_until=now))

    def test_percentage_over_100(self):
        with pytest.raises(ValueError):
            CouponCreate(**self._payload(value="120"))

    def test_fixed_over_100_allowed(self):
        assert CouponCreate(**self._payload(type="fixed", value="5000")).value == Decimal("5000")


class TestRedeemCoupon:
    """Tests para el consumo dentro de la transacción de compra"""

    @pytest.mark.asyncio
    async def test_redeem_consumes_one_use(self, mock_conn):
        coupon = CouponFactory.create(current_uses=3)
        mock_conn.set_fetchrow_return(COUPON_SELECT, coupon)
        mock_conn.set_fetchval_return(USER_USES, 0)

        discount, final = await coupon_service.redeem_coupon_for_intent(
            mock_conn, "save10", "test-user-123", "evt-1", "music", Decimal("10000"), "intent-1"
        )

        assert (discount, final) == (Decimal("1000.00"), Decimal("9000.00"))
        select = mock_conn.get_call_history()[0]
        assert "FOR UPDATE" in select[1]
        assert select[2] == ("SAVE10",)
        assert mock_conn.calls("execute", CONSUME) == [(coupon["id"],)]
        assert mock_conn.calls("execute", "INSERT INTO coupon_redemptions") == [
            (coupon["id"], "test-user-123", "intent-1", Decimal("1000.00"))
        ]
        audit = mock_conn.calls("execute", "INSERT INTO audit_records")[0]
        assert audit[1] == "COUPON_USE"

    @pytest.mark.asyncio
    async def test_last_use_taken_concurrently(self, mock_conn):
        """El UPDATE condicional no afecta filas: otro comprador tomó el último uso."""
        mock_conn.set_fetchrow_return(COUPON_SELECT, CouponFactory.create(max_uses=10, current_uses=9))
        mock_conn.set_fetchval_return(USER_USES, 0)
        mock_conn.set_execute_return(CONSUME, "UPDATE 0")

        with pytest.raises(CouponInvalid) as exc:
            await coupon_service.redeem_coupon_for_intent(
                mock_conn, "SAVE10", "test-user-123", "evt-1", "music", Decimal("10000"), "intent-1"
            )

        assert exc.value.reason == "exhausted"
        assert not mock_conn.was_called_with("execute", "INSERT INTO coupon_redemptions")

    @pytest.mark.asyncio
    async def test_unknown_code(self, mock_conn):
        with pytest.raises(CouponInvalid) as exc:
            await coupon_service.redeem_coupon_for_intent(
                mock_conn, "nope", "test-user-123", "evt-1", "music", Decimal("10000"), "intent-1"
            )

        assert exc.value.reason == "not_found"
        assert exc.value.details["code"] == "NOPE"

    @pytest.mark.asyncio
    async def test_user_limit_counts_redemptions(self, mock_conn):
        coupon = CouponFactory.create()
        mock_conn.set_fetchrow_return(COUPON_SELECT, coupon)
        mock_conn.set_fetchval_return(USER_USES, 1)

        with pytest.raises(CouponInvalid) as exc:
            await coupon_service.redeem_coupon_for_intent(
                mock_conn, "SAVE10", "test-user-123", "evt-1", "music", Decimal("10000"), "intent-1"
            )

        assert exc.value.reason == "user_limit_reached"
        assert mock_conn.calls("fetchval", USER_USES) == [(coupon["id"], "test-user-123")]

    @pytest.mark.asyncio
    async def test_reverse_gives_use_back(self, mock_conn):
        coupon_id = uuid.uuid4()
        mock_conn.set_fetchrow_return("UPDATE coupon_redemptions", {"coupon_id": coupon_id})

        await coupon_service.reverse_redemption(mock_conn, "intent-1")

        assert mock_conn.calls("execute", "GREATEST(current_uses - 1, 0)") == [(coupon_id,)]

    @pytest.mark.asyncio
    async def test_reverse_without_redemption(self, mock_conn):
        await coupon_service.reverse_redemption(mock_conn, "intent-1")

        assert not mock_conn.was_called_with("execute", "GREATEST(current_uses - 1, 0)")


class TestValidateCoupon:
    """Tests para la previsualización del descuento"""

    @pytest.mark.asyncio
    async def test_quote(self, patch_db):
        conn = patch_db("coupon_service")
        conn.set_fetchrow_return(COUPON_SELECT, CouponFactory.create(type="fixed", value=Decimal("2500")))
        conn.set_fetchrow_return("SELECT id, category FROM events", EventFactory.create(id="evt-1"))
        conn.set_fetchval_return(USER_USES, 0)

        quote = await coupon_service.validate_coupon("SAVE10", "test-user-123", "evt-1", Decimal("10000"))

        assert quote.discount == Decimal("2500.00")
        assert quote.final_amount == Decimal("7500.00")
        assert not conn.was_called_with("execute", CONSUME)

    @pytest.mark.asyncio
    async def test_category_from_event(self, patch_db):
        conn = patch_db("coupon_service")
        conn.set_fetchrow_return(COUPON_SELECT, CouponFactory.create(applicable_categories=["theatre"]))
        conn.set_fetchrow_return("SELECT id, category FROM events", EventFactory.create(id="evt-1", category="music"))
        conn.set_fetchval_return(USER_USES, 0)

        with pytest.raises(CouponInvalid) as exc:
            await coupon_service.validate_coupon("SAVE10", "test-user-123", "evt-1", Decimal("10000"))

        assert exc.value.reason == "not_applicable_category"

    @pytest.mark.asyncio
    async def test_unknown_event(self, patch_db):
        conn = patch_db("coupon_service")
        conn.set_fetchrow_return(COUPON_SELECT, CouponFactory.create())

        with pytest.raises(NotFoundError):
            await coupon_service.validate_coupon("SAVE10", "test-user-123", "evt-404", Decimal("10000"))


class TestCouponAdmin:
    """Tests para creación, desactivación, estadísticas y expiración"""

    def _create_data(self, **overrides):
        now = now_utc()
        data = {
            "code": "launch", "name": "Lanzamiento", "type": CouponType.PERCENTAGE, "value": Decimal("20"),
            "valid_from": now, "valid_until": now + timedelta(days=10),
        }
        data.update(overrides)
        return CouponCreate(**data)

    @pytest.mark.asyncio
    async def test_create(self, patch_db):
        conn = patch_db("coupon_service")
        conn.set_fetchrow_return("INSERT INTO coupons", CouponFactory.create(code="LAUNCH", value=Decimal("20")))

        coupon = await coupon_service.create_coupon(self._create_data(), "organizer-1")

        assert coupon.code == "LAUNCH"
        args = conn.calls("fetchrow", "INSERT INTO coupons")[0]
        assert args[0] == "LAUNCH"
        assert args[3] == "percentage"
        assert args[-1] == "organizer-1"
        audit = conn.calls("execute", "INSERT INTO audit_records")[0]
        assert audit[1] == "COUPON_CREATE"
        assert audit[3] == "LAUNCH"

    @pytest.mark.asyncio
    async def test_duplicate_code(self, patch_db):
        conn = patch_db("coupon_service")
        conn.set_fetchrow_return("INSERT INTO coupons", asyncpg.exceptions.UniqueViolationError("duplicate key"))

        with pytest.raises(ValidationError):
            await coupon_service.create_coupon(self._create_data(), "organizer-1")

    @pytest.mark.asyncio
    async def test_max_discount_only_for_percentage(self, patch_db):
        conn = patch_db("coupon_service")

        with pytest.raises(ValidationError):
            await coupon_service.create_coupon(
                self._create_data(type=CouponType.FIXED, value=Decimal("1000"), max_discount=Decimal("500")),
                "organizer-1"
            )

        assert conn.get_call_history() == []

    @pytest.mark.asyncio
    async def test_deactivate(self, patch_db):
        conn = patch_db("coupon_service")
        coupon = CouponFactory.create()
        conn.set_fetchrow_return(COUPON_SELECT, coupon)
        conn.set_fetchrow_return("UPDATE coupons SET is_active = false", {**coupon, "is_active": False})

        result = await coupon_service.deactivate_coupon("save10", "organizer-1")

        assert result.is_active is False
        assert conn.calls("execute", "INSERT INTO audit_records")[0][1] == "COUPON_DEACTIVATE"

    @pytest.mark.asyncio
    async def test_deactivate_unknown(self, patch_db):
        patch_db("coupon_service")

        with pytest.raises(NotFoundError):
            await coupon_service.deactivate_coupon("NOPE", "organizer-1")

    @pytest.mark.asyncio
    async def test_stats_are_cached(self, patch_db):
        conn = patch_db("coupon_service")
        conn.set_fetchrow_return(COUPON_SELECT, CouponFactory.create(max_uses=100, current_uses=40))
        conn.set_fetchrow_return("COUNT(DISTINCT user_id)", {"unique_users": 35, "total_discount": Decimal("120000")})

        first = await coupon_service.get_coupon_stats("save10")
        second = await coupon_service.get_coupon_stats("SAVE10")

        assert first.remaining_uses == 60
        assert first.unique_users == 35
        assert second is first
        assert len(conn.calls("fetchrow", "COUNT(DISTINCT user_id)")) == 1

    @pytest.mark.asyncio
    async def test_expire_coupons(self, patch_db):
        conn = patch_db("coupon_service")
        conn.set_fetch_return("valid_until < NOW()", [{"code": "OLD1"}, {"code": "OLD2"}])

        count = await coupon_service.expire_coupons()

        assert count == 2
        audits = conn.calls("execute", "INSERT INTO audit_records")
        assert [a[1] for a in audits] == ["COUPON_EXPIRE", "COUPON_EXPIRE"]
        assert [a[3] for a in audits] == ["OLD1", "OLD2"]

    @pytest.mark.asyncio
    async def test_expire_nothing(self, patch_db):
        conn = patch_db("coupon_service")

        assert await coupon_service.expire_coupons() == 0
        assert not conn.was_called_with("execute", "INSERT INTO audit_records")


class TestUserCoupons:
    """Tests para los cupones disponibles de un usuario"""

    @pytest.mark.asyncio
    async def test_list_user_coupons(self, patch_db):
        conn = patch_db("coupon_service")
        personal = CouponFactory.create(code="VIP20", applicable_users=["test-user-123"])
        conn.set_fetch_return(MINE, [personal, CouponFactory.create()])

        coupons = await coupon_service.list_user_coupons("test-user-123")

        assert [coupon.code for coupon in coupons] == ["VIP20", "SAVE10"]
        assert conn.calls("fetch", MINE) == [("test-user-123",)]

    @pytest.mark.asyncio
    async def test_get_coupon(self, patch_db):
        conn = patch_db("coupon_service")
        conn.set_fetchrow_return(COUPON_SELECT, CouponFactory.create())

        coupon = await coupon_service.get_coupon("save10")

        assert coupon.code == "SAVE10"

    @pytest.mark.asyncio
    async def test_get_unknown_coupon(self, patch_db):
        patch_db("coupon_service")

        with pytest.raises(NotFoundError):
            await coupon_service.get_coupon("NOPE")


class TestCouponEndpoints:
    """Tests HTTP para /coupons"""

    @pytest.mark.asyncio
    async def test_redeem_preview_rejection(self, client: AsyncClient, patch_db, user_headers):
        conn = patch_db("coupon_service")
        conn.set_fetchrow_return(COUPON_SELECT, CouponFactory.create(valid_until=now_utc() - timedelta(days=1)))
        conn.set_fetchrow_return("SELECT id, category FROM events", EventFactory.create(id="evt-1"))
        conn.set_fetchval_return(USER_USES, 0)

        response = await client.post(
            "/coupons/redeem",
            json={"code": "save10", "event_id": "evt-1", "amount": "10000"},
            headers=user_headers
        )

        assert response.status_code == 400
        body = response.json()
        assert body["type"] == "CouponInvalid"
        assert body["details"]["reason"] == "expired"

    @pytest.mark.asyncio
    async def test_redeem_preview(self, client: AsyncClient, patch_db, user_headers):
        conn = patch_db("coupon_service")
        conn.set_fetchrow_return(COUPON_SELECT, CouponFactory.create())
        conn.set_fetchrow_return("SELECT id, category FROM events", EventFactory.create(id="evt-1"))
        conn.set_fetchval_return(USER_USES, 0)

        response = await client.post(
            "/coupons/redeem",
            json={"code": "SAVE10", "event_id": "evt-1", "amount": "10000"},
            headers=user_headers
        )

        assert response.status_code == 200
        assert Decimal(response.json()["final_amount"]) == Decimal("9000.00")

    @pytest.mark.asyncio
    async def test_create_requires_staff(self, client: AsyncClient, user_headers):
        now = now_utc()
        response = await client.post(
            "/coupons",
            json={
                "code": "X100", "name": "X", "type": "fixed", "value": "100",
                "valid_from": now.isoformat(), "valid_until": (now + timedelta(days=1)).isoformat()
            },
            headers=user_headers
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_stats_endpoint(self, client: AsyncClient, patch_db, staff_headers):
        conn = patch_db("coupon_service")
        conn.set_fetchrow_return(COUPON_SELECT, CouponFactory.create())
        conn.set_fetchrow_return("COUNT(DISTINCT user_id)", {"unique_users": 0, "total_discount": Decimal("0")})

        response = await client.get("/coupons/SAVE10/stats", headers=staff_headers)

        assert response.status_code == 200
        assert response.json()["remaining_uses"] is None

    @pytest.mark.asyncio
    async def test_my_coupons_endpoint(self, client: AsyncClient, patch_db, user_headers):
        """La ruta /mine no se confunde con /{code}."""
        conn = patch_db("coupon_service")
        conn.set_fetch_return(MINE, [CouponFactory.create()])

        response = await client.get("/coupons/mine", headers=user_headers)

        assert response.status_code == 200
        assert response.json()[0]["code"] == "SAVE10"
        assert not conn.was_called_with("fetchrow", COUPON_SELECT)

    @pytest.mark.asyncio
    async def test_get_coupon_requires_staff(self, client: AsyncClient, user_headers):
        response = await client.get("/coupons/SAVE10", headers=user_headers)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_get_coupon_endpoint(self, client: AsyncClient, patch_db, staff_headers):
        conn = patch_db("coupon_service")
        conn.set_fetchrow_return(COUPON_SELECT, CouponFactory.create())

        response = await client.get("/coupons/SAVE10", headers=staff_headers)

        assert response.status_code == 200
        assert response.json()["code"] == "SAVE10"
