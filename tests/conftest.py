"""
Configuración global de pytest y fixtures compartidos.
"""
import pytest
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport
from unittest.mock import patch
import sys
import os

# Add app to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.main import app
from app.services import payments_service, coupon_service

from tests.utils.mocks import MockDBConnection, MockDBContextManager, FakeProvider, identity_headers


# ============================================================================
# Cliente HTTP Async
# ============================================================================

@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """Cliente HTTP async para hacer requests al API (sin lifespan: no hay pool ni scheduler)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ============================================================================
# Estado global entre tests
# ============================================================================

@pytest.fixture(autouse=True)
def clear_stats_caches():
    """Las estadísticas se cachean a nivel de módulo."""
    payments_service._stats_cache.clear()
    coupon_service._stats_cache.clear()
    yield
    payments_service._stats_cache.clear()
    coupon_service._stats_cache.clear()


# ============================================================================
# Mock de Base de Datos
# ============================================================================

@pytest.fixture
def mock_conn() -> MockDBConnection:
    return MockDBConnection()


@pytest.fixture
def patch_db(mock_conn):
    """
    Parchea get_db_connection en los módulos indicados.

    Uso: patch_db("payments_service", "webhook_service")
    """
    patchers = []

    def _patch(*modules: str) -> MockDBConnection:
        for module in modules:
            patcher = patch(
                f"app.services.{module}.get_db_connection",
                side_effect=lambda *args, **kwargs: MockDBContextManager(mock_conn)
            )
            patcher.start()
            patchers.append(patcher)
        return mock_conn

    yield _patch

    for patcher in reversed(patchers):
        patcher.stop()


# ============================================================================
# Proveedor de pagos
# ============================================================================

@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def patch_provider(fake_provider):
    """Parchea get_provider donde los servicios lo consultan."""
    with patch("app.services.payments_service.get_provider", return_value=fake_provider), \
         patch("app.services.webhook_service.get_provider", return_value=fake_provider):
        yield fake_provider


# ============================================================================
# Identidad
# ============================================================================

@pytest.fixture
def user_headers() -> dict:
    """Headers de un comprador."""
    return identity_headers("test-user-123", "user")


@pytest.fixture
def staff_headers() -> dict:
    """Headers de personal de puerta."""
    return identity_headers("staff-1", "staff", "staff@test.com")
