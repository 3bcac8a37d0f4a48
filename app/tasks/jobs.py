"""
Periodic jobs run by the scheduler.

Each job is idempotent: with nothing eligible it does nothing and returns a
zero summary.
"""
import logging
from typing import Any, Dict

from app.config import settings
from app.database import ping
from app.services import payments_service, transfer_service, coupon_service
from app.services import discord_error_notifier
from app.services.gateways import get_provider
from app.tasks.scheduler import Scheduler

logger = logging.getLogger(__name__)


async def payment_reconciliation() -> Dict[str, int]:
    """Settle or cancel pending intents past their provider expiration"""
    logger.info("Starting payment reconciliation sweep...")
    return await payments_service.reconcile_stale_intents()


async def transfer_expiration() -> Dict[str, int]:
    logger.info("Starting transfer expiration sweep...")
    return {"expired": await transfer_service.expire_stale_transfers()}


async def coupon_expiration() -> Dict[str, int]:
    logger.info("Starting coupon expiration sweep...")
    return {"deactivated": await coupon_service.expire_coupons()}


async def health_check() -> Dict[str, Any]:
    """Database ping and provider configuration check"""
    try:
        database_ok = await ping()
    except Exception as e:
        logger.error(f"Health check database ping failed: {e}")
        database_ok = False

    provider = get_provider()

    result = {
        "database": "ok" if database_ok else "unreachable",
        "provider": provider.name,
        "provider_configured": provider.is_configured,
    }

    if not database_ok or not provider.is_configured:
        logger.warning(f"Health check degraded: {result}")
        notifier = discord_error_notifier.error_notifier
        if notifier:
            await notifier.send_warning("Health check degraded", "One or more dependencies are unhealthy", result)

    return result


def build_scheduler() -> Scheduler:
    scheduler = Scheduler()
    scheduler.register("payment_reconciliation", settings.reconciliation_interval_seconds, payment_reconciliation)
    scheduler.register("transfer_expiration", settings.transfer_expiration_interval_seconds, transfer_expiration)
    scheduler.register("coupon_expiration", settings.coupon_expiration_interval_seconds, coupon_expiration)
    scheduler.register("health_check", settings.health_check_interval_seconds, health_check)
    return scheduler
