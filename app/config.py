from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional
from decimal import Decimal

class Settings(BaseSettings):
    # Database
    database_url: Optional[str] = Field(default=None, alias='DATABASE_URL')
    db_user: str = Field(default='postgres', alias='DB_USER')
    db_host: str = Field(default='localhost', alias='DB_HOST')
    db_password: str = Field(default='postgres', alias='DB_PASSWORD')
    db_port: int = Field(default=5432, alias='DB_PORT')
    db_name: str = Field(default='mainevents', alias='DB_NAME')
    db_apply_schema: bool = Field(default=False, alias='DB_APPLY_SCHEMA')

    # Mercado Pago - Pasarela de pagos (mercadopago.com)
    mercadopago_access_token: Optional[str] = Field(default=None, alias='MERCADOPAGO_ACCESS_TOKEN')
    mercadopago_public_key: Optional[str] = Field(default=None, alias='MERCADOPAGO_PUBLIC_KEY')
    mercadopago_webhook_secret: Optional[str] = Field(default=None, alias='MERCADOPAGO_WEBHOOK_SECRET')
    mercadopago_environment: str = Field(default='sandbox', alias='MERCADOPAGO_ENVIRONMENT')
    payment_provider: str = Field(default='mercadopago', alias='PAYMENT_PROVIDER')

    # Ticketing rules
    default_currency: str = Field(default='ARS', alias='DEFAULT_CURRENCY')
    qr_signing_secret: str = Field(default='mainevents-dev-qr-secret', alias='QR_SIGNING_SECRET')
    payment_expiration_hours: int = Field(default=24, alias='PAYMENT_EXPIRATION_HOURS')
    transfer_expiration_days: int = Field(default=7, alias='TRANSFER_EXPIRATION_DAYS')
    transfer_platform_fee_percent: Decimal = Field(default=Decimal("0"), alias='TRANSFER_PLATFORM_FEE_PERCENT')
    ticket_grace_days: int = Field(default=30, alias='TICKET_GRACE_DAYS')

    # Scheduler
    scheduler_enabled: bool = Field(default=True, alias='SCHEDULER_ENABLED')
    reconciliation_interval_seconds: int = Field(default=2 * 60 * 60, alias='RECONCILIATION_INTERVAL_SECONDS')
    transfer_expiration_interval_seconds: int = Field(default=30 * 60, alias='TRANSFER_EXPIRATION_INTERVAL_SECONDS')
    coupon_expiration_interval_seconds: int = Field(default=60 * 60, alias='COUPON_EXPIRATION_INTERVAL_SECONDS')
    health_check_interval_seconds: int = Field(default=15 * 60, alias='HEALTH_CHECK_INTERVAL_SECONDS')

    stats_cache_ttl_seconds: int = Field(default=300, alias='STATS_CACHE_TTL_SECONDS')

    # App settings
    app_env: str = Field(default="development", alias='APP_ENV')
    environment: str = Field(default="development", alias='NODE_ENV')
    base_url: str = Field(default="http://localhost:8001", alias='BACKEND_URL')
    frontend_url: str = Field(default="http://localhost:3000", alias='FRONTEND_URL')

    # FastAPI specific
    port: int = Field(default=8001, alias='FASTAPI_PORT')
    host: str = Field(default="0.0.0.0", alias='FASTAPI_HOST')
    debug: bool = Field(default=True, alias='DEBUG')

    # CORS configuration
    cors_origins: str = Field(default="*", alias='CORS_ORIGINS')

    # Discord webhooks
    discord_error_webhook_url: Optional[str] = Field(default=None, alias='DISCORD_ERROR_WEBHOOK_URL')

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def db_connection_params(self) -> dict:
        if self.database_url:
            return {"dsn": self.database_url}
        return {
            "host": self.db_host,
            "port": self.db_port,
            "user": self.db_user,
            "password": self.db_password,
            "database": self.db_name,
        }

    @property
    def webhook_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/payments/webhook"

settings = Settings()
