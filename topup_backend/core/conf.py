from functools import lru_cache
from typing import Any, Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from topup_backend.core.path_conf import BASE_PATH


class Settings(BaseSettings):
    """Global configuration"""

    model_config = SettingsConfigDict(
        env_file=f'{BASE_PATH}/.env',
        env_file_encoding='utf-8',
        extra='ignore',
        case_sensitive=True,
    )

    # .env environment
    ENVIRONMENT: Literal['dev', 'prod'] = 'dev'

    # FastAPI
    FASTAPI_API_V1_PATH: str = '/api/v1'
    FASTAPI_TITLE: str = 'TopupBackend'
    FASTAPI_DESCRIPTION: str = 'Credit top-up payment reconciliation service'
    FASTAPI_DOCS_URL: str | None = '/docs'
    FASTAPI_REDOC_URL: str | None = '/redoc'
    FASTAPI_OPENAPI_URL: str | None = '/openapi'

    # .env Database
    DATABASE_URL: str = f'sqlite+aiosqlite:///{BASE_PATH}/topup.db'

    # Database
    DATABASE_ECHO: bool = False
    DATABASE_AUTO_CREATE: bool = True

    # .env MercadoPago
    MP_ACCESS_TOKEN: str = ''
    MP_SECRET_KEY: str = ''  # webhook X-Signature HMAC secret

    # MercadoPago
    MP_BASE_URL: str = 'https://api.mercadopago.com'
    MP_TIMEOUT_SECONDS: float = 10.0
    MP_SIGNATURE_TOLERANCE_SECONDS: int | None = None  # None disables the ts window
    MP_CIRCUIT_FAILURE_THRESHOLD: int = 5
    MP_CIRCUIT_RECOVERY_SECONDS: int = 60

    # Webhook / checkout return URLs
    WEBHOOK_BASE_URL: str = 'https://api-ai-mvp.com'

    # Top-up
    TOPUP_CURRENCY_ID: str = 'ARS'
    TOPUP_ITEM_TITLE: str = 'Recarga de créditos'
    TOPUP_MAX_INSTALLMENTS: int = 12

    # Credits
    CREDITS_INITIAL_BALANCE: int = 0

    # Reconciliation
    RECONCILIATION_APPROVED_GRACE_SECONDS: int = 60 * 5  # 5 minutes
    RECONCILIATION_PENDING_LOOKBACK_HOURS: int = 24
    RECONCILIATION_BATCH_LIMIT: int = 100

    # Log
    LOG_LEVEL: str = 'INFO'
    LOG_FORMAT: str = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'

    @property
    def billing_base_url(self) -> str:
        return f'{self.WEBHOOK_BASE_URL.rstrip("/")}{self.FASTAPI_API_V1_PATH}/billing'

    @property
    def mp_notification_url(self) -> str:
        return f'{self.billing_base_url}/webhook'

    @model_validator(mode='before')
    @classmethod
    def check_env(cls, values: Any) -> Any:
        """Check environment variables"""
        if values.get('ENVIRONMENT') == 'prod':
            # FastAPI
            values['FASTAPI_OPENAPI_URL'] = None
            values['FASTAPI_DOCS_URL'] = None
            values['FASTAPI_REDOC_URL'] = None

            # Database
            values.setdefault('DATABASE_AUTO_CREATE', False)

        return values


@lru_cache
def get_settings() -> Settings:
    """Get the global settings singleton"""
    return Settings()


settings = get_settings()
