import logging

from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from topup_backend.core.conf import Settings, settings as default_settings
from topup_backend.core.log import setup_logging
from topup_backend.src.billing.shared.exceptions import BillingError

logger = logging.getLogger(__name__)

health_router = APIRouter()


@health_router.get('/health')
async def health_check():
    return {'status': 'ok'}


async def billing_exception_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Billing errors that reach the app boundary"""
    status_code = 503 if exc.retryable else 400
    logger.warning(f'[TOPUP] {request.method} {request.url.path} failed: {exc.code}')
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@asynccontextmanager
async def register_init(app: FastAPI):
    """
    Startup and shutdown

    :param app: FastAPI application
    :return:
    """
    from topup_backend.database.db import create_async_engine_and_session, create_tables
    from topup_backend.src.billing.container import build_billing_services

    settings: Settings = app.state.settings

    engine, session_factory = create_async_engine_and_session(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
    if settings.DATABASE_AUTO_CREATE:
        await create_tables(engine)

    app.state.billing = build_billing_services(settings, session_factory)
    logger.info('[TOPUP] Application started')

    yield

    await app.state.billing.aclose()
    await engine.dispose()
    logger.info('[TOPUP] Application stopped')


def register_app(settings: Settings = default_settings) -> FastAPI:
    """Create the FastAPI application"""
    setup_logging(settings)

    app = FastAPI(
        title=settings.FASTAPI_TITLE,
        description=settings.FASTAPI_DESCRIPTION,
        docs_url=settings.FASTAPI_DOCS_URL,
        redoc_url=settings.FASTAPI_REDOC_URL,
        openapi_url=settings.FASTAPI_OPENAPI_URL,
        lifespan=register_init,
    )
    app.state.settings = settings

    register_router(app)
    app.add_exception_handler(BillingError, billing_exception_handler)

    return app


def register_router(app: FastAPI) -> None:
    """
    Routes

    :param app: FastAPI application
    :return:
    """
    from topup_backend.app.router import router

    app.include_router(health_router)
    app.include_router(router)
