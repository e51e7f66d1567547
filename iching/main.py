import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException

# Load env from the working directory's .env before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from iching.core.config import Settings, settings, validate_config
from iching.core.database import create_all_tables, get_database_url
from iching.core.logging import configure_logging
from iching.core.middleware.metrics import MetricsMiddleware
from iching.core.middleware.request_id import RequestIdMiddleware
from iching.core.validation import validate_env
from iching.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from iching.api import health, metrics, payments
from iching.features.payments.provider import PaymentGateway
from iching.features.payments.service import get_gateway


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("iching")
    logger.info("Starting I Ching payment server...")
    app.state.startup_time = time.time()
    if get_database_url():
        create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("iching").info("Stopping I Ching payment server...")


def create_app(settings_obj: Optional[Settings] = None, gateway: Optional[PaymentGateway] = None) -> FastAPI:
    """
    Build the payment server.

    Args:
        settings_obj: Settings to validate against (defaults to module settings)
        gateway: Payment gateway (defaults to Stripe configured from settings)
    """
    cfg = settings_obj or settings
    configure_logging(cfg.ENV)
    validate_env(settings_obj=cfg)
    validate_config(strict=cfg.CONFIG_STRICT, settings_obj=cfg)

    app = FastAPI(title="I Ching - Payment Server", lifespan=lifespan)
    app.state.gateway = gateway or get_gateway()

    # Middlewares
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(payments.router)
    app.include_router(health.router)
    app.include_router(metrics.router)
    return app


app = create_app()
