import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

# Load env from entitlement_sync/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from entitlement_sync.api import billing, health  # noqa: E402
from entitlement_sync.core.config import settings, validate_config  # noqa: E402
from entitlement_sync.core.database import create_all_tables  # noqa: E402
from entitlement_sync.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from entitlement_sync.core.logging import LOGGER_NAME, configure_logging  # noqa: E402
from entitlement_sync.core.middleware.request_id import RequestIdMiddleware  # noqa: E402


configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger(LOGGER_NAME)
    logger.info("Starting entitlement sync service...")
    app.state.startup_time = time.time()
    create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping entitlement sync service...")


app = FastAPI(title="Entitlement Sync", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(billing.router, prefix="/api", tags=["billing"])
app.include_router(health.root_router, tags=["health"])
