import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Load env from the working directory .env (not under pytest)
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from invoiz.core.config import settings, validate_config
from invoiz.core.logging import configure_logging
from invoiz.core.middleware.request_id import RequestIdMiddleware
from invoiz.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from invoiz.api import health, subscription

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("invoiz")
    logger.info("Starting Invoiz backend...")
    try:
        yield
    finally:
        logger.info("Stopping Invoiz backend...")


app = FastAPI(title="Invoiz - Subscription Billing", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router)
app.include_router(subscription.router)
