import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load env from the project .env (tests configure the environment themselves)
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from chatgate.core.config import settings, validate_config
from chatgate.core.database import create_all_tables, get_database_url
from chatgate.core.logging import configure_logging
from chatgate.core.middleware.request_id import RequestIdMiddleware
from chatgate.core.validation import validate_env
from chatgate.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from chatgate.api import chat, conversations, usage, health
from chatgate.features.ai.backends import build_dispatcher
from chatgate.features.chat.service import GovernancePolicy
from chatgate.features.plans.service import get_plan_table

configure_logging(settings.ENV, level=settings.LOG_LEVEL, fmt=settings.LOG_FORMAT)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("chatgate")
    logger.info("Starting chatgate...")
    app.state.startup_time = time.time()
    if get_database_url():
        create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("chatgate").info("Stopping chatgate...")


app = FastAPI(title="chatgate", lifespan=lifespan)

# Immutable runtime wiring; tests swap the dispatcher for scripted backends
app.state.plan_table = get_plan_table()
app.state.policy = GovernancePolicy.from_settings(settings)
app.state.dispatcher = build_dispatcher(settings)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[
        "x-request-id",
        "X-Subscription-Tier",
        "X-Daily-Messages-Remaining",
        "X-Active-Conversations-Remaining",
    ],
)

app.include_router(chat.router)
app.include_router(conversations.router)
app.include_router(usage.router)
app.include_router(health.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("chatgate.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
