"""FastAPI entry point for the creator payments backend."""
from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from creator_backend.app.routes.billing import router as billing_router
from creator_backend.app.billing.repository import PostgresBillingRepository
from creator_backend.app.services.billing import get_billing_config, get_billing_repository

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("billing")

app = FastAPI(title="Creator Payments API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_billing_config().app_url.rstrip("/")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)


@app.get("/health")
def health():
    config = get_billing_config()
    return {"ok": True, "provider": config.provider_name, "store": config.store_backend}


@app.on_event("startup")
def _log_billing_configuration() -> None:
    config = get_billing_config()
    logger.info(
        "Billing configured: provider=%s store=%s currency=%s webhook_secret=%s",
        config.provider_name,
        config.store_backend,
        config.currency,
        "set" if config.webhook_secret else "missing",
    )


@app.on_event("startup")
def _apply_billing_schema() -> None:
    repository = get_billing_repository()
    if isinstance(repository, PostgresBillingRepository):
        repository.apply_schema()
