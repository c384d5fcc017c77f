"""FastAPI application hosting the billing webhook endpoints."""
from __future__ import annotations

import logging

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI

from paysync import app_context
from paysync.app.routes.billing import router as billing_router
from paysync.app.services.billing import get_reconciliation_config
from paysync.config import load_database_config
from paysync.scheduler import (
    get_scheduler_metrics,
    shutdown_billing_scheduler,
    start_billing_scheduler,
)

load_dotenv()

logger = logging.getLogger(__name__)

DB_CFG = load_database_config()


def get_conn():
    return psycopg2.connect(**DB_CFG)


app_context.configure(get_conn=get_conn)

app = FastAPI(title="Paysync Billing Reconciliation")

app.include_router(billing_router)


@app.on_event("startup")
def start_scheduler() -> None:
    config = get_reconciliation_config()
    if config.scheduler_enabled:
        start_billing_scheduler(config)
    else:
        logger.info("Billing scheduler disabled")


@app.on_event("shutdown")
def stop_scheduler() -> None:
    shutdown_billing_scheduler()


@app.get("/health/billing-jobs")
def billing_job_health():
    return {"jobs": get_scheduler_metrics()}
