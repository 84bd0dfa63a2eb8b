import asyncio
import os
from typing import Awaitable, Callable

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from citizen_api.config import settings
from citizen_api.database import get_db
from citizen_api.dependencies import build_processor
from citizen_api.logging_config import get_logger, setup_logging
from citizen_api.models import Company, Department, Grievance
from citizen_api.routers import admin, webhook
from citizen_api.services.redis_client import close_redis

setup_logging(settings.log_level)

app = FastAPI(
    title="Citizen Services API",
    description="WhatsApp webhook engine for citizen grievance intake",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(admin.router)

worker_logger = get_logger("background_worker")
_worker_tasks: list[asyncio.Task] = []


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _are_background_workers_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("BACKGROUND_WORKERS_ENABLED"), default=True)


async def _worker_loop(name: str, interval_seconds: float, job: Callable[[], Awaitable[int]]) -> None:
    interval_seconds = max(interval_seconds, 0.1)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            handled = await job()
            if handled:
                worker_logger.info(f"{name} worker handled {handled} items")
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error(
                f"{name} worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_background_workers() -> None:
    if getattr(app.state, "processor", None) is None:
        app.state.processor = build_processor()
    if not _are_background_workers_enabled():
        return

    processor = app.state.processor
    if not any(not task.done() for task in _worker_tasks):
        _worker_tasks.clear()
        _worker_tasks.append(
            asyncio.create_task(
                _worker_loop(
                    "session_sweeper",
                    settings.session_sweep_interval_seconds,
                    lambda: processor.evict_stale_sessions(settings.session_idle_minutes),
                )
            )
        )
        _worker_tasks.append(
            asyncio.create_task(
                _worker_loop(
                    "followup",
                    settings.followup_worker_interval_seconds,
                    processor.run_due_followups,
                )
            )
        )
        worker_logger.info("Background workers started")


@app.on_event("shutdown")
async def stop_background_workers() -> None:
    for task in _worker_tasks:
        task.cancel()
    for task in _worker_tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    _worker_tasks.clear()
    await close_redis()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    companies_count = db.query(Company).count()
    departments_count = db.query(Department).count()
    grievances_count = db.query(Grievance).count()
    return {
        "status": "ok",
        "companies": companies_count,
        "departments": departments_count,
        "grievances": grievances_count,
    }
