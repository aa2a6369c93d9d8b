# main.py
from contextlib import asynccontextmanager

import uvicorn
from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI

from auth import auth_router
from config import get_settings
from database import SessionLocal, init_db
from exceptions import register_exception_handlers
from log import configure_logging, get_logger
from notifications import sweep_all_users
from router import router

logger = get_logger(__name__)


def generate_due_date_reminders():
    try:
        sweep_all_users(SessionLocal)
    except Exception:
        logger.exception("notification_sweep_failed")


def start_scheduler(settings):
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        generate_due_date_reminders,
        "interval",
        minutes=settings.notification_sweep_minutes,
        id="due_date_reminders",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("scheduler_started", minutes=settings.notification_sweep_minutes)
    return scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings)
    init_db()
    scheduler = start_scheduler(settings) if settings.notification_sweep_enabled else None
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.shutdown(wait=False)


app = FastAPI(title="Personal Finance Ledger API", lifespan=lifespan)
register_exception_handlers(app)

app.include_router(router, prefix="/api", tags=["ledger"])
app.include_router(auth_router, prefix="/auth", tags=["authentication"])


@app.get("/")
def home():
    return {"message": "Welcome to Personal Finance Ledger API"}


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8000)
