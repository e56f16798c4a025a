from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from logging.handlers import TimedRotatingFileHandler
from cryptography.fernet import InvalidToken
import uvicorn
import asyncio
import logging
import os
import sys

from . import config, database, models
from .core.credential_pool import CredentialPool
from .core.scheduler import Scheduler, monitor_credits
from .core.security import decrypt_token, mask_token
from .errors import UpscalerError

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_RETENTION_DAYS = 7

logger = logging.getLogger(__name__)


def configure_logging(log_dir: str = config.LOG_DIR, level=logging.INFO):
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(TimedRotatingFileHandler(
            os.path.join(log_dir, "upscaler.log"),
            when="midnight",
            backupCount=LOG_RETENTION_DAYS,
            encoding="utf-8",
        ))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)


async def restore_api_keys(pool: CredentialPool, db) -> int:
    """Re-add stored keys. Keys that no longer decrypt or validate are skipped."""
    restored = 0
    for row in db.query(models.ApiKey).order_by(models.ApiKey.id).all():
        try:
            token = decrypt_token(row.token)
        except InvalidToken:
            logger.error(f"Stored API key #{row.id} cannot be decrypted (secret key changed?)")
            continue

        try:
            credential = await pool.add(token, record_id=row.id)
        except UpscalerError as e:
            logger.warning(f"Stored API key {mask_token(token)} skipped: {e}")
            continue

        if not row.is_active:
            pool.set_active(pool.index_of(credential), False)
        restored += 1

    logger.info(f"🔑 Restored {restored} API keys")
    return restored


def create_app(pool: CredentialPool = None, scheduler: Scheduler = None, init_services: bool = True) -> FastAPI:
    """
    Build the app. Tests pass their own pool/scheduler and set
    init_services=False to skip the database and the credit monitor.
    """
    app = FastAPI(title="Topaz Batch Upscaler")

    # CORS (allow all for local dev)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.pool = pool or CredentialPool()
    app.state.scheduler = scheduler or Scheduler(app.state.pool, config.ProcessingSettings())
    app.state.monitor = None

    @app.on_event("startup")
    async def on_startup():
        if not init_services:
            return

        database.init_db()
        db = database.SessionLocal()
        try:
            app.state.scheduler.settings = config.load_settings(db)
            await restore_api_keys(app.state.pool, db)
        finally:
            db.close()

        # Start background credit refresh
        app.state.monitor = asyncio.create_task(monitor_credits(app.state.pool))

    @app.on_event("shutdown")
    async def on_shutdown():
        if app.state.monitor is not None:
            app.state.monitor.cancel()
        await app.state.scheduler.shutdown()

    from .api import endpoints
    app.include_router(endpoints.router, prefix="/api")

    return app


configure_logging()
app = create_app()

if __name__ == "__main__":
    uvicorn.run("upscaler.main:app", host="0.0.0.0", port=8000)
