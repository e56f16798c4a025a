from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from dataclasses import asdict
from typing import List
import logging

from .. import config, models, schemas
from ..database import get_db
from ..errors import (
    InvalidCredential,
    LocalIOError,
    NetworkError,
    NotFoundError,
    RemoteRequestError,
    UpscalerError,
    ValidationError,
    friendly_message,
)
from ..core.job_queue import JobStatus
from ..core.security import encrypt_token

logger = logging.getLogger(__name__)

router = APIRouter()


def http_error(e: UpscalerError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (ValidationError, InvalidCredential, LocalIOError)):
        return HTTPException(status_code=400, detail=friendly_message(e, "api"))
    if isinstance(e, (NetworkError, RemoteRequestError)):
        return HTTPException(status_code=502, detail=friendly_message(e, "api"))
    return HTTPException(status_code=500, detail=friendly_message(e, "api"))


def get_scheduler(request: Request):
    return request.app.state.scheduler


def get_pool(request: Request):
    return request.app.state.pool


def _key_view(entry: dict) -> dict:
    credits = entry["credits"]
    return {**entry, "credits": asdict(credits) if credits is not None else None}


# --- Status ---
@router.get("/status", response_model=schemas.StatusSnapshot)
def read_status(scheduler=Depends(get_scheduler)):
    return scheduler.snapshot()


# --- Processing control ---
@router.post("/processing/start", response_model=schemas.StatusSnapshot)
async def start_processing(scheduler=Depends(get_scheduler)):
    try:
        await scheduler.start()
    except UpscalerError as e:
        raise http_error(e)
    return scheduler.snapshot()


@router.post("/processing/pause", response_model=schemas.StatusSnapshot)
async def pause_processing(scheduler=Depends(get_scheduler)):
    try:
        await scheduler.pause()
    except UpscalerError as e:
        raise http_error(e)
    return scheduler.snapshot()


@router.post("/processing/resume", response_model=schemas.StatusSnapshot)
async def resume_processing(scheduler=Depends(get_scheduler)):
    try:
        await scheduler.resume()
    except UpscalerError as e:
        raise http_error(e)
    return scheduler.snapshot()


@router.post("/processing/stop", response_model=schemas.StatusSnapshot)
async def stop_processing(scheduler=Depends(get_scheduler)):
    await scheduler.stop()
    return scheduler.snapshot()


# --- Files ---
@router.get("/files", response_model=List[schemas.MediaFile])
def read_files(scheduler=Depends(get_scheduler)):
    return [f.to_dict() for f in scheduler.files]


@router.post("/files/refresh", response_model=List[schemas.MediaFile])
def refresh_files(scheduler=Depends(get_scheduler)):
    try:
        files = scheduler.load_files()
    except UpscalerError as e:
        raise http_error(e)
    return [f.to_dict() for f in files]


# --- Jobs ---
@router.get("/jobs", response_model=List[schemas.Job])
def read_jobs(scheduler=Depends(get_scheduler)):
    return [job.to_dict() for job in scheduler.queue]


@router.get("/jobs/{job_id}", response_model=schemas.Job)
def read_job(job_id: int, scheduler=Depends(get_scheduler)):
    try:
        return scheduler.get_job(job_id).to_dict()
    except UpscalerError as e:
        raise http_error(e)


@router.delete("/jobs/{job_id}")
def dismiss_job(job_id: int, scheduler=Depends(get_scheduler)):
    try:
        scheduler.dismiss(job_id)
    except UpscalerError as e:
        raise http_error(e)
    return {"ok": True}


@router.post("/jobs/{job_id}/reset", response_model=schemas.Job)
async def reset_job(job_id: int, scheduler=Depends(get_scheduler)):
    try:
        job = scheduler.reset(job_id)
    except UpscalerError as e:
        raise http_error(e)
    return job.to_dict()


@router.post("/jobs/clear")
def clear_jobs(req: schemas.ClearJobsRequest, scheduler=Depends(get_scheduler)):
    removed = scheduler.queue.clear_terminal(JobStatus(s) for s in req.statuses)
    return {"ok": True, "removed": removed}


# --- API keys ---
@router.get("/keys", response_model=List[schemas.ApiKey])
def read_keys(pool=Depends(get_pool)):
    return [_key_view(entry) for entry in pool.describe()]


@router.get("/keys/stats", response_model=schemas.PoolStats)
def read_key_stats(pool=Depends(get_pool)):
    return pool.stats()


@router.post("/keys", response_model=schemas.ApiKey)
async def create_key(key: schemas.ApiKeyCreate, pool=Depends(get_pool), db: Session = Depends(get_db)):
    try:
        credential = await pool.add(key.token)
    except UpscalerError as e:
        raise http_error(e)

    db_key = models.ApiKey(token=encrypt_token(credential.token), is_active=True)
    db.add(db_key)
    db.commit()
    db.refresh(db_key)
    credential.record_id = db_key.id

    index = pool.index_of(credential)
    return _key_view(pool.describe()[index])


@router.delete("/keys/{index}")
def delete_key(index: int, pool=Depends(get_pool), db: Session = Depends(get_db)):
    removed = pool.remove(index)
    if removed is None:
        raise HTTPException(status_code=404, detail="API key not found")

    if removed.record_id is not None:
        db_key = db.query(models.ApiKey).filter(models.ApiKey.id == removed.record_id).first()
        if db_key:
            db.delete(db_key)
            db.commit()
    return {"ok": True}


@router.put("/keys/{index}/active", response_model=schemas.ApiKey)
def set_key_active(index: int, req: schemas.ApiKeyActive, pool=Depends(get_pool), db: Session = Depends(get_db)):
    credential = pool.set_active(index, req.is_active)
    if credential is None:
        raise HTTPException(status_code=404, detail="API key not found")

    if credential.record_id is not None:
        db_key = db.query(models.ApiKey).filter(models.ApiKey.id == credential.record_id).first()
        if db_key:
            db_key.is_active = req.is_active
            db.commit()
    return _key_view(pool.describe()[index])


@router.post("/keys/refresh", response_model=List[schemas.ApiKey])
async def refresh_keys(pool=Depends(get_pool)):
    await pool.refresh_all_credits()
    return [_key_view(entry) for entry in pool.describe()]


# --- Settings ---
@router.get("/settings")
def read_settings(scheduler=Depends(get_scheduler)):
    return scheduler.settings.model_dump()


@router.put("/settings")
async def update_settings(req: schemas.SettingsUpdate, scheduler=Depends(get_scheduler),
                          db: Session = Depends(get_db)):
    try:
        settings = config.update_settings(scheduler.settings, req.model_dump())
        scheduler.update_settings(settings)
    except UpscalerError as e:
        raise http_error(e)
    config.save_settings(db, settings)
    return settings.model_dump()


@router.put("/settings/workers")
async def update_workers(req: schemas.WorkersUpdate, scheduler=Depends(get_scheduler),
                         db: Session = Depends(get_db)):
    try:
        scheduler.set_workers(req.workers)
    except UpscalerError as e:
        raise http_error(e)
    config.save_settings(db, scheduler.settings)
    return scheduler.settings.model_dump()


@router.get("/settings/export", response_model=schemas.SettingsExport)
def export_settings(scheduler=Depends(get_scheduler)):
    return config.export_settings(scheduler.settings)


@router.post("/settings/import")
async def import_settings(data: schemas.SettingsExport, scheduler=Depends(get_scheduler),
                          db: Session = Depends(get_db)):
    try:
        settings = config.import_settings(data.model_dump())
        scheduler.update_settings(settings)
    except UpscalerError as e:
        raise http_error(e)
    config.save_settings(db, settings)
    logger.info(f"Settings imported (version {data.version})")
    return settings.model_dump()
