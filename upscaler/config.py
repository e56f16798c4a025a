"""
Operator settings.

Settings live in the `settings` table, one JSON value per key, and are
merged over the defaults below when loaded. Process-level paths come
from `upscaler.settings`.
"""
import json
import logging
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from . import models
from .errors import ValidationError
from .settings import get_settings

logger = logging.getLogger(__name__)

API_BASE_URL = get_settings().api_base_url
LOG_DIR = get_settings().log_dir

EXPORT_VERSION = "1.0.0"
MIN_WORKERS = 1
MAX_WORKERS = 50


class ProcessingSettings(BaseModel):
    input_folder: str = ""
    output_folder: str = ""
    media_type: Literal["video", "image"] = "video"
    workers: int = Field(default=2, ge=MIN_WORKERS, le=MAX_WORKERS)

    # Video options
    model: str = "prob-4"
    frame_interpolation: str = "chf-3"  # empty string disables interpolation
    slow_motion: int = Field(default=1, ge=1)
    crop_to_fit: bool = False
    resolution: str = "1920x1080"
    remove_audio: bool = False

    # Image options
    image_model: str = "Standard V2"
    output_format: Literal["jpeg", "png"] = "jpeg"
    output_width: str = "3840"

    @field_validator("resolution")
    @classmethod
    def _check_resolution(cls, value: str) -> str:
        parts = value.lower().split("x")
        if len(parts) != 2 or not all(p.isdigit() and int(p) > 0 for p in parts):
            raise ValueError(f"resolution must look like 1920x1080, got {value!r}")
        return value.lower()

    @field_validator("output_format", mode="before")
    @classmethod
    def _normalize_format(cls, value):
        if isinstance(value, str):
            value = value.lower()
            if value == "jpg":
                return "jpeg"
        return value


def validate_settings(data: dict) -> ProcessingSettings:
    """Build settings from raw data, raising our ValidationError on bad input."""
    try:
        return ProcessingSettings.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid settings: {e}") from e


def update_settings(current: ProcessingSettings, changes: dict) -> ProcessingSettings:
    merged = current.model_dump()
    merged.update({k: v for k, v in changes.items() if v is not None})
    return validate_settings(merged)


def validate_workers(workers: int) -> int:
    if not isinstance(workers, int) or isinstance(workers, bool) or not MIN_WORKERS <= workers <= MAX_WORKERS:
        raise ValidationError(f"Workers must be between {MIN_WORKERS} and {MAX_WORKERS}, got {workers!r}")
    return workers


def load_settings(db: Session) -> ProcessingSettings:
    defaults = ProcessingSettings().model_dump()
    stored = {}
    for row in db.query(models.Setting).all():
        if row.key not in defaults:
            continue
        try:
            stored[row.key] = json.loads(row.value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring unreadable setting '{row.key}'")

    try:
        settings = ProcessingSettings.model_validate({**defaults, **stored})
    except PydanticValidationError as e:
        logger.error(f"Stored settings are invalid, using defaults: {e}")
        settings = ProcessingSettings()

    logger.info("Configuration loaded successfully")
    return settings


def save_settings(db: Session, settings: ProcessingSettings) -> None:
    for key, value in settings.model_dump().items():
        row = db.query(models.Setting).filter(models.Setting.key == key).first()
        if row is None:
            db.add(models.Setting(key=key, value=json.dumps(value)))
        else:
            row.value = json.dumps(value)
    db.commit()
    logger.info("Configuration saved successfully")


def export_settings(settings: ProcessingSettings) -> dict:
    # API keys are never part of the export
    return {
        "version": EXPORT_VERSION,
        "timestamp": datetime.utcnow().isoformat(),
        "config": settings.model_dump(),
    }


def import_settings(data: dict) -> ProcessingSettings:
    config = data.get("config")
    if not isinstance(config, dict):
        raise ValidationError("Import data has no 'config' section")
    return validate_settings({**ProcessingSettings().model_dump(), **config})
