from pydantic import BaseModel
from typing import Dict, List, Literal, Optional
from datetime import datetime


# --- API keys ---
class ApiKeyCreate(BaseModel):
    token: str


class ApiKeyActive(BaseModel):
    is_active: bool


class Credits(BaseModel):
    available: int
    reserved: int = 0
    total: int = 0


class ApiKey(BaseModel):
    index: int
    key: str  # masked
    is_active: bool
    request_count: int
    last_used: Optional[datetime] = None
    is_rate_limited: bool
    rate_limit_reset: Optional[datetime] = None
    credits: Optional[Credits] = None
    last_credit_check: Optional[datetime] = None


class PoolStats(BaseModel):
    total_count: int
    active_count: int
    total_requests: int
    rate_limited_count: int


# --- Files & jobs ---
class MediaFile(BaseModel):
    name: str
    path: str
    size: int
    extension: str
    type: str
    status: str


class Job(BaseModel):
    id: int
    file_name: str
    file_path: str
    media_type: str
    status: str
    progress: float
    phase: str
    started_at: Optional[datetime] = None
    api_key: Optional[str] = None
    request_id: Optional[str] = None
    retry_count: int
    credits_used: Optional[int] = None
    error: Optional[str] = None
    output_path: Optional[str] = None


class ClearJobsRequest(BaseModel):
    statuses: List[Literal["completed", "error", "stopped"]] = ["completed", "error", "stopped"]


# --- Settings ---
class SettingsUpdate(BaseModel):
    """Partial update. Fields left out keep their current value."""
    input_folder: Optional[str] = None
    output_folder: Optional[str] = None
    media_type: Optional[str] = None
    workers: Optional[int] = None
    model: Optional[str] = None
    frame_interpolation: Optional[str] = None
    slow_motion: Optional[int] = None
    crop_to_fit: Optional[bool] = None
    resolution: Optional[str] = None
    remove_audio: Optional[bool] = None
    image_model: Optional[str] = None
    output_format: Optional[str] = None
    output_width: Optional[str] = None


class WorkersUpdate(BaseModel):
    workers: int


class SettingsExport(BaseModel):
    version: str
    timestamp: str
    config: dict


# --- Status ---
class StatusSnapshot(BaseModel):
    state: str
    status_message: str
    active_workers: int
    workers: int
    pending_files: int
    jobs: Dict[str, int]
    api_keys: PoolStats
