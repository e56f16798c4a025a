"""
HTTP client for the Topaz enhancement API.

Blocking `requests` calls run in a worker thread via asyncio.to_thread so
many jobs can wait on the network at once. Every failure is raised as one
of the errors in upscaler.errors; every known response variant for upload
and download URLs is normalized here so callers only ever see one value.
"""
import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import requests

from ..config import API_BASE_URL
from ..errors import (
    CreditExhausted,
    InvalidCredential,
    NetworkError,
    RateLimited,
    RemoteRequestError,
    is_credit_error,
)
from .media import MediaInfo
from .security import mask_token

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 60
UPLOAD_TIMEOUT = 300
DOWNLOAD_TIMEOUT = 600
DEFAULT_RETRY_AFTER_MS = 60000
DOWNLOAD_CHUNK_SIZE = 1024 * 1024

UPSCALE_MODELS = ["prob-4", "ahq-12", "amq-13", "alq-13", "nyx-3", "nxf-1", "rhea-1", "ghq-5", "gcg-5"]
INTERPOLATION_MODELS = ["apo-8", "apf-2", "chr-2", "chf-3"]

IMAGE_CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
}


@dataclass
class CreditBalance:
    available: int = 0
    reserved: int = 0
    total: int = 0


@dataclass
class VideoOptions:
    model: str = "prob-4"
    resolution: str = "1920x1080"
    frame_interpolation: Optional[str] = "chf-3"
    slow_motion: int = 1
    crop_to_fit: bool = False

    @classmethod
    def from_settings(cls, settings) -> "VideoOptions":
        return cls(
            model=settings.model,
            resolution=settings.resolution,
            frame_interpolation=settings.frame_interpolation or None,
            slow_motion=settings.slow_motion or 1,
            crop_to_fit=bool(settings.crop_to_fit),
        )


@dataclass
class StatusResult:
    status: str
    progress: float = 0.0
    download_url: Optional[str] = None
    message: Optional[str] = None
    raw: dict = field(default_factory=dict)


def parse_resolution(value: str) -> tuple:
    width, height = (int(p) for p in value.lower().split("x"))
    return width, height


def output_resolution(source: MediaInfo, resolution: str) -> tuple:
    """Target size, swapped so the output keeps the source orientation."""
    base_width, base_height = parse_resolution(resolution)
    source_width = source.width or base_width
    source_height = source.height or base_height
    if (source_height > source_width) != (base_height > base_width):
        return base_height, base_width
    return base_width, base_height


def build_filters(model: str, frame_interpolation: Optional[str] = "chf-3",
                  slow_motion: int = 1, crop_to_fit: bool = False) -> List[dict]:
    upscale = {"model": model if model in UPSCALE_MODELS else "prob-4"}
    if crop_to_fit:
        upscale["cropToFit"] = True
    filters = [upscale]
    if frame_interpolation in INTERPOLATION_MODELS:
        filters.append({
            "model": frame_interpolation,
            "slowmo": slow_motion,
            "fps": 60,
            "duplicate": False,
        })
    return filters


def build_video_request(source: MediaInfo, options: VideoOptions) -> dict:
    out_width, out_height = output_resolution(source, options.resolution)
    return {
        "source": {
            "resolution": {"width": source.width, "height": source.height},
            "container": source.container or "mp4",
            "size": source.size,
            "duration": source.duration,
            "frameCount": source.frame_count,
            "frameRate": source.frame_rate,
        },
        "output": {
            "resolution": {"width": out_width, "height": out_height},
            "frameRate": 30,
            "audioTransfer": "None",
            "audioCodec": "AAC",
            "videoEncoder": "H264",
            "videoProfile": "High",
            "dynamicCompressionLevel": "High",
        },
        "filters": build_filters(options.model, options.frame_interpolation,
                                 options.slow_motion, options.crop_to_fit),
    }


def _first(value) -> Optional[str]:
    if isinstance(value, list) and value:
        return value[0]
    if isinstance(value, str) and value:
        return value
    return None


def extract_upload_url(data: dict) -> Optional[str]:
    """The accept endpoint has answered with `urls`, `uploadUrls` or `uploadUrl`."""
    if not isinstance(data, dict):
        return None
    for key in ("urls", "uploadUrls", "uploadUrl"):
        url = _first(data.get(key))
        if url:
            return url
    nested = data.get("data")
    if isinstance(nested, dict):
        return extract_upload_url(nested)
    return None


def extract_download_url(data: dict) -> Optional[str]:
    """Status answers carry the result at `download.url` or `downloadUrl`."""
    if not isinstance(data, dict):
        return None
    download = data.get("download")
    if isinstance(download, dict) and download.get("url"):
        return download["url"]
    if isinstance(download, str) and download:
        return download
    if data.get("downloadUrl"):
        return data["downloadUrl"]
    nested = data.get("data")
    if isinstance(nested, dict):
        return extract_download_url(nested)
    return None


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            if isinstance(body.get(key), str) and body[key]:
                return body[key]
    text = (response.text or "").strip()
    return text[:500] if text else f"HTTP {response.status_code} {response.reason}"


def raise_for_response(response: requests.Response) -> None:
    if response.ok:
        return
    message = _error_message(response)
    status = response.status_code

    if status == 429:
        retry_after = response.headers.get("Retry-After")
        try:
            retry_after_ms = int(float(retry_after) * 1000) if retry_after else DEFAULT_RETRY_AFTER_MS
        except ValueError:
            retry_after_ms = DEFAULT_RETRY_AFTER_MS
        raise RateLimited(message, retry_after_ms=retry_after_ms)
    if status in (401, 403):
        raise InvalidCredential(message)
    if status == 402 or is_credit_error(message):
        raise CreditExhausted(message, status_code=status)
    raise RemoteRequestError(message, status_code=status)


class TopazClient:
    """One client per API key."""

    def __init__(self, api_key: str, base_url: str = API_BASE_URL):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update({
            "X-API-Key": api_key,
            "accept": "application/json",
        })

    def __repr__(self):
        return f"TopazClient({mask_token(self.api_key)})"

    def _send(self, method: str, path: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", REQUEST_TIMEOUT)
        try:
            response = self.session.request(method, f"{self.base_url}{path}", **kwargs)
        except requests.RequestException as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e
        raise_for_response(response)
        return response

    def _json(self, method: str, path: str, **kwargs) -> dict:
        response = self._send(method, path, **kwargs)
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"data": data}

    # ----------------------------------------------------------------- image

    def _enhance_image(self, path: str, model: str, output_format: str, output_width: str) -> bytes:
        if not os.path.exists(path):
            raise FileNotFoundError(f"Input file does not exist: {path}")

        output_format = "png" if (output_format or "").lower() == "png" else "jpeg"
        content_type = IMAGE_CONTENT_TYPES.get(os.path.splitext(path)[1].lower(), "image/jpeg")
        with open(path, "rb") as f:
            response = self._send(
                "POST",
                "/image/v1/enhance",
                headers={"accept": f"image/{output_format}"},
                data={
                    "model": model or "Standard V2",
                    "output_width": str(output_width or "3840"),
                    "crop_to_fill": "false",
                    "output_format": output_format,
                },
                files={"image": (os.path.basename(path), f, content_type)},
                timeout=UPLOAD_TIMEOUT,
            )
        return response.content

    async def create_image_request(self, path: str, model: str = "Standard V2",
                                   output_format: str = "jpeg", output_width: str = "3840") -> bytes:
        """Synchronous enhance call; returns the enhanced image bytes."""
        return await asyncio.to_thread(self._enhance_image, path, model, output_format, output_width)

    # ----------------------------------------------------------------- video

    async def create_video_request(self, source: MediaInfo, options: VideoOptions) -> str:
        data = await asyncio.to_thread(self._json, "POST", "/video/", json=build_video_request(source, options))
        request_id = data.get("requestId")
        if not request_id:
            raise RemoteRequestError(f"No requestId in create response: {data}")
        return request_id

    async def accept_video_request(self, request_id: str) -> str:
        data = await asyncio.to_thread(self._json, "PATCH", f"/video/{request_id}/accept")
        upload_url = extract_upload_url(data)
        if not upload_url:
            raise RemoteRequestError(f"No upload URL found in response: {data}")
        return upload_url

    def _upload(self, path: str, upload_url: str) -> str:
        try:
            with open(path, "rb") as f:
                response = requests.put(upload_url, data=f, headers={"Content-Type": "video/mp4"},
                                        timeout=UPLOAD_TIMEOUT)
        except requests.RequestException as e:
            raise NetworkError(f"Upload failed: {e}") from e
        raise_for_response(response)
        return (response.headers.get("ETag") or "").replace('"', "")

    async def upload_file(self, path: str, upload_url: str) -> str:
        """PUT the source file to the pre-signed URL, returning its eTag."""
        return await asyncio.to_thread(self._upload, path, upload_url)

    async def complete_upload(self, request_id: str, parts: List[dict]) -> None:
        await asyncio.to_thread(self._json, "PATCH", f"/video/{request_id}/complete-upload",
                                json={"uploadResults": parts})

    async def check_status(self, request_id: str) -> StatusResult:
        data = await asyncio.to_thread(self._json, "GET", f"/video/{request_id}/status")
        try:
            progress = float(data.get("progress") or 0)
        except (TypeError, ValueError):
            progress = 0.0
        return StatusResult(
            status=str(data.get("status") or "unknown").lower(),
            progress=progress,
            download_url=extract_download_url(data),
            message=data.get("message"),
            raw=data,
        )

    def _download(self, url: str, dest_path: str, on_progress: Optional[Callable[[int], None]]) -> None:
        try:
            with requests.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT) as response:
                raise_for_response(response)
                total = int(response.headers.get("Content-Length") or 0)
                received = 0
                with open(dest_path, "wb") as out:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        if not chunk:
                            continue
                        out.write(chunk)
                        received += len(chunk)
                        if on_progress and total:
                            on_progress(round(received * 100 / total))
        except requests.RequestException as e:
            raise NetworkError(f"Download failed: {e}") from e

    async def download(self, url: str, dest_path: str, on_progress: Optional[Callable[[int], None]] = None) -> None:
        callback = None
        if on_progress:
            loop = asyncio.get_running_loop()

            def callback(pct):
                loop.call_soon_threadsafe(on_progress, pct)

        await asyncio.to_thread(self._download, url, dest_path, callback)

    # --------------------------------------------------------------- account

    async def get_credit_balance(self) -> CreditBalance:
        data = await asyncio.to_thread(self._json, "GET", "/account/v1/credits/balance")
        return CreditBalance(
            available=data.get("available_credits") or 0,
            reserved=data.get("reserved_credits") or 0,
            total=data.get("total_credits") or 0,
        )
