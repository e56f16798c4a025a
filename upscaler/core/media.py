"""
Local media helpers: folder discovery, ffprobe metadata and ffmpeg audio removal.
"""
import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, asdict
from typing import Callable, List, Optional

from ..errors import LocalIOError

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = [".mp4", ".mov"]
IMAGE_EXTENSIONS = [".jpg", ".jpeg", ".png"]

_FFMPEG_TIME = re.compile(r"time=(\d{2}):(\d{2}):(\d{2})")


@dataclass
class MediaInfo:
    width: int = 1920
    height: int = 1080
    duration: int = 10
    frame_rate: int = 30
    frame_count: int = 300
    container: str = "mp4"
    size: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def media_type_for(path: str) -> Optional[str]:
    ext = os.path.splitext(path)[1].lower()
    if ext in VIDEO_EXTENSIONS:
        return "video"
    if ext in IMAGE_EXTENSIONS:
        return "image"
    return None


def scan_media_files(folder: str) -> List[dict]:
    """List supported media files directly inside `folder`, sorted by name."""
    if not os.path.isdir(folder):
        raise LocalIOError(f"Input folder does not exist: {folder}")

    found = []
    for name in sorted(os.listdir(folder)):
        path = os.path.join(folder, name)
        if not os.path.isfile(path):
            continue
        kind = media_type_for(name)
        if kind is None:
            continue
        found.append({
            "name": name,
            "path": path,
            "size": os.path.getsize(path),
            "extension": os.path.splitext(name)[1].lower(),
            "type": kind,
        })
    return found


def parse_frame_rate(value: Optional[str]) -> int:
    """ffprobe reports rates as "30000/1001"; round to whole frames."""
    if not value:
        return 30
    parts = value.split("/")
    try:
        if len(parts) == 2:
            denominator = int(parts[1])
            if denominator == 0:
                return 30
            return round(int(parts[0]) / denominator)
        return int(value) or 30
    except ValueError:
        return 30


async def _probe(path: str) -> dict:
    proc = await asyncio.create_subprocess_exec(
        "ffprobe", "-v", "quiet", "-print_format", "json", "-show_format", "-show_streams", path,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise LocalIOError(f"ffprobe failed: {stderr.decode(errors='replace')}")
    return json.loads(stdout.decode())


async def get_media_info(path: str) -> MediaInfo:
    """
    Best-effort metadata for a video. Falls back to 1920x1080/10s/30fps
    defaults when ffprobe is missing or cannot read the file.
    """
    try:
        size = os.path.getsize(path)
    except OSError as e:
        raise LocalIOError(f"Error getting video info: {e}") from e

    ext = os.path.splitext(path)[1].lower().lstrip(".")
    info = MediaInfo(size=size, container="mp4" if ext == "mp4" else ext)

    try:
        probe = await _probe(path)
    except (OSError, LocalIOError, ValueError) as e:
        logger.info(f"ffprobe not available for {os.path.basename(path)}, using default values ({e})")
        return info

    stream = next((s for s in probe.get("streams", []) if s.get("codec_type") == "video"), None)
    if stream is None:
        logger.info(f"No video stream found in {os.path.basename(path)}, using default values")
        return info

    try:
        duration = float(probe.get("format", {}).get("duration") or 10)
    except ValueError:
        duration = 10.0
    frame_rate = parse_frame_rate(stream.get("r_frame_rate")) or 30

    info.width = int(stream.get("width") or info.width)
    info.height = int(stream.get("height") or info.height)
    info.duration = round(duration)
    info.frame_rate = frame_rate
    info.frame_count = round(duration * frame_rate)
    format_name = probe.get("format", {}).get("format_name")
    if format_name:
        info.container = format_name.split(",")[0]
    return info


async def strip_audio(input_path: str, output_path: str, on_progress: Optional[Callable[[float], None]] = None) -> None:
    """Copy the video stream of `input_path` to `output_path` without audio."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "ffmpeg", "-i", input_path, "-c:v", "copy", "-an", "-y", output_path,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise LocalIOError(f"ffmpeg error: {e}") from e

    errors = []
    while True:
        # ffmpeg ends its stats lines with \r, so read chunks rather than lines
        chunk = await proc.stderr.read(4096)
        if not chunk:
            break
        text = chunk.decode(errors="replace")
        errors.append(text)
        match = _FFMPEG_TIME.search(text)
        if match and on_progress:
            hours, minutes, seconds = (int(g) for g in match.groups())
            elapsed = hours * 3600 + minutes * 60 + seconds
            # Rough estimate, total duration is not known here
            on_progress(min(90, elapsed * 2))

    code = await proc.wait()
    if code != 0:
        raise LocalIOError(f"ffmpeg failed with code {code}: {''.join(errors[-20:])}")
    if on_progress:
        on_progress(100)
