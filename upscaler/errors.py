"""
Error types for the batch upscaler.

Everything raised by the credential pool, the remote client and the job
state machine derives from UpscalerError so callers can catch one base.
"""
from typing import Optional

CREDIT_ERROR_MARKERS = (
    "credit refill in progress",
    "insufficient credits",
    "no credits",
)


class UpscalerError(Exception):
    """Base exception for all upscaler failures."""
    pass


class ValidationError(UpscalerError):
    """Bad operator input. Raised before any state is mutated."""
    pass


class NotFoundError(UpscalerError):
    """Unknown job id or key index."""
    pass


class InvalidCredential(UpscalerError):
    """The remote service rejected an API key."""
    pass


class NetworkError(UpscalerError):
    """A request to the remote service could not be completed."""
    pass


class RemoteRequestError(UpscalerError):
    """The remote service answered with an error we have no better class for."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class RateLimited(RemoteRequestError):
    def __init__(self, message: str, retry_after_ms: int = 60000):
        self.retry_after_ms = retry_after_ms
        super().__init__(message, status_code=429)


class CreditExhausted(RemoteRequestError):
    """The key has no usable credit right now (empty or refill in progress)."""
    pass


class RemoteProcessingFailed(UpscalerError):
    """The service reported the job itself as failed."""
    pass


class ProcessingTimeout(UpscalerError):
    def __init__(self, checks: int, interval_seconds: float, last_status: Optional[str] = None):
        self.checks = checks
        self.last_status = last_status
        minutes = checks * interval_seconds / 60
        super().__init__(
            f"Processing timeout after {checks} status checks ({minutes:g} minutes). "
            f"Last status: {last_status or 'unknown'}"
        )


class LocalIOError(UpscalerError):
    """A local file or ffmpeg/ffprobe operation failed."""
    pass


class StoppedByUser(UpscalerError):
    """Cooperative cancellation: the operator stopped processing."""

    def __init__(self, message: str = "Processing stopped by user"):
        super().__init__(message)


def is_credit_error(message: Optional[str]) -> bool:
    """True when a service message means the key is out of credit."""
    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in CREDIT_ERROR_MARKERS)


def friendly_message(error: Exception, context: str = "unknown") -> str:
    """Operator-facing text for an error. The raw message stays on the job."""
    if isinstance(error, ValidationError):
        return str(error)

    message = str(error).lower()

    if isinstance(error, InvalidCredential) or "api key" in message or "unauthorized" in message:
        return "Invalid API key. Please check your Topaz API key and try again."

    if isinstance(error, NetworkError) or "network" in message or "timeout" in message:
        return "Network error. Please check your internet connection and try again."

    if isinstance(error, CreditExhausted) or "quota" in message or "limit" in message:
        return "API quota exceeded. Please check your Topaz account limits."

    if isinstance(error, FileNotFoundError) or "file not found" in message:
        return "File not found. The media file may have been moved or deleted."

    if isinstance(error, PermissionError) or "permission" in message:
        return "Permission denied. Please check file permissions and try again."

    if "no space" in message or "disk full" in message:
        return "Insufficient disk space. Please free up space and try again."

    if context == "video-processing" and "ffmpeg" in message:
        return "Video processing error. Please ensure FFmpeg is installed or try a different video file."

    return f"An error occurred: {error}. Please try again or check the logs for more details."
