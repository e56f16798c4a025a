"""
Per-job state machine.

A job walks one of two phase ladders (video or image). Every phase starts
at a checkpoint where pause parks the worker and stop ends the job, so
progress only moves while the job is actually processing. Failed attempts
rotate to another API key until the retry budget (2 x pool size) is spent.
"""
import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional

from ..errors import (
    CreditExhausted,
    LocalIOError,
    ProcessingTimeout,
    RateLimited,
    RemoteProcessingFailed,
    StoppedByUser,
    UpscalerError,
    is_credit_error,
)
from .control import ProcessingControl
from .credential_pool import Credential, CredentialPool
from .job_queue import FileStatus, Job, JobStatus
from .media import get_media_info, strip_audio
from .topaz_client import VideoOptions

logger = logging.getLogger(__name__)

STATUS_CHECK_INTERVAL = 10  # seconds
MAX_STATUS_CHECKS = 180  # 180 x 10s = 30 minutes
RETRY_DELAY = 2
CREDIT_RETRY_DELAY = 1
MAX_RATE_LIMIT_WAIT = 60

ACTIVE_STATUSES = {"processing", "queued", "postprocessing", "initializing", "preprocessing"}
COMPLETE_STATUSES = {"complete", "completed"}
FAILED_STATUSES = {"failed", "error"}


@dataclass
class JobResult:
    success: bool
    error: Optional[str] = None
    output_path: Optional[str] = None
    credits_used: Optional[int] = None


def video_output_path(output_folder: str, file_name: str) -> str:
    stem, ext = os.path.splitext(file_name)
    return os.path.join(output_folder, f"{stem}_upscaled{ext}")


def image_output_path(output_folder: str, file_name: str, output_format: str) -> str:
    stem = os.path.splitext(file_name)[0]
    ext = "png" if output_format == "png" else "jpeg"
    return os.path.join(output_folder, f"{stem}_enhanced.{ext}")


def _write_bytes(path: str, data: bytes):
    with open(path, "wb") as f:
        f.write(data)


class JobProcessor:
    def __init__(
        self,
        pool: CredentialPool,
        control: ProcessingControl,
        media_info=get_media_info,
        audio_stripper=strip_audio,
        status_check_interval: float = STATUS_CHECK_INTERVAL,
        max_status_checks: int = MAX_STATUS_CHECKS,
        retry_delay: float = RETRY_DELAY,
        credit_retry_delay: float = CREDIT_RETRY_DELAY,
        max_rate_limit_wait: float = MAX_RATE_LIMIT_WAIT,
    ):
        self.pool = pool
        self.control = control
        self.media_info = media_info
        self.audio_stripper = audio_stripper
        self.status_check_interval = status_check_interval
        self.max_status_checks = max_status_checks
        self.retry_delay = retry_delay
        self.credit_retry_delay = credit_retry_delay
        self.max_rate_limit_wait = max_rate_limit_wait

    # ------------------------------------------------------------ checkpoints

    async def _checkpoint(self, job: Job, generation: int):
        if self.control.is_stopped(generation):
            raise StoppedByUser()

        if self.control.is_paused_for(job.id):
            job.set_status(JobStatus.PAUSED, "Paused")
            logger.info(f"⏸️ Job #{job.id} paused")
            await self.control.wait_while_paused(job.id, generation)

            if self.control.is_stopped(generation):
                raise StoppedByUser()

            job.set_status(JobStatus.PROCESSING, "Resuming...")
            logger.info(f"▶️ Job #{job.id} resumed")
        elif job.status == JobStatus.PAUSED:
            # Paused and resumed while this worker was inside a call or a sleep
            job.set_status(JobStatus.PROCESSING, "Resuming...")
            logger.info(f"▶️ Job #{job.id} resumed")

    async def _step(self, job: Job, generation: int, progress: float, phase: str):
        await self._checkpoint(job, generation)
        job.advance(progress, phase)

    def _finish_stopped(self, job: Job) -> JobResult:
        message = str(StoppedByUser())
        if not job.is_terminal:
            job.fail(message, phase="Stopped")
        logger.info(f"⏹️ Job #{job.id} stopped by user")
        return JobResult(success=False, error=message)

    # ------------------------------------------------------------ retry loop

    async def run(self, job: Job, settings, generation: int) -> JobResult:
        """Drive `job` to a terminal status. Never raises for expected failures."""
        attempt = self._attempt_image if job.media_type == "image" else self._attempt_video

        while True:
            max_attempts = max(1, 2 * len(self.pool))
            try:
                await self._checkpoint(job, generation)
                return await attempt(job, settings, generation)

            except StoppedByUser:
                return self._finish_stopped(job)

            except (UpscalerError, OSError) as e:
                if self.control.is_stopped(generation):
                    return self._finish_stopped(job)

                job.retry_count += 1
                message = str(e)
                logger.warning(f"⚠️ Job #{job.id} attempt {job.retry_count}/{max_attempts} failed: {message}")

                if job.retry_count >= max_attempts:
                    job.fail(message)
                    logger.error(f"❌ Job #{job.id} failed permanently: {message}")
                    return JobResult(success=False, error=message)

                if isinstance(e, RateLimited) and job.credential is not None:
                    self.pool.mark_rate_limited(job.credential, e.retry_after_ms)
                    job.phase = f"Rate limited, switching API key ({job.retry_count}/{max_attempts})"
                    delay = self.credit_retry_delay
                elif isinstance(e, CreditExhausted) or is_credit_error(message):
                    job.phase = f"Switching API key ({job.retry_count}/{max_attempts})"
                    await self.pool.refresh_all_credits()
                    delay = self.credit_retry_delay
                else:
                    job.phase = f"Retrying ({job.retry_count}/{max_attempts})"
                    delay = self.retry_delay

                await self.control.sleep(delay, generation)

    async def _acquire_credential(self, job: Job, generation: int) -> Credential:
        while True:
            credential = self.pool.next_eligible()
            if credential is None:
                raise UpscalerError("No API keys available")
            if self.pool.is_eligible(credential):
                return credential

            # Fallback pick: nobody is usable right now
            if credential.credits is not None and credential.credits.available <= 0:
                raise CreditExhausted("No credits available on any API key")
            if not credential.is_active or credential.rate_limit_reset is None:
                raise UpscalerError("No active API keys available")

            wait = (credential.rate_limit_reset - self.pool.now()).total_seconds()
            if wait > 0:
                job.phase = "Waiting for rate limit reset"
                logger.info(f"⏳ Job #{job.id} waiting {wait:.0f}s for API key {credential.masked}")
                await self.control.sleep(min(wait, self.max_rate_limit_wait), generation)
            await self._checkpoint(job, generation)

    def _bind_credential(self, job: Job, credential: Credential):
        job.credential = credential
        job.credits_before = credential.available_credits or 0

    @staticmethod
    def _credits_used(job: Job, credential: Credential) -> int:
        after = credential.available_credits or 0
        return max(0, (job.credits_before or 0) - after)

    # ------------------------------------------------------------ video ladder

    async def _attempt_video(self, job: Job, settings, generation: int) -> JobResult:
        credential = await self._acquire_credential(job, generation)
        self._bind_credential(job, credential)
        client = credential.client
        logger.info(f"📝 Job #{job.id} ({job.file.name}) using API key {credential.masked}")

        await self._step(job, generation, 5, "Analyzing video")
        info = await self.media_info(job.file.path)

        await self._step(job, generation, 10, "Creating request")
        job.request_id = await client.create_video_request(info, VideoOptions.from_settings(settings))

        await self._step(job, generation, 15, "Getting upload URL")
        upload_url = await client.accept_video_request(job.request_id)

        await self._step(job, generation, 20, "Uploading video")
        etag = await client.upload_file(job.file.path, upload_url)

        await self._step(job, generation, 30, "Starting processing")
        await client.complete_upload(job.request_id, [{"partNum": 1, "eTag": etag}])

        download_url = await self._poll_until_complete(job, client, generation)

        await self._step(job, generation, 85, "Downloading result")
        output_path = video_output_path(settings.output_folder, job.file.name)
        await client.download(download_url, output_path, on_progress=lambda pct: self._on_download(job, pct))

        if settings.remove_audio:
            await self._step(job, generation, 95, "Removing audio")
            await self._remove_audio(job, output_path)

        await self._checkpoint(job, generation)
        await self.pool.refresh_all_credits()
        await self._checkpoint(job, generation)
        job.credits_used = self._credits_used(job, credential)
        return self._complete(job, output_path, f"Completed ({job.credits_used} credits used)")

    async def _poll_until_complete(self, job: Job, client, generation: int) -> str:
        last_status = None
        for check in range(1, self.max_status_checks + 1):
            await self.control.sleep(self.status_check_interval, generation)
            await self._checkpoint(job, generation)

            result = await client.check_status(job.request_id)
            await self._checkpoint(job, generation)

            last_status = result.status
            label = f"Processing on Topaz servers ({result.status}, check {check}/{self.max_status_checks})"
            logger.debug(f"Job #{job.id} status check {check}: {result.status} {result.progress}%")

            if result.status in FAILED_STATUSES:
                raise RemoteProcessingFailed(
                    f"Processing failed on Topaz servers: {result.message or 'Unknown error'}"
                )
            if result.status in COMPLETE_STATUSES and result.download_url:
                job.advance(80, label)
                return result.download_url

            # "complete" without a download URL yet is still processing
            if result.status not in ACTIVE_STATUSES | COMPLETE_STATUSES:
                logger.warning(f"Job #{job.id} unexpected status: {result.status}")
            job.advance(min(75, 30 + result.progress * 0.45), label)

        raise ProcessingTimeout(self.max_status_checks, self.status_check_interval, last_status)

    def _on_download(self, job: Job, pct: float):
        if job.status == JobStatus.PROCESSING:
            job.advance(85 + pct * 0.1)

    async def _remove_audio(self, job: Job, output_path: str):
        temp_path = output_path + ".temp"
        try:
            os.replace(output_path, temp_path)
        except OSError as e:
            logger.warning(f"Failed to remove audio locally: {e}")
            return

        def on_progress(pct):
            if job.status == JobStatus.PROCESSING:
                job.advance(95 + pct * 0.05)

        try:
            await self.audio_stripper(temp_path, output_path, on_progress)
        except LocalIOError as e:
            # The upscaled file is still good, keep it with its audio
            logger.warning(f"Failed to remove audio locally: {e}")
            try:
                os.replace(temp_path, output_path)
            except OSError as restore_error:
                logger.error(f"Could not restore {output_path}: {restore_error}")
            return

        try:
            os.remove(temp_path)
        except OSError as e:
            logger.warning(f"Could not remove temp file {temp_path}: {e}")

    # ------------------------------------------------------------ image ladder

    async def _attempt_image(self, job: Job, settings, generation: int) -> JobResult:
        credential = await self._acquire_credential(job, generation)
        self._bind_credential(job, credential)
        client = credential.client

        await self._step(job, generation, 10, "Preparing image")

        await self._step(job, generation, 30, "Enhancing image")
        image_data = await client.create_image_request(
            job.file.path,
            model=settings.image_model,
            output_format=settings.output_format,
            output_width=settings.output_width,
        )

        await self._step(job, generation, 80, "Saving enhanced image")
        output_path = image_output_path(settings.output_folder, job.file.name, settings.output_format)
        await asyncio.to_thread(_write_bytes, output_path, image_data)

        await self._checkpoint(job, generation)
        await self.pool.refresh_credits(credential)
        await self._checkpoint(job, generation)
        job.credits_used = self._credits_used(job, credential)
        return self._complete(job, output_path, "Complete")

    def _complete(self, job: Job, output_path: str, phase: str) -> JobResult:
        if job.is_terminal:
            # Stopped while the final credit refresh was in flight
            return self._finish_stopped(job)
        job.advance(100)
        job.output_path = output_path
        job.error = None
        job.set_status(JobStatus.COMPLETED, phase)
        job.file.status = FileStatus.COMPLETED
        logger.info(f"✅ Job #{job.id} completed: {output_path} ({job.credits_used} credits used)")
        return JobResult(success=True, output_path=output_path, credits_used=job.credits_used)
