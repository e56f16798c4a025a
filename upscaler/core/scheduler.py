"""
Scheduler: admits pending files into the queue and runs up to `workers`
jobs at once, reacting to start/pause/resume/stop from the operator.
"""
import asyncio
import logging
import os
from datetime import datetime
from typing import Callable, List, Optional, Set

from ..config import ProcessingSettings, validate_workers
from ..errors import LocalIOError, NotFoundError, UpscalerError, ValidationError
from .control import ProcessingControl, ProcessingState
from .credential_pool import CredentialPool
from .job_queue import FileStatus, Job, JobQueue, JobStatus, MediaFile
from .media import scan_media_files
from .processor import JobProcessor

logger = logging.getLogger(__name__)

CREDIT_REFRESH_INTERVAL = 300  # seconds


class Scheduler:
    def __init__(
        self,
        pool: CredentialPool,
        settings: ProcessingSettings,
        processor: Optional[JobProcessor] = None,
        control: Optional[ProcessingControl] = None,
        scanner: Callable[[str], List[dict]] = scan_media_files,
    ):
        self.pool = pool
        self.settings = settings
        self.control = control or ProcessingControl()
        self.processor = processor or JobProcessor(pool, self.control)
        self.processor.control = self.control
        self.scanner = scanner
        self.queue = JobQueue()
        self.files: List[MediaFile] = []
        self.active = 0
        self.status_message = "Ready"
        self._tasks: Set[asyncio.Task] = set()

    @property
    def state(self) -> ProcessingState:
        return self.control.state

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------ files

    def load_files(self) -> List[MediaFile]:
        """Rescan the input folder. Known paths keep their status."""
        if not self.settings.input_folder:
            raise ValidationError("Please select an input folder")

        known = {f.path: f for f in self.files}
        files = []
        for entry in self.scanner(self.settings.input_folder):
            if entry["type"] != self.settings.media_type:
                continue
            existing = known.get(entry["path"])
            if existing is not None:
                existing.size = entry["size"]
                files.append(existing)
            else:
                files.append(MediaFile(**entry))

        self.files = files
        logger.info(f"📂 {len(files)} {self.settings.media_type} files in {self.settings.input_folder}")
        return files

    def pending_files(self) -> List[MediaFile]:
        return [f for f in self.files if f.status == FileStatus.PENDING]

    # ----------------------------------------------------------- transitions

    def _validate_start(self):
        if len(self.pool) == 0:
            raise ValidationError("Please add at least one API key")
        if not self.settings.input_folder:
            raise ValidationError("Please select an input folder")
        if not self.settings.output_folder:
            raise ValidationError("Please select an output folder")

    async def start(self):
        if self.state != ProcessingState.STOPPED:
            raise ValidationError(f"Processing is already {self.state.value}")
        self._validate_start()

        try:
            self.load_files()
            os.makedirs(self.settings.output_folder, exist_ok=True)
        except (LocalIOError, OSError) as e:
            raise ValidationError(str(e)) from e

        self.active = 0
        generation = await self.control.start()
        self.status_message = f"Starting {self.settings.media_type} upscale process..."
        logger.info(f"🚀 Processing started (run {generation}, workers: {self.settings.workers}, "
                    f"pending: {len(self.pending_files())})")

        await self.pool.refresh_all_credits()
        self.pump()

    async def pause(self):
        if self.state != ProcessingState.RUNNING:
            raise ValidationError("Processing is not running")

        in_flight = self.queue.with_status(JobStatus.PROCESSING)
        for job in in_flight:
            job.set_status(JobStatus.PAUSED, "Paused")
        await self.control.pause(job.id for job in in_flight)
        self.status_message = "Processing paused..."
        logger.info(f"⏸️ Processing paused ({len(in_flight)} jobs in flight)")

    async def resume(self):
        if self.state != ProcessingState.PAUSED:
            raise ValidationError("Processing is not paused")

        for job in self.queue.with_status(JobStatus.PAUSED):
            job.set_status(JobStatus.PROCESSING, "Resuming...")
        await self.control.resume()
        self.status_message = "Resuming processing..."
        logger.info("▶️ Processing resumed")
        self.pump()

    async def stop(self):
        if self.state == ProcessingState.STOPPED:
            return

        await self.control.stop()

        for job in self.queue.with_status(JobStatus.QUEUED):
            job.file.status = FileStatus.PENDING

        # In-flight jobs stay visible as errors; their remote work is not cancelled
        for job in self.queue.with_status(JobStatus.PROCESSING, JobStatus.PAUSED):
            job.fail("Processing stopped by user", phase="Stopped")

        self.active = 0
        self.status_message = "Processing stopped"
        logger.info("⏹️ Processing stopped")
        self._spawn(self.pool.refresh_all_credits())

    # ------------------------------------------------------------- admission

    def pump(self):
        """Fill free worker slots from queued jobs, then from pending files."""
        while self.state == ProcessingState.RUNNING and self.active < self.settings.workers:
            job = self.queue.first_with_status(JobStatus.QUEUED)
            if job is None:
                file = next(
                    (f for f in self.files if f.status == FileStatus.PENDING and not self.queue.represents(f)),
                    None,
                )
                if file is None:
                    break
                self.queue.add(file)
                continue
            self._launch(job)

        self._check_finished()

    def _launch(self, job: Job):
        self.active += 1
        job.set_status(JobStatus.PROCESSING, "Starting")
        job.started_at = datetime.utcnow()
        job.file.status = FileStatus.PROCESSING
        logger.info(f"🎬 Job #{job.id} started: {job.file.name} (active: {self.active}/{self.settings.workers})")
        self._spawn(self._run_job(job, self.control.generation))

    async def _run_job(self, job: Job, generation: int):
        try:
            await self.processor.run(job, self.settings, generation)
        except Exception as e:
            logger.exception(f"Job #{job.id} crashed: {e}")
            if not job.is_terminal:
                job.fail(str(e))
        finally:
            if generation == self.control.generation and self.active > 0:
                self.active -= 1
            if self.state == ProcessingState.RUNNING:
                self.pump()

    def _check_finished(self):
        if self.state != ProcessingState.RUNNING:
            return
        if self.active == 0 and not self.queue.has_live_jobs() and not self.pending_files():
            self.control.state = ProcessingState.STOPPED
            self._spawn(self._finish())

    async def _finish(self):
        await self.control.stop()
        self.status_message = "All processing completed"
        await self.pool.refresh_all_credits()
        logger.info(f"🏁 All processing completed. API stats: {self.pool.stats()}")

    # -------------------------------------------------------------- operator

    def set_workers(self, workers: int):
        validate_workers(workers)
        self.settings = self.settings.model_copy(update={"workers": workers})
        logger.info(f"Workers set to {workers}")
        self.pump()

    def update_settings(self, settings: ProcessingSettings):
        folder_changed = (settings.input_folder != self.settings.input_folder
                          or settings.media_type != self.settings.media_type)
        if folder_changed and self.state != ProcessingState.STOPPED:
            raise ValidationError("Stop processing before changing the input folder or media type")
        self.settings = settings
        if folder_changed:
            self.files = []
        self.pump()

    def get_job(self, job_id: int) -> Job:
        job = self.queue.get(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return job

    def dismiss(self, job_id: int) -> Job:
        job = self.get_job(job_id)
        if not job.is_terminal:
            raise ValidationError(f"Job #{job_id} is still {job.status.value}")
        self.queue.remove(job)
        self.status_message = f"Removed {job.status.value} item: {job.file.name}"
        return job

    def reset(self, job_id: int) -> Job:
        job = self.get_job(job_id)
        if job.status not in (JobStatus.ERROR, JobStatus.STOPPED):
            raise ValidationError(f"Only failed jobs can be reset, job #{job_id} is {job.status.value}")
        self.queue.remove(job)
        job.file.status = FileStatus.PENDING
        logger.info(f"🔄 {job.file.name} reset to pending")
        self.pump()
        return job

    def snapshot(self) -> dict:
        return {
            "state": self.state.value,
            "status_message": self.status_message,
            "active_workers": self.active,
            "workers": self.settings.workers,
            "pending_files": len(self.pending_files()),
            "jobs": self.queue.counts(),
            "api_keys": self.pool.stats(),
        }

    async def shutdown(self):
        await self.control.stop()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


async def monitor_credits(pool: CredentialPool, interval: float = CREDIT_REFRESH_INTERVAL):
    """Background loop keeping credit balances fresh."""
    logger.info("💳 Credit monitor started")
    while True:
        await asyncio.sleep(interval)
        try:
            await pool.refresh_all_credits()
            logger.info(f"📊 API stats: {pool.stats()}")
        except UpscalerError as e:
            logger.error(f"Credit monitor error: {e}")
