from upscaler.core.job_queue import FileStatus, JobQueue, JobStatus

from fakes import media_file


def test_job_ids_are_unique_and_ordered():
    queue = JobQueue()
    first = queue.add(media_file("/in/a.mp4"))
    second = queue.add(media_file("/in/b.mp4"))

    assert second.id > first.id
    assert [job.id for job in queue] == [first.id, second.id]
    assert queue.get(first.id) is first
    assert queue.get(-1) is None


def test_progress_is_monotonic_and_capped():
    job = JobQueue().add(media_file("/in/a.mp4"))

    job.advance(40, "Uploading video")
    job.advance(20, "Processing")
    assert job.progress == 40
    assert job.phase == "Processing"

    job.advance(150)
    assert job.progress == 100


def test_history_records_transitions_once():
    job = JobQueue().add(media_file("/in/a.mp4"))

    job.set_status(JobStatus.PROCESSING, "Starting")
    job.set_status(JobStatus.PROCESSING, "Uploading video")
    job.set_status(JobStatus.PAUSED)
    job.fail("Processing stopped by user", phase="Stopped")

    assert job.history == [JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.PAUSED, JobStatus.ERROR]
    assert job.is_terminal
    assert job.file.status == FileStatus.ERROR
    assert job.phase == "Stopped"


def test_live_jobs_and_counts():
    queue = JobQueue()
    a = queue.add(media_file("/in/a.mp4"))
    b = queue.add(media_file("/in/b.mp4"))
    a.set_status(JobStatus.COMPLETED)

    assert queue.has_live_jobs()
    assert queue.first_with_status(JobStatus.QUEUED) is b
    assert queue.represents(b.file)

    b.fail("boom")
    assert not queue.has_live_jobs()
    counts = queue.counts()
    assert counts["completed"] == 1
    assert counts["error"] == 1
    assert counts["queued"] == 0


def test_clear_terminal():
    queue = JobQueue()
    queue.add(media_file("/in/a.mp4")).set_status(JobStatus.COMPLETED)
    queue.add(media_file("/in/b.mp4")).set_status(JobStatus.STOPPED)
    live = queue.add(media_file("/in/c.mp4"))

    assert queue.clear_terminal() == 2
    assert list(queue) == [live]


def test_to_dict():
    job = JobQueue().add(media_file("/in/a.mp4"))
    job.advance(12.345, "Creating request")

    data = job.to_dict()

    assert data["file_name"] == "a.mp4"
    assert data["status"] == "queued"
    assert data["progress"] == 12.3
    assert data["api_key"] is None
    assert job.file.to_dict()["status"] == "pending"
