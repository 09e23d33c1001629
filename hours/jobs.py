"""Refresh job status tracking.

States: queued -> processing -> completed | failed | cancelled.
Each job's status lives in the keyed store under refresh_job_status:{job_id}
for a bounded TTL; every transition also overwrites latest_refresh_status so
callers without a job id can ask what the most recent refresh is doing.
"""

import logging
import uuid
from datetime import UTC, datetime

from hours.errors import CancellationSignal, JobAlreadyTerminal, NotFound
from hours.keyed_store import KeyedStore
from hours.schemas import JobParameters, JobStatusRecord

QUEUED = "queued"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

ACTIVE_STATES = (QUEUED, PROCESSING)
TERMINAL_STATES = (COMPLETED, FAILED, CANCELLED)

STATUS_KEY_PREFIX = "refresh_job_status:"
LATEST_KEY = "latest_refresh_status"

LOG = logging.getLogger("hours.jobs")


def new_job_id() -> str:
    return f"refresh_{uuid.uuid4().hex}"


def format_elapsed(seconds: float) -> str:
    """Human readable duration: '12.3 seconds', '2m 5s', '1h 3m'."""
    if round(seconds, 1) < 60:
        return f"{round(seconds, 1)} seconds"
    total = round(seconds)
    if total < 3600:
        minutes, secs = divmod(total, 60)
        return f"{minutes}m {secs}s"
    hours, rest = divmod(total, 3600)
    return f"{hours}h {rest // 60}m"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class JobTracker:
    """Job lifecycle on top of a KeyedStore."""

    def __init__(self, store: KeyedStore, ttl_seconds: int = 3600) -> None:
        self._store = store
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def status_key(job_id: str) -> str:
        return f"{STATUS_KEY_PREFIX}{job_id}"

    def _save(self, record: JobStatusRecord) -> JobStatusRecord:
        payload = record.model_dump(mode="json")
        self._store.put(self.status_key(record.job_id), payload, self.ttl_seconds)
        self._store.put(LATEST_KEY, payload, self.ttl_seconds)
        LOG.info("Job %s status -> %s: %s", record.job_id, record.status, record.message)
        return record

    def create(
        self,
        max_days: int,
        repositories: list[str] | None = None,
        author: str | None = None,
        job_id: str | None = None,
    ) -> JobStatusRecord:
        """Register a new job in queued state."""
        record = JobStatusRecord(
            job_id=job_id or new_job_id(),
            status=QUEUED,
            message="Refresh job queued",
            updated_at=_now_iso(),
            parameters=JobParameters(
                max_days=max_days,
                repositories=repositories,
                selected_repos_count=len(repositories) if repositories else None,
                author_filter=author,
            ),
        )
        return self._save(record)

    def find(self, job_id: str) -> JobStatusRecord | None:
        data = self._store.get(self.status_key(job_id))
        return JobStatusRecord.model_validate(data) if data else None

    def get(self, job_id: str) -> JobStatusRecord:
        """Status of job_id; NotFound if unknown or expired."""
        record = self.find(job_id)
        if record is None:
            raise NotFound(f"Refresh job not found or expired: {job_id}")
        return record

    def latest(self) -> JobStatusRecord | None:
        data = self._store.get(LATEST_KEY)
        return JobStatusRecord.model_validate(data) if data else None

    def _transition(self, job_id: str, status: str, message: str) -> JobStatusRecord:
        record = self.get(job_id)
        if record.status == CANCELLED and status != CANCELLED:
            LOG.info("Job %s already cancelled, ignoring transition to %s", job_id, status)
            return record
        now = datetime.now(UTC)
        if status == PROCESSING and record.started_at is None:
            record.started_at = now.isoformat()
        if record.started_at is not None:
            elapsed = (now - datetime.fromisoformat(record.started_at)).total_seconds()
            record.elapsed_time = round(elapsed, 2)
            record.elapsed_time_human = format_elapsed(elapsed)
        record.status = status
        record.message = message
        record.updated_at = now.isoformat()
        return self._save(record)

    def start(self, job_id: str, message: str = "Initializing refresh job...") -> JobStatusRecord:
        return self._transition(job_id, PROCESSING, message)

    def progress(self, job_id: str, message: str) -> JobStatusRecord:
        """Record a progress message; raises CancellationSignal if the job was cancelled."""
        self.token(job_id).check()
        return self._transition(job_id, PROCESSING, message)

    def complete(self, job_id: str, message: str) -> JobStatusRecord:
        return self._transition(job_id, COMPLETED, message)

    def fail(self, job_id: str, message: str) -> JobStatusRecord:
        return self._transition(job_id, FAILED, message)

    def cancel(self, job_id: str, message: str = "Refresh job cancelled") -> JobStatusRecord:
        """Cancel a queued or processing job.

        Raises NotFound for unknown ids and JobAlreadyTerminal when the job
        already finished.
        """
        record = self.get(job_id)
        if record.status in TERMINAL_STATES:
            raise JobAlreadyTerminal(job_id, record.status)
        return self._transition(job_id, CANCELLED, message)

    def is_cancelled(self, job_id: str) -> bool:
        record = self.find(job_id)
        return record is not None and record.status == CANCELLED

    def token(self, job_id: str) -> "CancellationToken":
        return CancellationToken(self, job_id)


class CancellationToken:
    """Cooperative cancellation handle for one job, polled at checkpoints."""

    def __init__(self, tracker: JobTracker, job_id: str) -> None:
        self._tracker = tracker
        self.job_id = job_id

    @property
    def cancelled(self) -> bool:
        return self._tracker.is_cancelled(self.job_id)

    def check(self) -> None:
        """Raise CancellationSignal if the job has been cancelled."""
        if self.cancelled:
            LOG.info("Cancellation detected for job %s", self.job_id)
            raise CancellationSignal(f"Job {self.job_id} was cancelled")
