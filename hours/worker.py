"""Refresh worker: takes queued jobs from <state_dir>/queue/ and runs them.

Usage: hours worker [--once] [--poll-interval N]. The worker can also run in
a daemon thread next to the request handler (start_worker_thread).
"""

import logging
import threading
import time
from typing import Any

from hours import queue
from hours.config import AppConfig
from hours.errors import CancellationSignal, NotFound
from hours.jobs import CANCELLED, FAILED
from hours.logging import HoursLogging, job_context
from hours.schemas import JobStatusRecord
from hours.service import ACTIVITY_KEY_PREFIX, ActivityService

LOG = logging.getLogger("hours.worker")


def run_refresh_job(service: ActivityService, job_id: str, params: dict[str, Any]) -> JobStatusRecord | None:
    """Run one refresh job to a terminal state and return its final record.

    Returns None when the job record has already expired. Everything logged
    meanwhile, including by the orchestrator and store, carries job_id.
    """
    with job_context(job_id):
        return _run_refresh_job(service, job_id, params)


def _run_refresh_job(service: ActivityService, job_id: str, params: dict[str, Any]) -> JobStatusRecord | None:
    tracker = service.tracker
    try:
        record = tracker.get(job_id)
    except NotFound:
        LOG.warning("Refresh job %s expired before it was started, skipping", job_id)
        return None
    if record.status == CANCELLED:
        LOG.info("Refresh job %s was cancelled while queued", job_id)
        return record

    sync = service.config.sync
    max_days = int(params.get("max_days") or 14)
    repositories = params.get("repositories") or None
    author = params.get("author") or None
    if repositories and len(repositories) > sync.max_repositories_per_job:
        LOG.info(
            "Job %s: limiting %s repositories to %s",
            job_id,
            len(repositories),
            sync.max_repositories_per_job,
        )
        repositories = repositories[: sync.max_repositories_per_job]

    LOG.info("Starting refresh job %s (days=%s, repositories=%s, author=%s)", job_id, max_days, repositories, author)
    try:
        tracker.start(job_id)
        summary = service.orchestrator.refresh(
            max_days,
            repositories,
            author,
            progress=lambda message: tracker.progress(job_id, message),
            time_budget=sync.job_time_budget,
            token=tracker.token(job_id),
            limit=sync.max_repositories_per_job,
        )
    except CancellationSignal:
        LOG.info("Refresh job %s cancelled during processing", job_id)
        return tracker.find(job_id)
    except Exception as e:
        LOG.exception("Refresh job %s failed: %s", job_id, e)
        return tracker.fail(job_id, f"Refresh failed: {e}")

    removed = service.cache.forget_prefix(ACTIVITY_KEY_PREFIX)
    LOG.info("Cleared %s cached activity responses after job %s", removed, job_id)
    message = (
        f"Refresh completed in {summary['elapsed']} seconds: "
        f"{summary['processed']} repositories, {summary['commits']} commits, "
        f"{summary['pull_requests']} pull requests"
    )
    if summary["truncated"]:
        message += " (stopped early: time budget reached)"
    return tracker.complete(job_id, message)


def process_next(service: ActivityService) -> bool:
    """Run the oldest pending job. Returns False if the queue is empty."""
    state_dir = service.config.state_path
    task = queue.take_next(state_dir)
    if task is None:
        return False
    job_id = task["job_id"]
    record = run_refresh_job(service, job_id, task.get("params") or {})
    if record is not None and record.status == FAILED:
        queue.mark_failed(state_dir, job_id)
    else:
        queue.mark_done(state_dir, job_id)
    return True


def run_worker(
    config: AppConfig,
    once: bool = False,
    poll_interval: int | None = None,
    service: ActivityService | None = None,
    setup_logging: bool = True,
) -> None:
    """Poll the queue and run refresh jobs one at a time."""
    if setup_logging:
        HoursLogging(config.logging).setup()
    service = service or ActivityService.from_config(config)
    interval = poll_interval or config.worker.poll_interval
    LOG.info("Hours worker started | state_dir=%s | once=%s", config.state_path, once)

    while True:
        if process_next(service):
            if once:
                return
            continue
        if once:
            LOG.info("No queued refresh jobs, exiting (--once)")
            return
        time.sleep(interval)


def start_worker_thread(config: AppConfig, service: ActivityService | None = None) -> threading.Thread:
    """Start the worker loop in a daemon thread (logging is left as configured)."""
    thread = threading.Thread(
        target=run_worker,
        args=(config,),
        kwargs={"service": service, "setup_logging": False},
        daemon=True,
        name="hours-worker",
    )
    thread.start()
    return thread
