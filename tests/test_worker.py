"""Tests for the refresh worker."""

import logging
from unittest.mock import patch

import pytest

from conftest import FakeAdapter, days_ago, make_commit, make_repo
from hours.config import AppConfig
from hours.jobs import CANCELLED, COMPLETED, FAILED
from hours.keyed_store import KeyedStore
from hours.logging import JobContextFilter
from hours.service import ActivityService
from hours.store import LocalStore
from hours.worker import process_next, run_refresh_job, run_worker

REPO = "acme/api"


@pytest.fixture
def service(app_config: AppConfig, fake_adapter: FakeAdapter, store: LocalStore, keyed_store: KeyedStore) -> ActivityService:
    store.upsert_repository(make_repo(REPO))
    fake_adapter.branch_commits[(REPO, "main")] = [make_commit(REPO, "c1", days_ago(1))]
    return ActivityService(app_config, fake_adapter, store, keyed_store)


def test_process_next_completes_job(service: ActivityService, app_config: AppConfig) -> None:
    job = service.start_refresh_job(14, [REPO])
    service.cache.put("activity:stale", {"data": []}, 60)

    assert process_next(service) is True

    record = service.tracker.get(job["job_id"])
    assert record.status == COMPLETED
    assert "1 commits" in record.message
    assert record.elapsed_time is not None
    assert service.store.counts()["commits"] == 1
    assert not service.cache.has("activity:stale")
    assert (app_config.state_path / "queue" / "done" / f"{job['job_id']}.json").is_file()
    assert process_next(service) is False


def test_job_cancelled_while_queued_is_not_run(service: ActivityService, fake_adapter: FakeAdapter) -> None:
    job_id = service.tracker.create(14).job_id
    service.tracker.cancel(job_id)
    record = run_refresh_job(service, job_id, {"max_days": 14})
    assert record.status == CANCELLED
    assert fake_adapter.calls == []


def test_job_cancelled_during_processing(service: ActivityService) -> None:
    job_id = service.tracker.create(14).job_id
    original = service.tracker.progress

    def cancel_on_progress(jid: str, message: str):
        service.tracker.cancel(jid)
        return original(jid, message)

    with patch.object(service.tracker, "progress", side_effect=cancel_on_progress):
        record = run_refresh_job(service, job_id, {"max_days": 14})

    assert record.status == CANCELLED
    assert service.store.counts()["commits"] == 0


def test_failing_job_is_marked_failed(service: ActivityService, app_config: AppConfig) -> None:
    job = service.start_refresh_job(14)
    with patch.object(service.orchestrator, "refresh", side_effect=RuntimeError("boom")):
        process_next(service)
    record = service.tracker.get(job["job_id"])
    assert record.status == FAILED
    assert "boom" in record.message
    assert (app_config.state_path / "queue" / "failed" / f"{job['job_id']}.json").is_file()


def test_expired_job_is_skipped(service: ActivityService) -> None:
    assert run_refresh_job(service, "refresh_gone", {}) is None


def test_repository_subset_capped_per_job(service: ActivityService) -> None:
    repos = [f"acme/r{i}" for i in range(8)]
    job_id = service.tracker.create(14, repos).job_id
    with patch.object(service.orchestrator, "refresh", return_value={"elapsed": 0.1, "processed": 0, "commits": 0, "pull_requests": 0, "truncated": False}) as refresh:
        run_refresh_job(service, job_id, {"max_days": 14, "repositories": repos})
    args, kwargs = refresh.call_args
    assert args[1] == repos[:5]
    assert kwargs["time_budget"] == 550
    assert kwargs["limit"] == 5


def test_run_worker_once_with_empty_queue(service: ActivityService, app_config: AppConfig) -> None:
    run_worker(app_config, once=True, service=service, setup_logging=False)


def test_job_logs_carry_job_id(service: ActivityService) -> None:
    job_id = service.tracker.create(14).job_id
    records: list[logging.LogRecord] = []
    handler = logging.Handler()
    handler.emit = records.append
    handler.addFilter(JobContextFilter())
    hours_logger = logging.getLogger("hours")
    previous = hours_logger.level
    hours_logger.addHandler(handler)
    hours_logger.setLevel(logging.INFO)
    try:
        run_refresh_job(service, job_id, {"max_days": 14, "repositories": [REPO]})
        logging.getLogger("hours.worker").info("after the job")
    finally:
        hours_logger.removeHandler(handler)
        hours_logger.setLevel(previous)

    names = {r.name for r in records[:-1]}
    assert {"hours.worker", "hours.orchestrator"} <= names
    assert {r.job_id for r in records[:-1]} == {job_id}
    assert records[-1].job_id == "-"
