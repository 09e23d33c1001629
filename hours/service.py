"""Operations exposed to callers (HTTP layer, CLI): activity reads, refresh
jobs, sync commands, and maintenance.

Activity reads are local-first. A fresh cached response for the same
(days, repositories, author) is returned as is. Otherwise local data is read
and returned. When it is stale a queued job refreshes it in the background;
only an empty local result is refreshed inline (short time budget).
"""

import hashlib
import json
import logging
import threading
from datetime import UTC, datetime
from typing import Any

import pydantic

from hours import queue
from hours.adapters import BitbucketAdapter, RemoteAPIError, SourceControlAdapter
from hours.config import AppConfig
from hours.db import make_session_factory
from hours.errors import ConfigurationError, NotFound, ValidationError
from hours.jobs import JobTracker
from hours.keyed_store import KeyedStore
from hours.orchestrator import BRANCHES_KEY_PREFIX, FetchOrchestrator
from hours.schemas import ActivityQuery
from hours.store import LocalStore

ACTIVITY_KEY_PREFIX = "activity:"
REPOSITORIES_KEY = "bitbucket_repositories"
STATUS_URL_TEMPLATE = "/api/bitbucket/refresh-status/{job_id}"

LOG = logging.getLogger("hours.service")


def activity_cache_key(query: ActivityQuery) -> str:
    raw = json.dumps(query.cache_parameters(), sort_keys=True)
    return ACTIVITY_KEY_PREFIX + hashlib.md5(raw.encode("utf-8")).hexdigest()


def validate_query(**kwargs: Any) -> ActivityQuery:
    """Build an ActivityQuery; malformed input raises ValidationError."""
    try:
        return ActivityQuery(**kwargs)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid parameters: {e}") from e


class ActivityService:
    """Wires the adapter, local store, keyed store, tracker and orchestrator."""

    def __init__(
        self,
        config: AppConfig,
        adapter: SourceControlAdapter,
        store: LocalStore,
        cache: KeyedStore,
    ) -> None:
        self.config = config
        self.adapter = adapter
        self.store = store
        self.cache = cache
        self.tracker = JobTracker(cache, ttl_seconds=config.cache.job_ttl_minutes * 60)
        self.orchestrator = FetchOrchestrator(adapter, store, config.sync, cache)

    @classmethod
    def from_config(cls, config: AppConfig) -> "ActivityService":
        """Build all collaborators; ConfigurationError without Bitbucket credentials."""
        session_factory = make_session_factory(config.storage.database_url)
        return cls(
            config,
            BitbucketAdapter.from_config(config),
            LocalStore(session_factory, stale_after_minutes=config.sync.stale_after_minutes),
            KeyedStore(config.state_path),
        )

    # Activity

    def get_activity(
        self,
        days: int = 14,
        repositories: list[str] | None = None,
        author: str | None = None,
        force_refresh: bool = False,
        synchronous: bool = False,
    ) -> dict[str, Any]:
        """Merged commits and pull requests for the window, newest first.

        Stale local data is returned immediately, with a background job queued
        when the worker allows it. Only a read with no local data refreshes
        inline (no worker, or synchronous=True) or returns a job id to poll.
        """
        query = validate_query(days=days, repositories=repositories, author=author, force_refresh=force_refresh)
        key = activity_cache_key(query)

        if not query.force_refresh:
            entry = self.cache.get_entry(key)
            if entry is not None:
                LOG.info("Serving cached activity (%s)", key)
                return {**entry["value"], "cached": True, "cache_expires_at": entry["expires_at"]}

        stale = query.force_refresh or self.store.needs_refresh(query.repositories, query.days)
        items = self.store.read_local(query.days, query.repositories, query.author)
        source = "local"
        job: dict[str, Any] | None = None

        worker = self.config.worker
        if stale and items and not synchronous:
            # Local data is served as is; a refresh never blocks this path
            if worker.enabled and worker.background_refresh:
                job = self.start_refresh_job(query.days, query.repositories, query.author)
            else:
                LOG.info("Serving stale local data (%s items), background refresh disabled", len(items))
        elif stale:
            if worker.enabled and not synchronous:
                job = self.start_refresh_job(query.days, query.repositories, query.author)
            else:
                LOG.info("Refreshing inline (budget %ss)", self.config.sync.sync_time_budget)
                self.orchestrator.refresh(
                    query.days,
                    query.repositories,
                    query.author,
                    time_budget=self.config.sync.sync_time_budget,
                )
                items = self.store.read_local(query.days, query.repositories, query.author)
                source = "api"

        result = {
            "data": items,
            "count": len(items),
            "source": source,
            "parameters": query.cache_parameters(),
            "refresh_job": job,
            "generated_at": datetime.now(UTC).isoformat(),
        }
        expires_at = self.cache.put(key, result, self.config.cache.activity_ttl_minutes * 60)
        return {**result, "cached": False, "cache_expires_at": expires_at.isoformat() if expires_at else None}

    # Refresh jobs

    def start_refresh_job(
        self,
        days: int = 14,
        repositories: list[str] | None = None,
        author: str | None = None,
    ) -> dict[str, Any]:
        """Create a queued job; the worker (or a local thread) runs it."""
        query = validate_query(days=days, repositories=repositories, author=author)
        record = self.tracker.create(query.days, query.repositories, query.author)
        params = {"max_days": query.days, "repositories": query.repositories, "author": query.author}
        if self.config.worker.enabled:
            queue.enqueue(self.config.state_path, record.job_id, params)
        else:
            from hours.worker import run_refresh_job

            threading.Thread(
                target=run_refresh_job,
                args=(self, record.job_id, params),
                daemon=True,
                name=f"hours-{record.job_id}",
            ).start()
        LOG.info("Started refresh job %s", record.job_id)
        return {
            "job_id": record.job_id,
            "status": record.status,
            "message": record.message,
            "status_url": STATUS_URL_TEMPLATE.format(job_id=record.job_id),
        }

    def get_job_status(self, job_id: str | None = None) -> dict[str, Any]:
        """Status of job_id, or of the most recent job when no id is given."""
        if job_id:
            return self.tracker.get(job_id).model_dump()
        record = self.tracker.latest()
        if record is None:
            return {"status": "idle", "message": "No refresh job has run recently"}
        return record.model_dump()

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        """Cancel a queued or running job and drop it from the queue if still pending."""
        record = self.tracker.cancel(job_id)
        removed = queue.remove(self.config.state_path, job_id)
        return {**record.model_dump(), "removed_from_queue": removed}

    # Repositories

    def get_repositories_list(self, force_refresh: bool = False) -> list[dict[str, Any]]:
        """Remote repositories of all configured workspaces, cached."""
        workspaces = self.config.bitbucket.workspace_list
        if not workspaces:
            raise ConfigurationError("No Bitbucket workspaces configured. Set BITBUCKET_WORKSPACES.")
        if not force_refresh:
            cached = self.cache.get(REPOSITORIES_KEY)
            if cached is not None:
                return cached
        repos: list[dict[str, Any]] = []
        for workspace in workspaces:
            repos.extend(r.model_dump() for r in self.adapter.list_repositories(workspace))
        self.cache.put(REPOSITORIES_KEY, repos, self.config.cache.repositories_ttl_minutes * 60)
        return repos

    def list_local_repositories(self) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self.store.list_repositories()]

    # Maintenance

    def test_authentication(self) -> dict[str, Any]:
        try:
            user = self.adapter.get_current_user()
        except RemoteAPIError as e:
            LOG.warning("Bitbucket authentication failed: %s", e)
            return {"success": False, "message": str(e)}
        return {
            "success": True,
            "message": "Bitbucket authentication successful",
            "username": user.get("username"),
            "display_name": user.get("display_name"),
            "account_id": user.get("account_id"),
        }

    def clear_cache(self) -> int:
        """Drop cached responses and branch lists; job statuses are kept."""
        removed = self.cache.forget_prefix(ACTIVITY_KEY_PREFIX)
        removed += self.cache.forget_prefix(BRANCHES_KEY_PREFIX)
        removed += int(self.cache.forget(REPOSITORIES_KEY))
        LOG.info("Cleared %s cache entries", removed)
        return removed

    # Sync commands

    def sync_repositories(self) -> dict[str, int]:
        workspaces = self.config.bitbucket.workspace_list
        if not workspaces:
            raise ConfigurationError("No Bitbucket workspaces configured. Set BITBUCKET_WORKSPACES.")
        result = self.orchestrator.sync_repositories(workspaces)
        self.cache.forget(REPOSITORIES_KEY)
        return result

    def sync_commits(self, days: int = 14, repository: str | None = None, author: str | None = None) -> dict[str, int]:
        query = validate_query(days=days, author=author)
        result = self.orchestrator.sync_commits(query.days, repository, query.author)
        self.cache.forget_prefix(ACTIVITY_KEY_PREFIX)
        return result

    def sync_pull_requests(self, days: int = 14, repository: str | None = None) -> dict[str, int]:
        query = validate_query(days=days)
        result = self.orchestrator.sync_pull_requests(query.days, repository)
        self.cache.forget_prefix(ACTIVITY_KEY_PREFIX)
        return result

    def sync_all(self, days: int = 14, author: str | None = None) -> dict[str, dict[str, int]]:
        """Repositories, then pull requests, then commits."""
        return {
            "repositories": self.sync_repositories(),
            "pull_requests": self.sync_pull_requests(days),
            "commits": self.sync_commits(days, author=author),
        }

    def debug_repository(self, repository: str, days: int = 14) -> dict[str, Any]:
        """Refresh one repository and return what is stored for it.

        Unknown repositories raise NotFound; remote errors propagate.
        """
        query = validate_query(days=days, repositories=[repository])
        repo = self.store.get_repository(repository)
        if repo is None or not repo.is_active:
            raise NotFound(f"Unknown repository: {repository}")
        summary = self.orchestrator.refresh(
            query.days,
            [repository],
            time_budget=self.config.sync.sync_time_budget,
            raise_errors=True,
        )
        items = self.store.read_local(query.days, [repository])
        return {
            "repository": repository,
            "summary": summary,
            "commits": sum(1 for i in items if i["type"] == "commit"),
            "pull_requests": sum(1 for i in items if i["type"] == "pull_request"),
            "data": items,
        }
