"""Local store reconciler: upserts, staleness checks and merged activity reads.

Commits are keyed by (repository, hash) and pull requests by (repository,
remote id). Re-fetching a record updates it in place; the primary key and
created_at never change.
"""

import logging
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta
from typing import Any, Iterator

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from hours.authors import matches_any_variant
from hours.errors import NotFound
from hours.extract import extract_branch_from_pr_title, prefer_branch
from hours.models import (
    Commit,
    PullRequest,
    Repository,
    isoformat,
    parse_remote_datetime,
    utcnow,
)
from hours.schemas import CommitData, PullRequestData, RepositoryData

LOG = logging.getLogger("hours.store")

DEFAULT_BRANCH = "main"
UNKNOWN_BRANCH = "Unknown branch"


def since_date(max_days: int, today: date | None = None) -> date:
    """First day of the window: today minus max_days (inclusive lower bound)."""
    return (today or utcnow().date()) - timedelta(days=max_days)


def since_string(max_days: int, today: date | None = None) -> str:
    """Window start as YYYY-MM-DD for remote queries."""
    return since_date(max_days, today).isoformat()


def window_start(max_days: int, today: date | None = None) -> datetime:
    """Window start as a naive UTC datetime at midnight."""
    return datetime.combine(since_date(max_days, today), time.min)


def pr_branch(pr: PullRequest) -> str | None:
    """Source branch of a stored PR: column, then metadata, then title."""
    if pr.source_branch:
        return pr.source_branch
    data = pr.metadata_ or {}
    for key in ("source_branch", "pr_source_branch"):
        if data.get(key):
            return data[key]
    name = ((data.get("source") or {}).get("branch") or {}).get("name")
    if name:
        return name
    return extract_branch_from_pr_title(pr.title)


class LocalStore:
    """Reconciles fetched commits and pull requests with the relational store."""

    def __init__(self, session_factory: sessionmaker, stale_after_minutes: int = 30) -> None:
        self._session_factory = session_factory
        self.stale_after_minutes = stale_after_minutes

    @contextmanager
    def session(self) -> Iterator[Session]:
        s = self._session_factory()
        try:
            yield s
            s.commit()
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    # Repositories

    def upsert_repository(self, data: RepositoryData) -> tuple[Repository, bool]:
        """Insert or update a repository by full_name and mark it active."""
        with self.session() as s:
            repo = s.scalars(select(Repository).where(Repository.full_name == data.full_name)).one_or_none()
            created = repo is None
            if created:
                repo = Repository(full_name=data.full_name)
                s.add(repo)
            repo.name = data.name
            repo.workspace = data.workspace
            repo.remote_updated_on = parse_remote_datetime(data.updated_on)
            repo.is_private = data.is_private
            repo.description = data.description
            repo.language = data.language
            repo.is_active = True
            s.flush()
            return repo, created

    def deactivate_missing(self, workspace: str, seen_full_names: set[str]) -> int:
        """Soft-deactivate active repositories of workspace not in seen_full_names."""
        with self.session() as s:
            repos = s.scalars(
                select(Repository).where(Repository.workspace == workspace, Repository.is_active.is_(True))
            ).all()
            count = 0
            for repo in repos:
                if repo.full_name not in seen_full_names:
                    repo.is_active = False
                    count += 1
                    LOG.info("Deactivated repository %s (no longer listed)", repo.full_name)
            return count

    def get_repository(self, full_name: str) -> Repository | None:
        with self.session() as s:
            return s.scalars(select(Repository).where(Repository.full_name == full_name)).one_or_none()

    def list_repositories(self, full_names: list[str] | None = None, active_only: bool = True) -> list[Repository]:
        """Repositories ordered by workspace and name, optionally restricted to full_names."""
        stmt = select(Repository)
        if active_only:
            stmt = stmt.where(Repository.is_active.is_(True))
        if full_names is not None:
            stmt = stmt.where(Repository.full_name.in_(full_names))
        stmt = stmt.order_by(Repository.workspace, Repository.name)
        with self.session() as s:
            return list(s.scalars(stmt).all())

    def _repository_id(self, s: Session, repository: Repository | str) -> int:
        if isinstance(repository, Repository):
            return repository.id
        rid = s.scalar(select(Repository.id).where(Repository.full_name == repository))
        if rid is None:
            raise NotFound(f"Unknown repository: {repository}")
        return rid

    # Commits

    def upsert_commit(self, repository: Repository | str, data: CommitData) -> bool:
        """Insert or update a commit by (repository, hash). Returns True if created.

        A commit already attached to a feature branch keeps it when seen again
        on a generic branch; a generic branch is upgraded to a specific one.
        Commits linked to a pull request only change branch through another
        pull request observation.
        """
        try:
            return self._upsert_commit(repository, data)
        except IntegrityError:
            # Another writer inserted the same hash between our read and insert
            LOG.debug("Concurrent insert of commit %s, retrying as update", data.hash)
            return self._upsert_commit(repository, data)

    def _upsert_commit(self, repository: Repository | str, data: CommitData) -> bool:
        now = utcnow()
        with self.session() as s:
            rid = self._repository_id(s, repository)
            commit = s.scalars(select(Commit).where(Commit.repository_id == rid, Commit.hash == data.hash)).one_or_none()
            if commit is None:
                s.add(
                    Commit(
                        repository_id=rid,
                        hash=data.hash,
                        commit_date=parse_remote_datetime(data.date),
                        message=data.message,
                        author_raw=data.author_raw,
                        author_username=data.author_username,
                        ticket=data.ticket,
                        branch=data.branch or DEFAULT_BRANCH,
                        pull_request_id=data.from_pull_request,
                        metadata_=data.metadata(),
                        last_fetched_at=now,
                    )
                )
                return True
            commit.commit_date = parse_remote_datetime(data.date)
            commit.message = data.message
            commit.author_raw = data.author_raw
            commit.author_username = data.author_username
            commit.ticket = data.ticket
            # A PR source branch is authoritative over branches guessed elsewhere
            if commit.pull_request_id is None or data.from_pull_request is not None:
                commit.branch = prefer_branch(commit.branch, data.branch) or DEFAULT_BRANCH
            if data.from_pull_request is not None:
                commit.pull_request_id = data.from_pull_request
            commit.metadata_ = {**(commit.metadata_ or {}), **data.metadata(), "branch": commit.branch}
            commit.last_fetched_at = now
            return False

    def upsert_commits(self, repository: Repository | str, commits: list[CommitData]) -> dict[str, int]:
        """Upsert many commits; a failing record is logged and skipped."""
        counts = {"created": 0, "updated": 0, "errors": 0}
        for data in commits:
            try:
                if self.upsert_commit(repository, data):
                    counts["created"] += 1
                else:
                    counts["updated"] += 1
            except NotFound:
                raise
            except Exception as e:
                counts["errors"] += 1
                LOG.error("Failed to store commit %s for %s: %s", data.hash, data.repository, e)
        return counts

    # Pull requests

    def upsert_pull_request(self, repository: Repository | str, data: PullRequestData) -> bool:
        """Insert or update a pull request by (repository, remote id). Returns True if created."""
        try:
            return self._upsert_pull_request(repository, data)
        except IntegrityError:
            LOG.debug("Concurrent insert of PR %s, retrying as update", data.id)
            return self._upsert_pull_request(repository, data)

    def _upsert_pull_request(self, repository: Repository | str, data: PullRequestData) -> bool:
        with self.session() as s:
            rid = self._repository_id(s, repository)
            pr = s.scalars(
                select(PullRequest).where(PullRequest.repository_id == rid, PullRequest.remote_id == data.id)
            ).one_or_none()
            created = pr is None
            if created:
                pr = PullRequest(repository_id=rid, remote_id=data.id)
                s.add(pr)
            pr.title = data.title
            pr.author_display_name = data.author
            pr.created_on = parse_remote_datetime(data.created_on)
            pr.updated_on = parse_remote_datetime(data.updated_on)
            pr.state = data.state
            pr.ticket = data.ticket
            pr.source_branch = data.source_branch
            pr.destination_branch = data.destination_branch
            pr.metadata_ = data.metadata()
            pr.last_fetched_at = utcnow()
            return created

    def upsert_pull_requests(self, repository: Repository | str, prs: list[PullRequestData]) -> dict[str, int]:
        counts = {"created": 0, "updated": 0, "errors": 0}
        for data in prs:
            try:
                if self.upsert_pull_request(repository, data):
                    counts["created"] += 1
                else:
                    counts["updated"] += 1
            except NotFound:
                raise
            except Exception as e:
                counts["errors"] += 1
                LOG.error("Failed to store pull request %s for %s: %s", data.id, data.repository, e)
        return counts

    # Staleness

    def needs_refresh(
        self,
        repositories: list[str] | None = None,
        max_days: int = 14,
        stale_after_minutes: int | None = None,
    ) -> bool:
        """True if any targeted repository is cold (no activity in window) or stale.

        No matching repository at all also returns True so a discovery
        attempt is made.
        """
        stale_minutes = self.stale_after_minutes if stale_after_minutes is None else stale_after_minutes
        repos = self.list_repositories(repositories)
        if not repos:
            LOG.info("No matching repositories, refresh needed")
            return True
        since = window_start(max_days)
        stale_before = utcnow() - timedelta(minutes=stale_minutes)
        with self.session() as s:
            for repo in repos:
                recent_commits = s.scalar(
                    select(func.count(Commit.id)).where(Commit.repository_id == repo.id, Commit.commit_date >= since)
                )
                recent_prs = s.scalar(
                    select(func.count(PullRequest.id)).where(
                        PullRequest.repository_id == repo.id, PullRequest.updated_on >= since
                    )
                )
                if not recent_commits and not recent_prs:
                    LOG.info("No local activity for %s in the last %s days, refresh needed", repo.full_name, max_days)
                    return True
                last_fetched = s.scalar(
                    select(func.max(Commit.last_fetched_at)).where(Commit.repository_id == repo.id)
                ) or s.scalar(select(func.max(PullRequest.last_fetched_at)).where(PullRequest.repository_id == repo.id))
                if last_fetched is None:
                    LOG.info("No fetch history for %s, refresh needed", repo.full_name)
                    return True
                if last_fetched < stale_before:
                    LOG.info("Data for %s is stale (last fetched %s), refresh needed", repo.full_name, last_fetched)
                    return True
        LOG.info("Local data is fresh, no API refresh needed")
        return False

    # Reads

    def read_local(
        self,
        max_days: int = 14,
        repositories: list[str] | None = None,
        author: str | None = None,
    ) -> list[dict[str, Any]]:
        """Commits and pull requests in the window, newest first.

        Commits sort by commit date, pull requests by updated_on.
        """
        since = window_start(max_days)
        rows: list[tuple[datetime, dict[str, Any]]] = []
        repos = self.list_repositories(repositories)
        with self.session() as s:
            for repo in repos:
                commits = s.scalars(
                    select(Commit)
                    .where(Commit.repository_id == repo.id, Commit.commit_date >= since)
                    .order_by(Commit.commit_date.desc())
                ).all()
                for c in commits:
                    if author and not matches_any_variant([c.author_raw, c.author_username], author):
                        continue
                    rows.append((c.commit_date, self._commit_item(repo, c)))
                prs = s.scalars(
                    select(PullRequest)
                    .where(PullRequest.repository_id == repo.id, PullRequest.updated_on >= since)
                    .order_by(PullRequest.updated_on.desc())
                ).all()
                for pr in prs:
                    if author and not matches_any_variant([pr.author_display_name], author):
                        continue
                    rows.append((pr.updated_on, self._pull_request_item(repo, pr)))
        rows.sort(key=lambda r: r[0], reverse=True)
        LOG.debug("read_local: %s items from %s repositories", len(rows), len(repos))
        return [item for _, item in rows]

    @staticmethod
    def _commit_item(repo: Repository, c: Commit) -> dict[str, Any]:
        return {
            "type": "commit",
            "repository": repo.full_name,
            "hash": c.hash,
            "date": isoformat(c.commit_date),
            "message": c.message,
            "author_raw": c.author_raw,
            "author_username": c.author_username,
            "ticket": c.ticket,
            "branch": c.branch,
            "pull_request_id": c.pull_request_id,
        }

    @staticmethod
    def _pull_request_item(repo: Repository, pr: PullRequest) -> dict[str, Any]:
        return {
            "type": "pull_request",
            "repository": repo.full_name,
            "id": pr.remote_id,
            "hash": None,
            "date": isoformat(pr.updated_on),
            "title": pr.title,
            "message": pr.title,
            "author": pr.author_display_name,
            "author_raw": pr.author_display_name,
            "author_username": None,
            "branch": pr_branch(pr) or UNKNOWN_BRANCH,
            "destination_branch": pr.destination_branch,
            "created_on": isoformat(pr.created_on),
            "updated_on": isoformat(pr.updated_on),
            "state": pr.state,
            "ticket": pr.ticket,
            "pull_request_id": pr.remote_id,
        }

    def counts(self) -> dict[str, int]:
        """Row counts per table."""
        with self.session() as s:
            return {
                "repositories": s.scalar(select(func.count(Repository.id))) or 0,
                "commits": s.scalar(select(func.count(Commit.id))) or 0,
                "pull_requests": s.scalar(select(func.count(PullRequest.id))) or 0,
            }
