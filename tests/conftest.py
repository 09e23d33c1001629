"""Shared fixtures: in-memory store, keyed store and a fake Bitbucket adapter."""

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List

import pytest

from hours.adapters.base import SourceControlAdapter
from hours.config import AppConfig, StorageConfig, WorkerConfig
from hours.db import make_session_factory
from hours.errors import RemoteAPIError
from hours.keyed_store import KeyedStore
from hours.schemas import CommitData, PullRequestData, RepositoryData
from hours.store import LocalStore


def days_ago(days: float, hours: int = 0) -> str:
    """ISO timestamp (Z suffix) days/hours in the past."""
    dt = datetime.now(UTC) - timedelta(days=days, hours=hours)
    return dt.replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def make_commit(repo: str, hash_: str, date: str, message: str = "Work", author: str = "Jane Doe <jane.doe@example.com>") -> CommitData:
    return CommitData(repository=repo, hash=hash_, date=date, message=message, author_raw=author, author_username="janedoe")


def make_pr(repo: str, pr_id: int, state: str = "OPEN", source: str | None = None, updated: str | None = None, title: str = "Change") -> PullRequestData:
    updated = updated or days_ago(1)
    return PullRequestData(
        repository=repo,
        id=pr_id,
        title=title,
        author="Jane Doe",
        created_on=updated,
        updated_on=updated,
        state=state,
        source_branch=source,
        destination_branch="main",
    )


def make_repo(full_name: str, updated: str | None = None) -> RepositoryData:
    workspace, name = full_name.split("/")
    return RepositoryData(name=name, full_name=full_name, workspace=workspace, updated_on=updated or days_ago(1))


class FakeAdapter(SourceControlAdapter):
    """In-memory adapter; records calls, can be told to fail per repository."""

    def __init__(self) -> None:
        self.repositories: Dict[str, List[RepositoryData]] = {}
        self.prs: Dict[str, List[PullRequestData]] = {}
        self.pr_commits: Dict[tuple[str, int], List[CommitData]] = {}
        self.branch_commits: Dict[tuple[str, str], List[CommitData]] = {}
        self.author_commits: Dict[str, List[CommitData]] = {}
        self.branches: Dict[str, List[str]] = {}
        self.failing: set[str] = set()
        self.user: Dict[str, Any] = {"username": "janedoe", "display_name": "Jane Doe", "account_id": "1"}
        self.calls: List[tuple] = []

    def _check(self, repo: str) -> None:
        if repo in self.failing:
            raise RemoteAPIError(500, "Internal Server Error")

    def call(self, endpoint: str, params: Dict[str, Any] | None = None) -> Dict[str, Any]:
        return {}

    def get_current_user(self) -> Dict[str, Any]:
        return self.user

    def list_repositories(self, workspace: str) -> List[RepositoryData]:
        return list(self.repositories.get(workspace, []))

    def list_repositories_page(self, workspace: str, page: int, per_page: int) -> List[RepositoryData]:
        repos = self.repositories.get(workspace, [])
        return repos[(page - 1) * per_page : page * per_page]

    def list_pull_requests(self, repo: str, since: str) -> List[PullRequestData]:
        self.calls.append(("prs", repo))
        self._check(repo)
        return list(self.prs.get(repo, []))

    def list_pull_request_commits(self, repo, pr, since, branch, author=None) -> List[CommitData]:
        self.calls.append(("pr_commits", repo, pr.id))
        return [
            c.model_copy(update={"branch": branch, "from_pull_request": pr.id, "pr_source_branch": pr.source_branch})
            for c in self.pr_commits.get((repo, pr.id), [])
        ]

    def list_branch_commits(self, repo, branch, since, author=None) -> List[CommitData]:
        self.calls.append(("branch_commits", repo, branch))
        return [c.model_copy(update={"branch": branch}) for c in self.branch_commits.get((repo, branch), [])]

    def list_author_commits(self, repo, since, author) -> List[CommitData]:
        self.calls.append(("author_commits", repo, author))
        return list(self.author_commits.get(repo, []))

    def list_branches(self, repo: str) -> List[str]:
        self.calls.append(("branches", repo))
        return list(self.branches.get(repo, ["main"]))


@pytest.fixture
def store() -> LocalStore:
    return LocalStore(make_session_factory("sqlite://"))


@pytest.fixture
def keyed_store(tmp_path: Path) -> KeyedStore:
    return KeyedStore(tmp_path)


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        storage=StorageConfig(database_url="sqlite://", state_dir=str(tmp_path)),
        worker=WorkerConfig(enabled=True),
    )
