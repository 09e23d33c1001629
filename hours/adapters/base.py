"""Abstract base for source-control hosting adapters."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List

from hours.errors import RemoteAPIError
from hours.schemas import CommitData, PullRequestData, RepositoryData

__all__ = ["RemoteAPIError", "SourceControlAdapter"]


class SourceControlAdapter(ABC):
    """Read-only interface to a hosting platform's commits and pull requests."""

    @abstractmethod
    def call(self, endpoint: str, params: Dict[str, Any] | None = None) -> Dict[str, Any]:
        """GET an endpoint path or a full pagination URL and return parsed JSON."""
        ...

    @abstractmethod
    def get_current_user(self) -> Dict[str, Any]:
        """Return the authenticated user."""
        ...

    @abstractmethod
    def list_repositories(self, workspace: str) -> List[RepositoryData]:
        """List all repositories of a workspace."""
        ...

    @abstractmethod
    def list_pull_requests(self, repo: str, since: str) -> List[PullRequestData]:
        """List pull requests in any state updated on or after since (YYYY-MM-DD)."""
        ...

    @abstractmethod
    def list_pull_request_commits(
        self,
        repo: str,
        pr: PullRequestData,
        since: str,
        branch: str,
        author: str | None = None,
    ) -> List[CommitData]:
        """List commits of one pull request, tagged with branch and PR id."""
        ...

    @abstractmethod
    def list_branch_commits(
        self,
        repo: str,
        branch: str,
        since: str,
        author: str | None = None,
    ) -> List[CommitData]:
        """List commits reachable from branch since the given date."""
        ...

    @abstractmethod
    def list_author_commits(self, repo: str, since: str, author: str) -> List[CommitData]:
        """List commits of one author across all branches."""
        ...

    def list_branches(self, repo: str) -> List[str]:
        """List branch names, most recently updated first. Override if needed."""
        return ["main"]

    @abstractmethod
    def list_repositories_page(self, workspace: str, page: int, per_page: int) -> List[RepositoryData]:
        """Return a single page (1-based) of workspace repositories."""
        ...
