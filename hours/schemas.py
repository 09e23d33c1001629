"""Records exchanged between the remote client, the orchestrator and the store."""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

PR_TERMINAL_STATES = ("MERGED", "DECLINED", "SUPERSEDED")


class RepositoryData(BaseModel):
    """Repository as listed by the remote API."""

    name: str
    full_name: str
    workspace: str
    updated_on: Optional[str] = None
    is_private: bool = False
    description: Optional[str] = None
    language: Optional[str] = None


class CommitData(BaseModel):
    """Commit observation from one remote query (branch, PR or author scope)."""

    repository: str = Field(..., description="Repository full_name")
    hash: str
    date: str = Field(..., description="ISO-8601 commit timestamp as reported")
    message: str = ""
    author_raw: Optional[str] = None
    author_username: Optional[str] = None
    ticket: Optional[str] = None
    branch: Optional[str] = None
    from_pull_request: Optional[int] = Field(default=None, description="Remote id of the originating PR")
    pr_source_branch: Optional[str] = None
    pr_destination_branch: Optional[str] = None

    def metadata(self) -> dict[str, Any]:
        """Opaque blob kept alongside the stored commit."""
        return self.model_dump(mode="json", exclude_none=True)


class PullRequestData(BaseModel):
    """Pull request as returned by the remote API."""

    repository: str
    id: int = Field(..., description="Remote pull request id")
    title: str = ""
    author: Optional[str] = None
    created_on: str
    updated_on: str
    state: Optional[str] = None
    source_branch: Optional[str] = None
    destination_branch: Optional[str] = None
    ticket: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        """MERGED, DECLINED and SUPERSEDED are final; OPEN is not."""
        return self.state in PR_TERMINAL_STATES

    def metadata(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ActivityQuery(BaseModel):
    """Validated parameters for activity reads and refresh jobs."""

    days: int = Field(default=14, ge=1, le=365)
    repositories: Optional[list[str]] = None
    author: Optional[str] = None
    force_refresh: bool = False

    model_config = {"extra": "forbid"}

    @field_validator("repositories")
    @classmethod
    def _clean_repositories(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        if v is None:
            return None
        cleaned = [r.strip() for r in v if r and r.strip()]
        return cleaned or None

    @field_validator("author")
    @classmethod
    def _clean_author(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    def cache_parameters(self) -> dict[str, Any]:
        """Parameter tuple used for response cache keys."""
        return {"days": self.days, "repositories": self.repositories, "author": self.author}


class JobParameters(BaseModel):
    """Snapshot of the parameters a refresh job was started with."""

    max_days: int
    repositories: Optional[list[str]] = None
    selected_repos_count: Optional[int] = None
    author_filter: Optional[str] = None


class JobStatusRecord(BaseModel):
    """Status of a refresh job as kept in the keyed store."""

    job_id: str
    status: str
    message: str = ""
    updated_at: str
    started_at: Optional[str] = None
    elapsed_time: Optional[float] = None
    elapsed_time_human: Optional[str] = None
    parameters: JobParameters

    model_config = {"extra": "forbid"}
