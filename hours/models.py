"""Database models: repositories, commits and pull requests."""

from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Current time as naive UTC (the form stored in DateTime columns)."""
    return datetime.now(UTC).replace(tzinfo=None)


def parse_remote_datetime(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 timestamp from the API into naive UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is not None:
        dt = dt.astimezone(UTC).replace(tzinfo=None)
    return dt


def isoformat(value: datetime | None) -> str | None:
    """Naive UTC datetime to ISO string with a Z suffix."""
    if value is None:
        return None
    return value.replace(microsecond=0).isoformat() + "Z"


class Repository(Base):
    """Tracked repository. Deactivated rather than deleted."""

    __tablename__ = "repositories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=False, unique=True)  # workspace/repo
    workspace = Column(String(255), nullable=False, index=True)
    remote_updated_on = Column(DateTime, nullable=True)
    is_private = Column(Boolean, default=False, nullable=False)
    description = Column(Text, nullable=True)
    language = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    commits = relationship("Commit", back_populates="repository", cascade="all, delete-orphan")
    pull_requests = relationship("PullRequest", back_populates="repository", cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "full_name": self.full_name,
            "workspace": self.workspace,
            "description": self.description,
            "language": self.language,
            "is_private": self.is_private,
            "is_active": self.is_active,
            "updated_on": isoformat(self.remote_updated_on),
        }


class Commit(Base):
    """Commit keyed by (repository, hash)."""

    __tablename__ = "commits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    repository_id = Column(Integer, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False)
    hash = Column(String(64), nullable=False)
    commit_date = Column(DateTime, nullable=False)
    message = Column(Text, nullable=False, default="")
    author_raw = Column(String(512), nullable=True)
    author_username = Column(String(255), nullable=True)
    ticket = Column(String(50), nullable=True, index=True)
    branch = Column(String(255), nullable=True)
    pull_request_id = Column(Integer, nullable=True)  # remote id of the originating PR
    metadata_ = Column("remote_data", JSON, nullable=True)
    last_fetched_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    repository = relationship("Repository", back_populates="commits")

    __table_args__ = (
        UniqueConstraint("repository_id", "hash", name="uq_commits_repository_hash"),
        Index("ix_commits_repository_date", "repository_id", "commit_date"),
        Index("ix_commits_last_fetched", "repository_id", "last_fetched_at"),
    )


class PullRequest(Base):
    """Pull request keyed by (repository, remote id)."""

    __tablename__ = "pull_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    repository_id = Column(Integer, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False)
    remote_id = Column(Integer, nullable=False)
    title = Column(Text, nullable=False, default="")
    author_display_name = Column(String(255), nullable=True)
    created_on = Column(DateTime, nullable=False)
    updated_on = Column(DateTime, nullable=False)
    state = Column(String(20), nullable=True)  # OPEN, MERGED, DECLINED, SUPERSEDED
    ticket = Column(String(50), nullable=True, index=True)
    source_branch = Column(String(255), nullable=True)
    destination_branch = Column(String(255), nullable=True)
    metadata_ = Column("remote_data", JSON, nullable=True)
    last_fetched_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    repository = relationship("Repository", back_populates="pull_requests")

    __table_args__ = (
        UniqueConstraint("repository_id", "remote_id", name="uq_pull_requests_repository_remote_id"),
        Index("ix_pull_requests_repository_updated", "repository_id", "updated_on"),
    )
