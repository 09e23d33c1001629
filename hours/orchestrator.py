"""Fetch orchestration: remote API -> local store, one repository at a time.

Per repository the order is fixed: pull requests, then commits of each pull
request, then commits on the main branch candidates, then (with an author
filter) the author's commits across all branches. Pull request commits are
stored first so their feature branch wins over the generic branch seen later.
"""

import logging
import re
import time
from datetime import datetime
from typing import Any, Callable

from hours.adapters.base import SourceControlAdapter
from hours.config import SyncConfig
from hours.errors import CancellationSignal, NotFound, RemoteAPIError
from hours.extract import extract_branch_from_message, extract_branch_from_pr_title, prefer_branch
from hours.jobs import CancellationToken
from hours.keyed_store import KeyedStore
from hours.models import Repository
from hours.schemas import CommitData, PullRequestData
from hours.store import DEFAULT_BRANCH, LocalStore, since_string

ProgressCallback = Callable[[str], None]

LOG = logging.getLogger("hours.orchestrator")

BRANCHES_KEY_PREFIX = "repo_branches:"
PRIORITY_BRANCH_NAMES = ("main", "master", "develop", "dev", "staging", "production")
PRIORITY_BRANCH_RE = re.compile(r"^(feature|hotfix|bugfix|release|vue3)/", re.IGNORECASE)
MAX_OTHER_BRANCHES = 5
FALLBACK_BRANCHES = ["main", "develop", "dev"]


def merge_commits(commits: list[CommitData]) -> list[CommitData]:
    """Collapse observations of the same hash, keeping the most specific branch."""
    merged: dict[str, CommitData] = {}
    for commit in commits:
        existing = merged.get(commit.hash)
        if existing is None:
            merged[commit.hash] = commit
            continue
        branch = prefer_branch(existing.branch, commit.branch)
        if branch != existing.branch:
            merged[commit.hash] = existing.model_copy(update={"branch": branch})
    return list(merged.values())


def select_branches(names: list[str]) -> list[str]:
    """Well-known branches plus up to five other recently updated ones."""
    priority = [b for b in names if b in PRIORITY_BRANCH_NAMES or PRIORITY_BRANCH_RE.match(b)]
    others = [b for b in names if b not in priority]
    return priority + others[:MAX_OTHER_BRANCHES]


class FetchOrchestrator:
    """Runs refreshes and sync operations against one adapter and one store."""

    def __init__(
        self,
        adapter: SourceControlAdapter,
        store: LocalStore,
        config: SyncConfig | None = None,
        cache: KeyedStore | None = None,
    ) -> None:
        self.adapter = adapter
        self.store = store
        self.config = config or SyncConfig()
        self.cache = cache
        self.clock: Callable[[], float] = time.monotonic

    # Repository selection

    def select_repositories(self, repositories: list[str] | None = None, limit: int | None = None) -> list[Repository]:
        """Active repositories in priority order, capped at limit (default max_repositories)."""
        priority = self.config.priority_repositories
        if repositories:
            ordered_names = [p for p in priority if p in repositories]
            ordered_names += [r for r in repositories if r not in ordered_names]
            found = {r.full_name: r for r in self.store.list_repositories(repositories)}
            missing = [n for n in ordered_names if n not in found]
            if missing:
                LOG.info("Skipping unknown or inactive repositories: %s", ", ".join(missing))
            ordered = [found[n] for n in ordered_names if n in found]
        else:
            rank = {name: i for i, name in enumerate(priority)}
            ordered = self.store.list_repositories()
            ordered.sort(key=lambda r: r.remote_updated_on or datetime.min, reverse=True)
            ordered.sort(key=lambda r: rank.get(r.full_name, len(priority)))
        return ordered[: limit or self.config.max_repositories]

    # Progress / cancellation checkpoints

    @staticmethod
    def _emit(progress: ProgressCallback | None, token: CancellationToken | None, message: str) -> None:
        if token is not None:
            token.check()
        if progress is not None:
            progress(message)

    # Top-level refresh

    def refresh(
        self,
        max_days: int = 14,
        repositories: list[str] | None = None,
        author: str | None = None,
        progress: ProgressCallback | None = None,
        time_budget: float | None = None,
        token: CancellationToken | None = None,
        raise_errors: bool = False,
        limit: int | None = None,
    ) -> dict[str, Any]:
        """Fetch and store activity for the selected repositories.

        Stops early (without error) when time_budget seconds have passed.
        A failing repository is logged and skipped unless raise_errors is set.
        Raises CancellationSignal when the token reports a cancel.
        """
        budget = time_budget if time_budget is not None else self.config.sync_time_budget
        start = self.clock()
        since = since_string(max_days)
        repos = self.select_repositories(repositories, limit)
        total = len(repos)
        summary: dict[str, Any] = {
            "repositories": total,
            "processed": 0,
            "skipped": [],
            "commits": 0,
            "pull_requests": 0,
            "truncated": False,
        }
        LOG.info(
            "Starting API refresh for %s repositories since %s (budget %ss): %s",
            total,
            since,
            budget,
            [r.full_name for r in repos],
        )
        self._emit(progress, token, f"Starting refresh of {total} repositories...")

        for index, repo in enumerate(repos, start=1):
            elapsed = self.clock() - start
            if elapsed > budget:
                LOG.warning(
                    "Refresh time budget exceeded after %.1fs, stopping after %s of %s repositories",
                    elapsed,
                    index - 1,
                    total,
                )
                summary["truncated"] = True
                break
            if token is not None:
                token.check()
            try:
                counts = self.refresh_repository(repo, since, author, progress, token, index, total)
            except CancellationSignal:
                raise
            except Exception as e:
                if raise_errors:
                    raise
                LOG.warning("Failed to refresh data for repository %s: %s", repo.full_name, e)
                summary["skipped"].append(repo.full_name)
                continue
            summary["processed"] += 1
            summary["commits"] += counts["commits"]
            summary["pull_requests"] += counts["pull_requests"]

        elapsed = round(self.clock() - start, 2)
        summary["elapsed"] = elapsed
        LOG.info("API refresh completed in %s seconds: %s", elapsed, summary)
        self._emit(progress, token, f"Refresh completed in {elapsed} seconds!")
        return summary

    def refresh_repository(
        self,
        repo: Repository,
        since: str,
        author: str | None = None,
        progress: ProgressCallback | None = None,
        token: CancellationToken | None = None,
        index: int = 1,
        total: int = 1,
    ) -> dict[str, int]:
        """Run the four fetch phases for one repository."""
        name = repo.full_name
        label = f"{name} ({index}/{total})"

        self._emit(progress, token, f"Processing {label} - Fetching pull requests...")
        prs = self.adapter.list_pull_requests(name, since)
        self.store.upsert_pull_requests(repo, prs)

        self._emit(progress, token, f"Processing {label} - Fetching PR commits...")
        pr_commits = self.fetch_pull_request_commits(name, prs, since, author)
        self.store.upsert_commits(repo, pr_commits)

        self._emit(progress, token, f"Processing {label} - Fetching main branch commits...")
        main_commits = self.fetch_main_branch_commits(name, since, author)
        self.store.upsert_commits(repo, main_commits)

        author_commits: list[CommitData] = []
        if author:
            self._emit(progress, token, f"Processing {label} - Fetching author activity...")
            author_commits = self.fetch_author_commits(name, since, author)
            self.store.upsert_commits(repo, author_commits)

        commit_count = len({c.hash for c in pr_commits + main_commits + author_commits})
        LOG.info(
            "Refreshed %s: %s PR commits, %s branch commits, %s author commits, %s pull requests",
            name,
            len(pr_commits),
            len(main_commits),
            len(author_commits),
            len(prs),
        )
        self._emit(progress, token, f"Completed {label} - {commit_count} total commits, {len(prs)} pull requests")
        return {"commits": commit_count, "pull_requests": len(prs)}

    # Fetch phases

    def fetch_pull_request_commits(
        self,
        repo: str,
        prs: list[PullRequestData],
        since: str,
        author: str | None = None,
    ) -> list[CommitData]:
        """Commits of every PR, tagged with the PR's source branch and id."""
        commits: list[CommitData] = []
        for pr in prs:
            branch = (
                pr.source_branch
                or extract_branch_from_pr_title(pr.title)
                or extract_branch_from_message(pr.title)
                or DEFAULT_BRANCH
            )
            try:
                commits.extend(self.adapter.list_pull_request_commits(repo, pr, since, branch, author))
            except RemoteAPIError as e:
                LOG.warning("Failed to fetch commits for PR %s in %s: %s", pr.id, repo, e)
        LOG.info("Fetched %s commits from %s pull requests for %s", len(commits), len(prs), repo)
        return merge_commits(commits)

    def fetch_main_branch_commits(self, repo: str, since: str, author: str | None = None) -> list[CommitData]:
        commits: list[CommitData] = []
        for branch in self.main_branches_for(repo):
            commits.extend(self.adapter.list_branch_commits(repo, branch, since, author))
        return merge_commits(commits)

    def fetch_author_commits(self, repo: str, since: str, author: str) -> list[CommitData]:
        """Author's commits on any branch; branch guessed from the message."""
        commits = self.adapter.list_author_commits(repo, since, author)
        return merge_commits(
            [c.model_copy(update={"branch": extract_branch_from_message(c.message) or DEFAULT_BRANCH}) for c in commits]
        )

    # Branches

    def repository_branches(self, repo: str) -> list[str]:
        """Branch names worth fetching, cached for branches_ttl_seconds."""
        key = f"{BRANCHES_KEY_PREFIX}{repo}"
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached:
                return cached
        try:
            names = self.adapter.list_branches(repo)
        except RemoteAPIError as e:
            LOG.warning("Failed to fetch branches for %s: %s", repo, e)
            return list(FALLBACK_BRANCHES)
        branches = select_branches(names) or [DEFAULT_BRANCH]
        LOG.info("Found %s branches for %s: %s", len(branches), repo, ", ".join(branches))
        if self.cache is not None:
            self.cache.put(key, branches, self.config.branches_ttl_seconds)
        return branches

    def main_branches_for(self, repo: str) -> list[str]:
        """Main branch candidates that exist in repo, else its first branch."""
        existing = self.repository_branches(repo)
        branches = [b for b in self.config.main_branches if b in existing]
        if not branches and existing:
            branches = [existing[0]]
        return branches

    # Sync operations

    def _sync_targets(self, repository: str | None) -> list[Repository]:
        if repository is None:
            return self.store.list_repositories()
        repo = self.store.get_repository(repository)
        if repo is None or not repo.is_active:
            raise NotFound(f"Unknown repository: {repository}")
        return [repo]

    def sync_repositories(self, workspaces: list[str], per_page: int = 50) -> dict[str, int]:
        """Upsert all workspace repositories in chunks; deactivate vanished ones."""
        totals = {"created": 0, "updated": 0, "deactivated": 0, "errors": 0}
        for workspace in workspaces:
            seen: set[str] = set()
            page = 1
            complete = True
            while True:
                try:
                    repos = self.adapter.list_repositories_page(workspace, page, per_page)
                except RemoteAPIError as e:
                    LOG.warning("Failed to list repositories of %s (page %s): %s", workspace, page, e)
                    totals["errors"] += 1
                    complete = False
                    break
                for data in repos:
                    seen.add(data.full_name)
                    try:
                        _, created = self.store.upsert_repository(data)
                    except Exception as e:
                        LOG.error("Error syncing repository %s: %s", data.full_name, e)
                        totals["errors"] += 1
                        continue
                    totals["created" if created else "updated"] += 1
                LOG.info("Workspace %s chunk %s: %s repositories", workspace, page, len(repos))
                if len(repos) < per_page:
                    break
                page += 1
            if complete:
                totals["deactivated"] += self.store.deactivate_missing(workspace, seen)
        LOG.info("Repository sync completed: %s", totals)
        return totals

    def sync_pull_requests(self, days: int = 14, repository: str | None = None) -> dict[str, int]:
        since = since_string(days)
        totals = {"repositories": 0, "created": 0, "updated": 0, "errors": 0}
        for repo in self._sync_targets(repository):
            try:
                prs = self.adapter.list_pull_requests(repo.full_name, since)
            except RemoteAPIError as e:
                LOG.warning("Error syncing pull requests for %s: %s", repo.full_name, e)
                totals["errors"] += 1
                continue
            counts = self.store.upsert_pull_requests(repo, prs)
            totals["repositories"] += 1
            for k in ("created", "updated", "errors"):
                totals[k] += counts[k]
        LOG.info("Pull request sync completed: %s", totals)
        return totals

    def sync_commits(
        self,
        days: int = 14,
        repository: str | None = None,
        author: str | None = None,
    ) -> dict[str, int]:
        """Main-branch commits plus (with author) the author's cross-branch commits."""
        since = since_string(days)
        totals = {"repositories": 0, "created": 0, "updated": 0, "errors": 0}
        for repo in self._sync_targets(repository):
            try:
                commits = self.fetch_main_branch_commits(repo.full_name, since)
                if author:
                    commits += self.fetch_author_commits(repo.full_name, since, author)
            except RemoteAPIError as e:
                LOG.warning("Error syncing commits for %s: %s", repo.full_name, e)
                totals["errors"] += 1
                continue
            counts = self.store.upsert_commits(repo, merge_commits(commits))
            totals["repositories"] += 1
            for k in ("created", "updated", "errors"):
                totals[k] += counts[k]
        LOG.info("Commit sync completed: %s", totals)
        return totals
