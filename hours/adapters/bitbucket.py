"""Bitbucket Cloud REST API (2.0) adapter."""

import logging
from typing import Any, Dict, Iterator, List
from urllib.parse import quote, urlsplit

import requests

from hours.adapters.base import SourceControlAdapter
from hours.authors import commit_matches_author
from hours.errors import ConfigurationError, RemoteAPIError
from hours.extract import extract_ticket
from hours.schemas import CommitData, PullRequestData, RepositoryData

LOG = logging.getLogger("hours.adapters.bitbucket")

PR_STATES = "OPEN,MERGED,DECLINED,SUPERSEDED"
COMMIT_FIELDS = "values.hash,values.date,values.message,values.author.raw,values.author.user.username,next"
PR_FIELDS = (
    "values.id,values.title,values.author.display_name,values.created_on,values.updated_on,"
    "values.state,values.source.branch.name,values.destination.branch.name,next"
)
BRANCH_FIELDS = "values.name,values.target.date,next"

# Safety limit when listing workspace repositories
MAX_REPOSITORY_PAGES = 1000


def author_clause(author: str) -> str:
    """BBQL clause matching raw author string or username; quotes escaped."""
    escaped = author.replace('"', '\\"')
    return f'(author.raw ~ "{escaped}" OR author.user.username = "{escaped}")'


def _repository_from_api(data: Dict[str, Any]) -> RepositoryData:
    workspace = (data.get("workspace") or {}).get("slug")
    full_name = data["full_name"]
    return RepositoryData(
        name=data.get("name") or full_name.split("/")[-1],
        full_name=full_name,
        workspace=workspace or full_name.split("/")[0],
        updated_on=data.get("updated_on"),
        is_private=bool(data.get("is_private", False)),
        description=data.get("description") or None,
        language=data.get("language") or None,
    )


def _commit_from_api(data: Dict[str, Any], repo: str, branch: str | None = None, **extra: Any) -> CommitData:
    author = data.get("author") or {}
    user = author.get("user") or {}
    message = data.get("message") or ""
    return CommitData(
        repository=repo,
        hash=data["hash"],
        date=data["date"],
        message=message,
        author_raw=author.get("raw"),
        author_username=user.get("username"),
        ticket=extract_ticket(message),
        branch=branch,
        **extra,
    )


def _pr_from_api(data: Dict[str, Any], repo: str) -> PullRequestData:
    author = data.get("author") or {}
    source = (data.get("source") or {}).get("branch") or {}
    destination = (data.get("destination") or {}).get("branch") or {}
    title = data.get("title") or ""
    return PullRequestData(
        repository=repo,
        id=data["id"],
        title=title,
        author=author.get("display_name"),
        created_on=data["created_on"],
        updated_on=data.get("updated_on") or data["created_on"],
        state=data.get("state"),
        source_branch=source.get("name"),
        destination_branch=destination.get("name"),
        ticket=extract_ticket(title),
    )


def _filter_author(commits: List[CommitData], author: str | None, repo: str) -> List[CommitData]:
    """Re-check author locally; the server-side BBQL filter is approximate."""
    if not author:
        return commits
    kept = [c for c in commits if commit_matches_author(c.author_raw, c.author_username, author)]
    if len(kept) != len(commits):
        LOG.info("Locally filtered author commits for %s: %s -> %s", repo, len(commits), len(kept))
    return kept


class BitbucketAdapter(SourceControlAdapter):
    """Bitbucket API implementation (basic auth with username + app password)."""

    def __init__(
        self,
        username: str | None,
        token: str | None,
        api_url: str = "https://api.bitbucket.org/2.0",
        connect_timeout: float = 5.0,
        timeout: float = 20.0,
        user_agent: str = "Hours-Sync/1.0",
        commit_page_length: int = 50,
        branch_max_pages: int = 2,
        pr_page_length: int = 50,
        pr_max_pages: int = 10,
    ) -> None:
        if not username or not token:
            raise ConfigurationError(
                "Bitbucket credentials not configured. Set BITBUCKET_USERNAME and BITBUCKET_TOKEN."
            )
        self._api_url = api_url.rstrip("/")
        self._base_path = urlsplit(self._api_url).path.rstrip("/")
        self._timeout = (connect_timeout, timeout)
        self._session = requests.Session()
        self._session.auth = (username, token)
        self._session.headers["Accept"] = "application/json"
        self._session.headers["User-Agent"] = user_agent
        self.commit_page_length = commit_page_length
        self.branch_max_pages = branch_max_pages
        self.pr_page_length = pr_page_length
        self.pr_max_pages = pr_max_pages

    @classmethod
    def from_config(cls, config: Any) -> "BitbucketAdapter":
        """Build from AppConfig; raises ConfigurationError without credentials."""
        bb = config.bitbucket
        return cls(
            username=config.bitbucket_username_resolved,
            token=config.bitbucket_token_resolved,
            api_url=bb.api_url,
            connect_timeout=bb.connect_timeout,
            timeout=bb.timeout,
            user_agent=bb.user_agent,
            commit_page_length=config.sync.branch_page_length,
            branch_max_pages=config.sync.branch_max_pages,
            pr_page_length=config.sync.pr_page_length,
            pr_max_pages=config.sync.pr_max_pages,
        )

    def normalize_endpoint(self, endpoint: str) -> str:
        """Turn a full URL (e.g. a `next` link) into a path+query relative to the API base."""
        if not endpoint.startswith(("http://", "https://")):
            return endpoint.lstrip("/")
        parts = urlsplit(endpoint)
        path = parts.path
        if self._base_path and path.startswith(self._base_path + "/"):
            path = path[len(self._base_path) :]
        path = path.lstrip("/")
        return f"{path}?{parts.query}" if parts.query else path

    def call(self, endpoint: str, params: Dict[str, Any] | None = None) -> Dict[str, Any]:
        url = f"{self._api_url}/{self.normalize_endpoint(endpoint)}"
        try:
            resp = self._session.request("GET", url, params=params or None, timeout=self._timeout)
        except requests.RequestException as e:
            raise RemoteAPIError(None, str(e)) from e
        if not 200 <= resp.status_code < 300:
            raise RemoteAPIError(resp.status_code, resp.reason or resp.text or str(resp.status_code))
        try:
            return resp.json() or {}
        except ValueError as e:
            raise RemoteAPIError(resp.status_code, f"Invalid JSON response: {e}") from e

    def paginate(
        self,
        endpoint: str,
        params: Dict[str, Any] | None = None,
        max_pages: int = 1,
    ) -> Iterator[List[Dict[str, Any]]]:
        """Yield the `values` of each page, following `next` up to max_pages."""
        url: str | None = endpoint
        page_params = dict(params or {})
        pages = 0
        while url and pages < max_pages:
            data = self.call(url, page_params)
            values = data.get("values")
            if values is None:
                return
            pages += 1
            LOG.debug("Page %s of %s: %s values", pages, endpoint, len(values))
            yield values
            nxt = data.get("next")
            url = self.normalize_endpoint(nxt) if nxt else None
            # The next link already carries the query
            page_params = {}
        if url:
            LOG.info("Stopped paging %s after %s pages (limit reached)", endpoint, max_pages)

    def get_current_user(self) -> Dict[str, Any]:
        return self.call("user")

    def list_repositories(self, workspace: str) -> List[RepositoryData]:
        params = {"role": "member", "sort": "updated_on", "pagelen": 100}
        repos: List[RepositoryData] = []
        for values in self.paginate(f"repositories/{workspace}", params, max_pages=MAX_REPOSITORY_PAGES):
            repos.extend(_repository_from_api(v) for v in values)
        LOG.info("Fetched %s repositories for workspace %s", len(repos), workspace)
        return repos

    def list_repositories_page(self, workspace: str, page: int, per_page: int) -> List[RepositoryData]:
        params = {"role": "member", "sort": "updated_on", "pagelen": per_page, "page": page}
        data = self.call(f"repositories/{workspace}", params)
        return [_repository_from_api(v) for v in data.get("values") or []]

    def list_pull_requests(self, repo: str, since: str) -> List[PullRequestData]:
        params = {
            "state": PR_STATES,
            "sort": "-updated_on",
            "q": f"updated_on>={since}",
            "pagelen": self.pr_page_length,
            "fields": PR_FIELDS,
        }
        prs: List[PullRequestData] = []
        for values in self.paginate(f"repositories/{repo}/pullrequests", params, max_pages=self.pr_max_pages):
            prs.extend(_pr_from_api(v, repo) for v in values)
        LOG.info("Fetched %s pull requests for %s since %s", len(prs), repo, since)
        return prs

    def list_pull_request_commits(
        self,
        repo: str,
        pr: PullRequestData,
        since: str,
        branch: str,
        author: str | None = None,
    ) -> List[CommitData]:
        q = f"date>={since}"
        if author:
            q += f" AND {author_clause(author)}"
        params = {"q": q, "pagelen": 100, "fields": COMMIT_FIELDS}
        commits: List[CommitData] = []
        endpoint = f"repositories/{repo}/pullrequests/{pr.id}/commits"
        for values in self.paginate(endpoint, params, max_pages=self.pr_max_pages):
            commits.extend(
                _commit_from_api(
                    v,
                    repo,
                    branch,
                    from_pull_request=pr.id,
                    pr_source_branch=pr.source_branch,
                    pr_destination_branch=pr.destination_branch,
                )
                for v in values
            )
        return _filter_author(commits, author, repo)

    def list_branch_commits(
        self,
        repo: str,
        branch: str,
        since: str,
        author: str | None = None,
    ) -> List[CommitData]:
        q = f"date>={since}"
        if author:
            q += f" AND {author_clause(author)}"
        params = {"q": q, "sort": "-date", "pagelen": self.commit_page_length, "fields": COMMIT_FIELDS}
        commits: List[CommitData] = []
        endpoint = f"repositories/{repo}/commits/{quote(branch, safe='')}"
        for values in self.paginate(endpoint, params, max_pages=self.branch_max_pages):
            commits.extend(_commit_from_api(v, repo, branch) for v in values)
        LOG.debug("Fetched %s commits from branch %s of %s", len(commits), branch, repo)
        return _filter_author(commits, author, repo)

    def list_author_commits(self, repo: str, since: str, author: str) -> List[CommitData]:
        params = {
            "q": f"date>={since} AND {author_clause(author)}",
            "sort": "-date",
            "pagelen": 100,
            "fields": COMMIT_FIELDS,
        }
        commits: List[CommitData] = []
        for values in self.paginate(f"repositories/{repo}/commits", params, max_pages=self.branch_max_pages):
            commits.extend(_commit_from_api(v, repo) for v in values)
        LOG.info("Found %s cross-branch commits for author in %s", len(commits), repo)
        return _filter_author(commits, author, repo)

    def list_branches(self, repo: str) -> List[str]:
        params = {"pagelen": 100, "sort": "-target.date", "fields": BRANCH_FIELDS}
        data = self.call(f"repositories/{repo}/refs/branches", params)
        return [v["name"] for v in data.get("values") or [] if v.get("name")]
