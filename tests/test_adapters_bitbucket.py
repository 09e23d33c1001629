"""Unit tests for Bitbucket adapter (mocked API)."""

from unittest.mock import Mock, patch

import pytest
import requests

from hours.adapters.base import RemoteAPIError, SourceControlAdapter
from hours.adapters.bitbucket import BitbucketAdapter, author_clause
from hours.config import AppConfig, BitbucketConfig
from hours.errors import ConfigurationError
from hours.schemas import PullRequestData

API = "https://api.bitbucket.org/2.0"


@pytest.fixture
def adapter() -> BitbucketAdapter:
    return BitbucketAdapter(username="jane", token="test-token", api_url=API)


def _resp(data: dict | None = None, status: int = 200, reason: str = "OK") -> Mock:
    resp = Mock()
    resp.status_code = status
    resp.reason = reason
    resp.text = reason
    resp.json.return_value = data if data is not None else {}
    return resp


def _commit(hash_: str, raw: str = "Jane Doe <jane.doe@example.com>", message: str = "PROJ-1 work") -> dict:
    return {"hash": hash_, "date": "2025-01-02T10:00:00+00:00", "message": message, "author": {"raw": raw, "user": {"username": "janedoe"}}}


def test_missing_credentials_raise_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        BitbucketAdapter(username=None, token="t")
    with pytest.raises(ConfigurationError):
        BitbucketAdapter(username="jane", token="")


def test_from_config_uses_resolved_credentials() -> None:
    config = AppConfig(bitbucket=BitbucketConfig(username="jane", token="secret"))
    adapter = BitbucketAdapter.from_config(config)
    assert adapter._session.auth == ("jane", "secret")


def test_normalize_endpoint_strips_base_path(adapter: BitbucketAdapter) -> None:
    """Full `next` URLs become path+query relative to the API base."""
    url = f"{API}/repositories/acme/api/commits/main?page=2&pagelen=50"
    assert adapter.normalize_endpoint(url) == "repositories/acme/api/commits/main?page=2&pagelen=50"
    assert adapter.normalize_endpoint("/user") == "user"


def test_call_success(adapter: BitbucketAdapter) -> None:
    with patch.object(adapter._session, "request", return_value=_resp({"username": "jane"})) as req:
        data = adapter.call("user")
    assert data == {"username": "jane"}
    args, kwargs = req.call_args
    assert args == ("GET", f"{API}/user")
    assert kwargs["params"] is None
    assert kwargs["timeout"] == (5.0, 20.0)


def test_call_http_error_raises(adapter: BitbucketAdapter) -> None:
    with patch.object(adapter._session, "request", return_value=_resp(status=404, reason="Not Found")):
        with pytest.raises(RemoteAPIError) as exc_info:
            adapter.call("repositories/acme/missing")
    assert exc_info.value.status_code == 404
    assert "404" in str(exc_info.value)


def test_call_network_error_raises(adapter: BitbucketAdapter) -> None:
    with patch.object(adapter._session, "request", side_effect=requests.ConnectionError("refused")):
        with pytest.raises(RemoteAPIError) as exc_info:
            adapter.call("user")
    assert exc_info.value.status_code is None


def test_branch_commits_follow_next_link(adapter: BitbucketAdapter) -> None:
    """Second page is requested via the `next` URL without re-sending params."""
    next_url = f"{API}/repositories/acme/api/commits/main?page=2"
    pages = [
        _resp({"values": [_commit("a1")], "next": next_url}),
        _resp({"values": [_commit("a2")]}),
    ]
    with patch.object(adapter._session, "request", side_effect=pages) as req:
        commits = adapter.list_branch_commits("acme/api", "main", "2025-01-01")

    assert [c.hash for c in commits] == ["a1", "a2"]
    assert all(c.branch == "main" for c in commits)
    assert commits[0].ticket == "PROJ-1"
    first, second = req.call_args_list
    assert first.kwargs["params"]["q"] == "date>=2025-01-01"
    assert second.args[1] == next_url
    assert second.kwargs["params"] is None


def test_branch_commits_page_limit(adapter: BitbucketAdapter) -> None:
    """Paging stops at branch_max_pages even if `next` is present."""
    next_url = f"{API}/repositories/acme/api/commits/main?page=2"
    resp = _resp({"values": [_commit("a1")], "next": next_url})
    adapter.branch_max_pages = 1
    with patch.object(adapter._session, "request", return_value=resp) as req:
        commits = adapter.list_branch_commits("acme/api", "main", "2025-01-01")
    assert len(commits) == 1
    assert req.call_count == 1


def test_branch_name_is_url_quoted(adapter: BitbucketAdapter) -> None:
    with patch.object(adapter._session, "request", return_value=_resp({"values": []})) as req:
        adapter.list_branch_commits("acme/api", "feature/login", "2025-01-01")
    assert req.call_args.args[1].endswith("/repositories/acme/api/commits/feature%2Flogin")


def test_author_filter_is_reverified_locally(adapter: BitbucketAdapter) -> None:
    values = [_commit("a1"), _commit("b1", raw="John Smith <john@example.com>")]
    with patch.object(adapter._session, "request", return_value=_resp({"values": values})) as req:
        commits = adapter.list_author_commits("acme/api", "2025-01-01", "jane.doe@example.com")
    assert [c.hash for c in commits] == ["a1"]
    assert commits[0].branch is None
    q = req.call_args.kwargs["params"]["q"]
    assert 'author.raw ~ "jane.doe@example.com"' in q
    assert 'author.user.username = "jane.doe@example.com"' in q


def test_author_clause_escapes_quotes() -> None:
    assert author_clause('Jane "JD" Doe') == '(author.raw ~ "Jane \\"JD\\" Doe" OR author.user.username = "Jane \\"JD\\" Doe")'


def test_list_pull_requests(adapter: BitbucketAdapter) -> None:
    values = [
        {
            "id": 7,
            "title": "PROJ-7 Login form",
            "author": {"display_name": "Jane Doe"},
            "created_on": "2025-01-01T09:00:00+00:00",
            "updated_on": "2025-01-03T09:00:00+00:00",
            "state": "MERGED",
            "source": {"branch": {"name": "feature/login"}},
            "destination": {"branch": {"name": "main"}},
        }
    ]
    with patch.object(adapter._session, "request", return_value=_resp({"values": values})) as req:
        prs = adapter.list_pull_requests("acme/api", "2025-01-01")

    assert len(prs) == 1
    pr = prs[0]
    assert pr.id == 7
    assert pr.ticket == "PROJ-7"
    assert pr.source_branch == "feature/login"
    assert pr.is_terminal
    params = req.call_args.kwargs["params"]
    assert params["state"] == "OPEN,MERGED,DECLINED,SUPERSEDED"
    assert params["q"] == "updated_on>=2025-01-01"


def test_pull_request_commits_tagged_with_pr(adapter: BitbucketAdapter) -> None:
    pr = PullRequestData(
        repository="acme/api",
        id=7,
        created_on="2025-01-01T09:00:00+00:00",
        updated_on="2025-01-01T09:00:00+00:00",
        source_branch="feature/login",
        destination_branch="main",
    )
    with patch.object(adapter._session, "request", return_value=_resp({"values": [_commit("a1")]})) as req:
        commits = adapter.list_pull_request_commits("acme/api", pr, "2025-01-01", "feature/login")
    assert commits[0].from_pull_request == 7
    assert commits[0].branch == "feature/login"
    assert commits[0].pr_destination_branch == "main"
    assert "/pullrequests/7/commits" in req.call_args.args[1]


def test_list_repositories(adapter: BitbucketAdapter) -> None:
    values = [{"name": "api", "full_name": "acme/api", "workspace": {"slug": "acme"}, "is_private": True}]
    with patch.object(adapter._session, "request", return_value=_resp({"values": values})) as req:
        repos = adapter.list_repositories("acme")
    assert repos[0].full_name == "acme/api"
    assert repos[0].workspace == "acme"
    assert repos[0].description is None
    assert req.call_args.kwargs["params"]["role"] == "member"


def test_list_branches(adapter: BitbucketAdapter) -> None:
    values = [{"name": "feature/x"}, {"name": "main"}]
    with patch.object(adapter._session, "request", return_value=_resp({"values": values})):
        assert adapter.list_branches("acme/api") == ["feature/x", "main"]


def test_list_repositories_page(adapter: BitbucketAdapter) -> None:
    values = [{"name": "web", "full_name": "acme/web", "workspace": {"slug": "acme"}}]
    with patch.object(adapter._session, "request", return_value=_resp({"values": values})) as req:
        repos = adapter.list_repositories_page("acme", page=3, per_page=25)
    assert [r.full_name for r in repos] == ["acme/web"]
    assert req.call_args.kwargs["params"]["page"] == 3
    assert req.call_args.kwargs["params"]["pagelen"] == 25


def test_adapter_must_implement_repository_pages() -> None:
    def stub(self, *args, **kwargs):
        return []

    methods = [
        "call",
        "get_current_user",
        "list_repositories",
        "list_pull_requests",
        "list_pull_request_commits",
        "list_branch_commits",
        "list_author_commits",
    ]
    partial = type("Partial", (SourceControlAdapter,), {name: stub for name in methods})
    with pytest.raises(TypeError):
        partial()
