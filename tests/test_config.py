"""Tests for configuration loading (YAML + env)."""

from pathlib import Path

import pytest

from hours.config import AppConfig, BitbucketConfig, load_config


def test_missing_file_returns_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "nope.yaml")
    assert isinstance(config, AppConfig)
    assert config.sync.max_repositories == 10
    assert config.sync.main_branches == ["main", "master", "develop", "dev"]
    assert config.cache.activity_ttl_minutes == 30
    assert config.storage.database_url == "sqlite:///hours.db"


def test_yaml_sections_and_env_substitution(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BB_APP_PASSWORD", "s3cret")
    path = tmp_path / "config.yaml"
    path.write_text(
        "bitbucket:\n"
        "  username: jane\n"
        "  token: ${BB_APP_PASSWORD}\n"
        "  workspaces: 'acme, widgets ,'\n"
        "sync:\n"
        "  max_repositories: 3\n"
        "  priority_repositories: [acme/api]\n"
        "storage:\n"
        f"  state_dir: {tmp_path / 'state'}\n"
        "logging:\n"
        "  level: DEBUG\n"
    )
    config = load_config(path)
    assert config.bitbucket_username_resolved == "jane"
    assert config.bitbucket_token_resolved == "s3cret"
    assert config.bitbucket.workspace_list == ["acme", "widgets"]
    assert config.sync.max_repositories == 3
    assert config.sync.priority_repositories == ["acme/api"]
    assert config.state_path == tmp_path / "state"
    assert config.logging.level == "DEBUG"


def test_token_from_secret_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    secret = tmp_path / "token.txt"
    secret.write_text("file-token\n")
    monkeypatch.delenv("BITBUCKET_TOKEN", raising=False)
    monkeypatch.setenv("BITBUCKET_TOKEN_FILE", str(secret))
    config = load_config(tmp_path / "nope.yaml")
    assert config.bitbucket_token_resolved == "file-token"


def test_env_prefix_applies_to_section() -> None:
    config = BitbucketConfig(_env_file=None, workspaces="a,b")
    assert config.workspace_list == ["a", "b"]


def test_unknown_section_keys_ignored(tmp_path: Path) -> None:
    """Keys no section defines (e.g. from older configs) do not break loading."""
    path = tmp_path / "config.yaml"
    path.write_text("bitbucket:\n  workspaces: acme\n  author_email: jane@example.com\n")
    config = load_config(path)
    assert config.bitbucket.workspace_list == ["acme"]
    assert not hasattr(config.bitbucket, "author_email")
    assert config.logging.format == ""
