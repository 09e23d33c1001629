"""Tests for the file-backed keyed TTL store."""

import threading
from pathlib import Path

from hours.keyed_store import KeyedStore


def test_put_and_get(keyed_store: KeyedStore) -> None:
    expires = keyed_store.put("activity:abc", {"data": [1, 2]}, ttl_seconds=60)
    assert expires is not None
    assert keyed_store.get("activity:abc") == {"data": [1, 2]}
    entry = keyed_store.get_entry("activity:abc")
    assert entry["expires_at"] == expires.isoformat()


def test_missing_key_returns_default(keyed_store: KeyedStore) -> None:
    assert keyed_store.get("nope") is None
    assert keyed_store.get("nope", default=[]) == []
    assert not keyed_store.has("nope")


def test_expired_entry_reads_as_absent_and_is_removed(tmp_path: Path) -> None:
    store = KeyedStore(tmp_path)
    store.put("k", "v", ttl_seconds=-1)
    assert store.get("k") is None
    assert list((tmp_path / "cache").glob("*.yaml")) == []


def test_no_ttl_never_expires(keyed_store: KeyedStore) -> None:
    assert keyed_store.put("k", "v") is None
    assert keyed_store.has("k")


def test_forget_and_forget_prefix(keyed_store: KeyedStore) -> None:
    keyed_store.put("activity:1", 1, 60)
    keyed_store.put("activity:2", 2, 60)
    keyed_store.put("refresh_job_status:x", {"status": "queued"}, 60)
    assert keyed_store.forget_prefix("activity:") == 2
    assert keyed_store.has("refresh_job_status:x")
    assert keyed_store.forget("refresh_job_status:x") is True
    assert keyed_store.forget("refresh_job_status:x") is False


def test_flush(keyed_store: KeyedStore) -> None:
    keyed_store.put("a", 1, 60)
    keyed_store.put("b", 2, 60)
    assert keyed_store.flush() == 2
    assert keyed_store.get("a") is None


def test_shared_between_instances(tmp_path: Path) -> None:
    """A second store on the same directory (another process) sees the value."""
    KeyedStore(tmp_path).put("latest_refresh_status", {"job_id": "j"}, 60)
    assert KeyedStore(tmp_path).get("latest_refresh_status") == {"job_id": "j"}


def test_concurrent_puts_of_one_key(keyed_store: KeyedStore, tmp_path: Path) -> None:
    """Worker and request threads writing the latest pointer at once."""
    errors: list[Exception] = []

    def writer(job_id: str) -> None:
        try:
            for i in range(300):
                keyed_store.put("latest_refresh_status", {"job_id": job_id, "n": i}, 60)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=writer, args=(name,)) for name in ("a", "b")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert keyed_store.get("latest_refresh_status")["n"] == 299
    assert list((tmp_path / "cache").glob("*.tmp")) == []
