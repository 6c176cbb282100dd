from __future__ import annotations

from pathlib import Path

import novel_continuity.llm.cache as cache_module
from novel_continuity.llm.cache import SimpleCache


def test_namespaces_do_not_share_entries(tmp_path: Path) -> None:
    continuity = SimpleCache(True, "sqlite", tmp_path, ttl_seconds=0, namespace="continuity")
    other = SimpleCache(True, "sqlite", tmp_path, ttl_seconds=0, namespace="other")
    try:
        continuity.set("key", '{"protagonist": {}}')

        assert continuity.get("key").hit is True
        assert other.get("key").hit is False
        assert (continuity.hits, continuity.misses) == (1, 0)
        assert (other.hits, other.misses) == (0, 1)
    finally:
        continuity.close()
        other.close()


def test_expired_entries_miss_and_purge(tmp_path: Path, monkeypatch) -> None:
    now = [1_000.0]
    monkeypatch.setattr(cache_module.time, "time", lambda: now[0])
    cache = SimpleCache(True, "sqlite", tmp_path, ttl_seconds=60, namespace="continuity")
    try:
        cache.set("old", "a")
        cache.set("stale", "b")
        now[0] += 61
        cache.set("fresh", "c")

        assert cache.get("old").hit is False
        assert cache.purge_expired() == 1
        assert cache.get("fresh").value == "c"
    finally:
        cache.close()


def test_disabled_or_unknown_backend_never_hits(tmp_path: Path) -> None:
    disabled = SimpleCache(False, "sqlite", tmp_path, ttl_seconds=0)
    unknown = SimpleCache(True, "redis", tmp_path, ttl_seconds=0)

    disabled.set("key", "value")
    unknown.set("key", "value")

    assert disabled.get("key").hit is False
    assert unknown.enabled is False
    assert unknown.get("key").hit is False
    assert unknown.purge_expired() == 0
