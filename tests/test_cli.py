"""Tests for the biolink-sync command-line interface."""

import json

import pytest
from click.testing import CliRunner

from biolink.cli import main
from biolink.database import DuckDBLocalStorage
from biolink.sync.cache import LocalCache
from biolink.sync.models import Operation, QueueItem
from biolink.sync.sync_queue import SyncQueue


@pytest.fixture
def db_path(tmp_path):
    """DuckDB file holding one cached profile and two queued mutations."""
    path = tmp_path / "sync.duckdb"
    with DuckDBLocalStorage(path) as storage:
        cache = LocalCache(storage=storage)
        cache.set("profiles:p1", {"username": "ada"})
        cache.set("links:l1", {"title": "Blog"})
        cache.persist()

        queue = SyncQueue(storage=storage)
        queue.enqueue(QueueItem(Operation.SET, "profiles", "p1", payload={"bio": "x"}))
        failed = queue.enqueue(QueueItem(Operation.DELETE, "links", "l9"))
        failed.retry_count = 2
        failed.last_error = "connection reset"
        queue.persist()
    return path


def run(db_path, *args, **kwargs):
    return CliRunner().invoke(main, ["--db", str(db_path), *args], **kwargs)


def test_show_stats_json(db_path):
    result = run(db_path, "show-stats", "--json")

    assert result.exit_code == 0, result.output
    stats = json.loads(result.output)
    assert stats["cache_size"] == 2
    assert stats["queue_size"] == 2
    assert stats["failed_items"] == 1
    assert stats["storage_keys"] == ["data_cache", "sync_queue"]


def test_show_stats_text(db_path):
    result = run(db_path, "show-stats")
    assert result.exit_code == 0, result.output
    assert "Queued mutations:  2" in result.output


def test_show_queue_lists_items_in_order(db_path):
    result = run(db_path, "show-queue")

    assert result.exit_code == 0, result.output
    lines = result.output.strip().splitlines()
    assert "profiles:p1" in lines[0]
    assert "links:l9" in lines[1]
    assert "last error: connection reset" in lines[1]


def test_show_cache_with_prefix(db_path):
    result = run(db_path, "show-cache", "--prefix", "links:")

    assert result.exit_code == 0, result.output
    assert "links:l1" in result.output
    assert "profiles:p1" not in result.output
    assert result.output.strip().endswith("1 cached entries")


def test_clear_cache_keeps_queue(db_path):
    result = run(db_path, "clear")
    assert result.exit_code == 0, result.output
    assert "Cleared cache snapshot" in result.output

    stats = json.loads(run(db_path, "show-stats", "--json").output)
    assert stats["cache_size"] == 0
    assert stats["queue_size"] == 2


def test_clear_queue_asks_for_confirmation(db_path):
    result = run(db_path, "clear", "--no-cache", "--queue", input="n\n")
    assert result.exit_code == 1
    assert json.loads(run(db_path, "show-stats", "--json").output)["queue_size"] == 2

    result = run(db_path, "clear", "--no-cache", "--queue", "--yes")
    assert result.exit_code == 0, result.output
    assert "Cleared sync queue snapshot" in result.output
    assert run(db_path, "show-queue").output.strip() == "Sync queue is empty"


def test_invalid_env_file_is_reported(db_path, tmp_path, monkeypatch):
    monkeypatch.setenv("BIOLINK_SYNC_MAX_RETRIES", "3")
    env_file = tmp_path / "bad.env"
    env_file.write_text("BIOLINK_SYNC_MAX_RETRIES=-1\n")

    result = run(db_path, "--env-file", str(env_file), "show-stats")

    assert result.exit_code != 0
    assert "Configuration validation failed" in result.output
