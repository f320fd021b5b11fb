"""Command-line inspection of persisted sync state."""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import click

from .database import DuckDBLocalStorage
from .sync.cache import LocalCache
from .sync.config import SyncConfig
from .sync.logging_config import setup_sync_logging
from .sync.retry import RetryPolicy
from .sync.sync_queue import SyncQueue

logger = logging.getLogger(__name__)


def _format_time(timestamp: Optional[float]) -> str:
    if not timestamp:
        return "-"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


def _load_config(env_file: Optional[str]) -> SyncConfig:
    try:
        if env_file:
            return SyncConfig.from_file(env_file)
        return SyncConfig.from_env()
    except (ValueError, FileNotFoundError) as e:
        raise click.ClickException(str(e))


@click.group()
@click.option('--db', 'db_path', envvar='BIOLINK_SYNC_DB', type=click.Path(dir_okay=False),
              default='biolink_sync.duckdb', show_default=True, help='DuckDB file holding the snapshots')
@click.option('--env-file', type=click.Path(exists=True, dir_okay=False), help='.env file with BIOLINK_SYNC_* settings')
@click.option('--log-level', envvar='BIOLINK_SYNC_LOG_LEVEL', default='WARNING', show_default=True,
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'], case_sensitive=False), help='Logging level')
@click.pass_context
def main(ctx, db_path, env_file, log_level):
    """
    Inspect and maintain the offline cache and sync queue of a bio-link client.
    """
    setup_sync_logging(log_level, force_level=True)
    ctx.ensure_object(dict)
    ctx.obj['db_path'] = Path(db_path)
    ctx.obj['config'] = _load_config(env_file)


def _open_state(ctx):
    config: SyncConfig = ctx.obj['config']
    storage = DuckDBLocalStorage(ctx.obj['db_path'])
    storage.open()
    cache = LocalCache(
        storage=storage,
        max_entries=config.cache_max_entries,
        default_ttl=config.cache_ttl_seconds,
        eviction_ratio=config.eviction_ratio,
        storage_key=config.cache_storage_key,
    )
    queue = SyncQueue(
        retry_policy=RetryPolicy.from_config(config),
        storage=storage,
        storage_key=config.queue_storage_key,
    )
    cache.restore()
    queue.restore()
    return storage, cache, queue


@main.command('show-stats')
@click.option('--json', 'as_json', is_flag=True, help='Print machine-readable JSON')
@click.pass_context
def show_stats(ctx, as_json):
    """Summarize the persisted cache and queue."""
    storage, cache, queue = _open_state(ctx)
    try:
        items = queue.items()
        stats = {
            'cache_size': len(cache),
            'queue_size': len(items),
            'failed_items': sum(1 for item in items if item.retry_count > 0),
            'oldest_queued_at': min((item.enqueued_at for item in items), default=None),
            'storage_keys': [key for key, _, _ in storage.list_items()],
        }
    finally:
        storage.close()

    if as_json:
        click.echo(json.dumps(stats, indent=2))
        return

    click.echo(f"Cache entries:     {stats['cache_size']}")
    click.echo(f"Queued mutations:  {stats['queue_size']}")
    click.echo(f"  with failures:   {stats['failed_items']}")
    click.echo(f"  oldest queued:   {_format_time(stats['oldest_queued_at'])}")


@main.command('show-queue')
@click.pass_context
def show_queue(ctx):
    """List queued mutations in send order."""
    storage, _, queue = _open_state(ctx)
    try:
        items = queue.items()
    finally:
        storage.close()

    if not items:
        click.echo("Sync queue is empty")
        return

    for position, item in enumerate(items, start=1):
        target = item.key or f"batch of {len(item.keys)} documents"
        line = (f"{position:>3}. {item.operation.value:<9} {target:<40} "
                f"queued {_format_time(item.enqueued_at)} retries {item.retry_count}")
        if item.last_error:
            line += f" last error: {item.last_error}"
        click.echo(line)


@main.command('show-cache')
@click.option('--prefix', default='', help='Only show keys starting with this prefix')
@click.pass_context
def show_cache(ctx, prefix):
    """List cached keys with their age."""
    storage, cache, _ = _open_state(ctx)
    try:
        keys = sorted(k for k in cache.keys() if k.startswith(prefix))
        for key in keys:
            entry = cache.get_entry(key)
            click.echo(f"{key:<50} cached {_format_time(entry.inserted_at)} ttl {entry.ttl:.0f}s")
    finally:
        storage.close()

    click.echo(f"{len(keys)} cached entries")


@main.command('clear')
@click.option('--cache/--no-cache', 'clear_cache', default=True, show_default=True, help='Drop the cache snapshot')
@click.option('--queue/--no-queue', 'clear_queue', default=False, show_default=True, help='Drop queued mutations (unsynced changes are lost)')
@click.option('--yes', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def clear(ctx, clear_cache, clear_queue, yes):
    """Remove persisted snapshots."""
    config: SyncConfig = ctx.obj['config']
    if clear_queue and not yes:
        click.confirm("Discard all queued mutations that have not been synced?", abort=True)

    with DuckDBLocalStorage(ctx.obj['db_path']) as storage:
        if clear_cache:
            storage.remove_item(config.cache_storage_key)
            click.echo("Cleared cache snapshot")
        if clear_queue:
            storage.remove_item(config.queue_storage_key)
            click.echo("Cleared sync queue snapshot")
    logger.info(f"Cleared persisted state in {ctx.obj['db_path']}")


if __name__ == '__main__':
    main()
