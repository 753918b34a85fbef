from __future__ import annotations

import asyncio
import importlib
import json
from pathlib import Path
from typing import Any

import click

from jobqueue.config import ConfigError, get_safe_config_report, get_settings
from jobqueue.dlq.handler import FailedJobHandler
from jobqueue.dlq.store import FileDeadLetterStore
from jobqueue.drivers.factory import DRIVER_TYPES, build_driver_from_settings
from jobqueue.errors import QueueError
from jobqueue.jobs.registry import JobRegistry
from jobqueue.utils.log import logger, set_log_level
from jobqueue.worker import QueueWorker, WorkerConfig


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def _load_jobs(module: str | None) -> JobRegistry:
    """
    Job types come from a user module exposing `register_jobs(registry)`.
    """
    registry = JobRegistry()
    if not module:
        return registry
    try:
        mod = importlib.import_module(module)
    except ImportError as ex:
        raise click.ClickException(f"Cannot import jobs module {module!r}: {ex}") from ex
    hook = getattr(mod, "register_jobs", None)
    if not callable(hook):
        raise click.ClickException(f"Module {module!r} has no register_jobs(registry) function")
    hook(registry)
    logger.info("cli_jobs_loaded", module=module, types=registry.registered_types())
    return registry


def _failed_handler() -> FailedJobHandler:
    s = get_settings()
    return FailedJobHandler(
        FileDeadLetterStore(s.public.resolved_dlq_path(), use_lock=bool(s.queue_file_lock))
    )


@click.group(name="jobqueue", help="Background job queue: workers, stats and dead letters.")
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this run.")
def cli(log_level: str | None) -> None:
    try:
        get_settings()
    except ConfigError as ex:
        raise click.ClickException(str(ex)) from ex
    if log_level:
        set_log_level(log_level)


@cli.command(name="work")
@click.option("--driver", type=click.Choice(sorted(DRIVER_TYPES)), default=None, help="Defaults to QUEUE_DRIVER.")
@click.option("--max-jobs", type=int, default=None, help="Stop after this many polls.")
@click.option("--delay", "delay_s", type=float, default=None, help="Seconds between polls.")
@click.option("--timeout", "timeout_s", type=float, default=None, help="Stop after this many seconds.")
@click.option("--jobs", "jobs_module", default=None, help="Module exposing register_jobs(registry).")
def work(
    driver: str | None,
    max_jobs: int | None,
    delay_s: float | None,
    timeout_s: float | None,
    jobs_module: str | None,
) -> None:
    """
    Run a worker loop in the foreground.
    """
    s = get_settings()
    registry = _load_jobs(jobs_module)
    config = WorkerConfig(
        max_jobs=max_jobs if max_jobs is not None else s.worker_max_jobs,
        delay_s=float(delay_s if delay_s is not None else s.worker_delay_s),
        timeout_s=timeout_s if timeout_s is not None else s.worker_timeout_s,
    )

    async def _run() -> int:
        drv = build_driver_from_settings(registry, driver_type=driver)
        worker = QueueWorker(drv, config)
        try:
            await worker.start()
        finally:
            await drv.close()
        return worker.processed

    try:
        n = asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("Interrupted.")
        return
    except QueueError as ex:
        raise click.ClickException(str(ex)) from ex
    click.echo(f"Worker finished after {n} poll(s).")


@cli.command(name="stats")
@click.option("--driver", type=click.Choice(sorted(DRIVER_TYPES)), default=None)
def stats(driver: str | None) -> None:
    """Print driver stats as JSON."""

    async def _stats() -> dict[str, Any]:
        drv = build_driver_from_settings(JobRegistry(), driver_type=driver)
        try:
            return await drv.get_stats()
        finally:
            await drv.close()

    try:
        _echo_json(asyncio.run(_stats()))
    except QueueError as ex:
        raise click.ClickException(str(ex)) from ex


@cli.command(name="config")
def config_report() -> None:
    """Print the effective (non-secret) configuration."""
    _echo_json(get_safe_config_report())


@cli.group(name="failed")
def failed() -> None:
    """Inspect the file-backed dead-letter store."""


@failed.command(name="list")
@click.option("--limit", type=int, default=20, show_default=True)
def failed_list(limit: int) -> None:
    handler = _failed_handler()

    async def _list() -> dict[str, Any]:
        jobs = await handler.store.get_all(limit=limit)
        return {"stats": await handler.store.get_stats(), "jobs": [j.to_dict() for j in jobs]}

    _echo_json(asyncio.run(_list()))


@failed.command(name="export")
@click.option("--limit", type=int, default=None)
@click.option("--out", "out_path", type=click.Path(dir_okay=False, path_type=Path), default=None)
def failed_export(limit: int | None, out_path: Path | None) -> None:
    data = asyncio.run(_failed_handler().export_to_json(limit=limit))
    if out_path is None:
        click.echo(data)
        return
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(data, encoding="utf-8")
    click.echo(f"Exported to {out_path}")


@failed.command(name="prune")
@click.option("--older-than-days", type=float, default=7.0, show_default=True)
def failed_prune(older_than_days: float) -> None:
    n = asyncio.run(_failed_handler().prune(older_than_s=float(older_than_days) * 86400.0))
    click.echo(f"Pruned {n} failed job(s).")


@failed.command(name="clear")
@click.confirmation_option(prompt="Delete every dead-lettered job?")
def failed_clear() -> None:
    asyncio.run(_failed_handler().store.clear())
    click.echo("Dead-letter store cleared.")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
