from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
import json
import logging
import os
from pathlib import Path
import sys
from typing import Iterator

import duckdb
import typer

from invoker import HttpxTransport
from metrics import duration_summary
from providers import ConfigurationError, KeepaliveConfig, ProviderConfig, ProviderRegistry
from records import HistoryEntry, InvocationOutcome, ProviderStats
from runner import KeepaliveEngine
from storage import KeepaliveStorage


logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure root logger from KEEPALIVE_LOG_LEVEL env var (default: WARNING)."""
    level_name = os.environ.get("KEEPALIVE_LOG_LEVEL", "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


app = typer.Typer(no_args_is_help=True, help="Provider keepalive CLI")
provider_app = typer.Typer(no_args_is_help=True, help="Provider management commands")
history_app = typer.Typer(no_args_is_help=True, help="Call history commands")
app.add_typer(provider_app, name="provider")
app.add_typer(history_app, name="history")


DEFAULT_CONFIG = Path("keepalive.toml")
DEFAULT_DB = Path("keepalive.duckdb")
DEFAULT_HISTORY_ROWS = 10
RECENT_HISTORY_ROWS = 20
QUANTILE_KEYS = ("p50", "p90", "p95", "p99")


def _load_config(config: Path) -> KeepaliveConfig:
    try:
        return ProviderRegistry(config).load()
    except ConfigurationError as exc:
        typer.echo(f"Invalid configuration: {exc}")
        raise typer.Exit(1)


@contextmanager
def _engine_session(config: Path, db: Path) -> Iterator[KeepaliveEngine]:
    keepalive_config = _load_config(config)
    try:
        storage = KeepaliveStorage(db)
    except duckdb.Error as exc:
        logger.debug("Cannot open store %s", db, exc_info=True)
        typer.echo(f"Store error: {exc}")
        raise typer.Exit(1)
    engine = KeepaliveEngine(
        config=keepalive_config,
        storage=storage,
        transport=HttpxTransport(),
    )
    try:
        engine.sync_providers()
        yield engine
    except duckdb.Error as exc:
        logger.debug("Store failure", exc_info=True)
        typer.echo(f"Store error: {exc}")
        raise typer.Exit(1)
    finally:
        counters = engine.counters
        logger.info(
            "Request finished: %d invocation(s), %d HTTP attempt(s), %d store operation(s)",
            counters.invocations,
            counters.http_attempts,
            counters.store_operations,
        )
        engine.close()
        storage.close()


def _format_timestamp(value: object) -> str:
    if not value:
        return "-"
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return str(value)
    return parsed.strftime("%Y-%m-%d %H:%M:%S")


def _render_outcome(outcome: InvocationOutcome) -> str:
    status = "ok" if outcome.success else "fail"
    header = (
        f"[{status}] #{outcome.provider_index} {outcome.provider_name} "
        f"({outcome.duration_ms}ms, attempts={outcome.attempts})"
    )
    if outcome.success:
        return f"{header}\n  Q: {outcome.question}\n  A: {outcome.answer}"
    return f"{header}\n  Q: {outcome.question}\n  error: {outcome.error}"


def _render_history(entries: list[HistoryEntry]) -> str:
    if not entries:
        return "No history."
    lines: list[str] = []
    for entry in entries:
        status = "ok" if entry.success else "fail"
        detail = entry.answer if entry.success else entry.error
        lines.append(
            f"{_format_timestamp(entry.timestamp)}\t{status}\t#{entry.provider_index} "
            f"{entry.provider_name}\t{entry.duration_ms}ms\t{entry.question}\t{detail}"
        )
    return "\n".join(lines)


def _format_quantile(value: object) -> str:
    if value is None:
        return "-"
    return f"{float(value):.0f}ms"


def _render_status(
    stats: tuple[ProviderStats, ...],
    summary: dict[str, object],
    durations: dict[str, float | int | None],
) -> str:
    lines = ["Providers"]
    if not stats:
        lines.append("  No providers configured.")
    for item in stats:
        lines.append(
            f"  #{item.index} {item.provider.name}\t"
            f"last={_format_timestamp(item.last_call)}\t"
            f"next={_format_timestamp(item.next_scheduled_call)}\t"
            f"{item.success_calls}/{item.total_calls}"
        )
    lines.append("")
    lines.append("Totals")
    lines.append(f"  providers:    {summary['provider_count']}")
    lines.append(f"  total calls:  {summary['total_calls']}")
    lines.append(f"  successes:    {summary['total_success']}")
    lines.append(f"  failures:     {summary['total_failed']}")
    lines.append(f"  success rate: {float(summary['success_rate']):.2f}%")
    quantiles = " ".join(
        f"{key}={_format_quantile(durations.get(key))}" for key in QUANTILE_KEYS
    )
    lines.append(f"  duration:     n={durations.get('count', 0)} {quantiles}")
    return "\n".join(lines)


@provider_app.command("add")
def provider_add(
    name: str = typer.Option(..., "--name", help="Provider name"),
    model: str = typer.Option(..., "--model", help="Model identifier"),
    url: str = typer.Option(..., "--url", help="Chat completions endpoint URL"),
    api_key_env: str | None = typer.Option(
        None, "--api-key-env", help="Environment variable storing API key"
    ),
    timeout_s: float | None = typer.Option(
        None, "--timeout-s", help="Request timeout in seconds"
    ),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Keepalive config file"),
) -> None:
    registry = ProviderRegistry(config)
    try:
        saved = registry.save_provider(
            ProviderConfig(
                index=-1,
                name=name,
                model=model,
                url=url,
                api_key_env=api_key_env,
                timeout_s=timeout_s,
            )
        )
    except ConfigurationError as exc:
        typer.echo(f"Invalid configuration: {exc}")
        raise typer.Exit(1)
    logger.debug("Provider %r saved to %s", name, config)
    typer.echo(f"Provider saved: #{saved.index} {saved.name}")


@provider_app.command("list")
def provider_list(
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Keepalive config file"),
) -> None:
    providers = _load_config(config).list_providers()
    if not providers:
        typer.echo("No providers configured.")
        return

    for provider in providers:
        api_key_env = provider.api_key_env or "-"
        typer.echo(f"#{provider.index}\t{provider.name}\t{provider.model}\t{provider.url}\t{api_key_env}")


@provider_app.command("remove")
def provider_remove(
    name: str = typer.Option(..., "--name", help="Provider name"),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Keepalive config file"),
) -> None:
    registry = ProviderRegistry(config)
    try:
        registry.remove_provider(name)
    except KeyError:
        typer.echo(f"Provider not found: {name}")
        raise typer.Exit(1)
    typer.echo(f"Provider removed: {name}")


@provider_app.command("sync")
def provider_sync(
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Keepalive config file"),
    db: Path = typer.Option(DEFAULT_DB, "--db", "-d", help="DuckDB stats file"),
) -> None:
    with _engine_session(config, db) as engine:
        count = engine.provider_count()
    typer.echo(f"Provider configs synced: {count}")


@app.command("invoke")
def invoke(
    index: int = typer.Argument(..., help="Provider index"),
    json_output: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Keepalive config file"),
    db: Path = typer.Option(DEFAULT_DB, "--db", "-d", help="DuckDB stats file"),
) -> None:
    with _engine_session(config, db) as engine:
        if index < 0 or index >= engine.provider_count():
            typer.echo(f"Invalid provider index: {index}")
            raise typer.Exit(1)
        outcome = engine.invoke_one(index)

    if json_output:
        typer.echo(json.dumps(outcome.to_dict(), ensure_ascii=False))
    else:
        typer.echo(_render_outcome(outcome))


@app.command("invoke-all")
def invoke_all(
    json_output: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
    cron_marker: bool = typer.Option(
        False, "--cron-marker", help="Append a history row summarizing this batch"
    ),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Keepalive config file"),
    db: Path = typer.Option(DEFAULT_DB, "--db", "-d", help="DuckDB stats file"),
) -> None:
    with _engine_session(config, db) as engine:
        outcomes = engine.invoke_all()
        if cron_marker:
            engine.record_batch_marker(outcomes)

    if json_output:
        typer.echo(json.dumps([outcome.to_dict() for outcome in outcomes], ensure_ascii=False))
        return
    if not outcomes:
        typer.echo("No providers configured.")
        return
    for outcome in outcomes:
        typer.echo(_render_outcome(outcome))
    success_count = sum(1 for outcome in outcomes if outcome.success)
    typer.echo(f"Succeeded: {success_count}/{len(outcomes)}")


@app.command("status")
def status(
    json_output: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Keepalive config file"),
    db: Path = typer.Option(DEFAULT_DB, "--db", "-d", help="DuckDB stats file"),
) -> None:
    with _engine_session(config, db) as engine:
        stats = engine.current_snapshot()
        summary = engine.summary().to_dict()
        history = engine.history(limit=engine.config.history_limit)

    durations = duration_summary(entry for entry in history if entry.provider_index >= 0)
    if json_output:
        payload = {
            "providers": [item.to_dict() for item in stats],
            "summary": summary,
            "duration_ms": durations,
            "history": [entry.to_dict() for entry in history[:DEFAULT_HISTORY_ROWS]],
        }
        typer.echo(json.dumps(payload, ensure_ascii=False))
        return
    typer.echo(_render_status(stats, summary, durations))


@history_app.command("list")
def history_list(
    limit: int = typer.Option(DEFAULT_HISTORY_ROWS, "--limit", "-n", min=1, help="Rows to show"),
    json_output: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Keepalive config file"),
    db: Path = typer.Option(DEFAULT_DB, "--db", "-d", help="DuckDB stats file"),
) -> None:
    with _engine_session(config, db) as engine:
        entries = engine.history(limit=limit)

    if json_output:
        typer.echo(json.dumps([entry.to_dict() for entry in entries], ensure_ascii=False))
    else:
        typer.echo(_render_history(entries))


@history_app.command("recent")
def history_recent(
    minutes: float = typer.Option(60.0, "--minutes", min=0.0, help="Look-back window"),
    json_output: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Keepalive config file"),
    db: Path = typer.Option(DEFAULT_DB, "--db", "-d", help="DuckDB stats file"),
) -> None:
    with _engine_session(config, db) as engine:
        entries = engine.recent_history(within_s=minutes * 60.0, limit=RECENT_HISTORY_ROWS)

    if json_output:
        typer.echo(json.dumps([entry.to_dict() for entry in entries], ensure_ascii=False))
    else:
        typer.echo(_render_history(entries))


@history_app.command("clear")
def history_clear(
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Keepalive config file"),
    db: Path = typer.Option(DEFAULT_DB, "--db", "-d", help="DuckDB stats file"),
) -> None:
    with _engine_session(config, db) as engine:
        engine.clear_history()
    typer.echo("History cleared.")


def main() -> None:
    _setup_logging()
    app()


if __name__ == "__main__":
    main()
