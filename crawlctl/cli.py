import json
import re
import threading
import click

from .db import DB_FILE, init_db, connect_db
from .command_queue import CommandQueue
from .commands import GenreListCommand
from .errors import StorageUnavailable
from .fetchers import http_fetcher
from .models import STATUS_BY_NAME
from .repository import get_config, set_config, kinds
from .worker import start_workers


def build_fetcher(timeout: float):
    return http_fetcher(timeout=timeout)


class RecordAge(click.ParamType):
    """An age such as `90m`, `12h` or `7d 12h`, converted to seconds."""

    name = "age"
    units = {"d": 86400, "h": 3600, "m": 60, "s": 1}
    token_re = re.compile(r"(\d+)\s*([dhms])", re.I)

    def convert(self, value, param, ctx):
        if isinstance(value, int):
            return value
        text = str(value).strip()
        tokens = self.token_re.findall(text)
        if not tokens or self.token_re.sub("", text).strip():
            self.fail(f"{value!r} is not an age like 30m, 12h or 7d", param, ctx)
        seconds = sum(int(n) * self.units[u.lower()] for n, u in tokens)
        if seconds <= 0:
            self.fail("age must be longer than zero", param, ctx)
        return seconds


def _open_queue(ctx) -> CommandQueue:
    try:
        return CommandQueue(connect_db(ctx.obj["db"]))
    except StorageUnavailable as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)


def seed_if_empty(queue: CommandQueue, root_url: str):
    """Enqueue the root command when nothing is pending; return its id or None."""
    if not queue.is_empty():
        return None
    return queue.enqueue(GenreListCommand(root_url))


def _record_sink(results_path):
    lock = threading.Lock()

    def on_record(command, record):
        line = json.dumps(record, ensure_ascii=False)
        with lock:
            click.echo(line)
            if results_path:
                with open(results_path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")

    return on_record


@click.group(help="crawlctl — durable, resumable crawl command queue")
@click.option("--db", "db_path", envvar="CRAWLCTL_DB", default=DB_FILE, show_default=True,
              help="SQLite file holding the command queue")
@click.pass_context
def cli(ctx, db_path):
    ctx.ensure_object(dict)
    ctx.obj["db"] = db_path
    # Ensure DB/schema exist before any command runs
    try:
        init_db(db_path)
    except StorageUnavailable as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)


# ---------- Run ----------
@cli.command("run", help="Seed the root command if the queue is empty, then work until done")
@click.option("--workers", "count", type=int, default=1, show_default=True, help="Number of worker threads")
@click.option("--root-url", default=None, help="Override the configured root URL for seeding")
@click.option("--results", "results_path", default=None, help="Append extracted records to this JSON Lines file")
@click.pass_context
def run_cmd(ctx, count, root_url, results_path):
    if count < 1:
        raise click.BadParameter("must be >= 1", param_hint="--workers")
    queue = _open_queue(ctx)
    try:
        cfg = get_config(queue.conn)
        try:
            fetch_retries = int(cfg.get("fetch_retries", "0"))
            backoff_base = float(cfg.get("backoff_base", "2"))
            timeout = float(cfg.get("timeout_seconds", "20"))
        except ValueError as e:
            click.secho(f"Error: invalid config value ({e})", fg="red")
            raise SystemExit(1)

        released = queue.release_stale_claims()
        if released:
            click.secho(f"Released {released} claim(s) left by a previous run.", fg="yellow")
        seeded = seed_if_empty(queue, root_url or cfg["root_url"])
        if seeded is not None:
            click.secho(f"Seeded root command #{seeded}.", fg="green")
        else:
            click.secho(f"Resuming: {queue.pending_count()} pending command(s).", fg="cyan")
    finally:
        queue.close()

    summary = start_workers(
        count,
        ctx.obj["db"],
        build_fetcher(timeout),
        fetch_retries=fetch_retries,
        backoff_base=backoff_base,
        on_record=_record_sink(results_path),
    )
    click.secho(
        f"Done: executed={summary.executed} enqueued={summary.enqueued} "
        f"failed={summary.fetch_failures} corrupt={summary.corrupt}",
        fg="yellow" if summary.fetch_failures else "green",
    )
    if summary.corrupt:
        click.secho(f"{summary.corrupt} record(s) could not be decoded; see `crawlctl list`.", fg="red")
        raise SystemExit(1)


@cli.command("seed", help="Enqueue the root command if nothing is pending")
@click.option("--root-url", default=None, help="Override the configured root URL")
@click.pass_context
def seed_cmd(ctx, root_url):
    queue = _open_queue(ctx)
    try:
        cfg = get_config(queue.conn)
        seeded = seed_if_empty(queue, root_url or cfg["root_url"])
    finally:
        queue.close()
    if seeded is None:
        click.echo("Queue not empty; nothing seeded.")
    else:
        click.secho(f"Seeded root command #{seeded}.", fg="green")


# ---------- Records ----------
@cli.command("list")
@click.option("--status", type=click.Choice(sorted(STATUS_BY_NAME)), default=None)
@click.option("--limit", type=click.IntRange(min=0), default=None)
@click.pass_context
def list_cmd(ctx, status, limit):
    queue = _open_queue(ctx)
    try:
        rows = queue.list_records(
            status=STATUS_BY_NAME[status] if status else None,
            limit=limit,
        )
    finally:
        queue.close()

    if not rows:
        click.echo("No commands.")
        return

    for r in rows:
        click.echo(
            f"{r.id:>8} | {r.status_name:<9} | {r.kind:<10} | attempts={r.attempts} "
            f"| payload={r.payload.decode('utf-8', 'replace')} | last_error={r.last_error}"
        )


@cli.command("status")
@click.pass_context
def status_cmd(ctx):
    queue = _open_queue(ctx)
    try:
        out = queue.counts()
        out["pending_by_kind"] = kinds(queue.list_records(status=STATUS_BY_NAME["pending"]))
    finally:
        queue.close()
    click.echo(json.dumps(out, indent=2))


@cli.command("prune", help="Delete completed records older than a duration (e.g. 7d, 12h)")
@click.option("--older-than", "older_than", type=RecordAge(), required=True)
@click.pass_context
def prune_cmd(ctx, older_than):
    queue = _open_queue(ctx)
    try:
        deleted = queue.prune_completed(older_than)
        click.secho(f"Pruned {deleted} completed record(s).", fg="green")
    except (ValueError, RuntimeError) as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    finally:
        queue.close()


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    queue = _open_queue(ctx)
    try:
        click.echo(json.dumps(get_config(queue.conn), indent=2))
    finally:
        queue.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_cmd(ctx, key, value):
    queue = _open_queue(ctx)
    try:
        set_config(queue.conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    finally:
        queue.close()


def main():
    cli()
