"""
CLI: ``docspine`` — operator commands against a document database.

The connection URI comes from ``--uri`` or ``DOCSPINE_DATABASE_URL``.
"""

from __future__ import annotations

import json
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from docspine.errors import DocstoreError
from docspine.logging import configure_logging
from docspine.settings import get_settings
from docspine.store import DocumentStore

app = typer.Typer(
    name="docspine",
    help="docspine — JSON document store on PostgreSQL.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()
err_console = Console(stderr=True)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("docspine")
        except PackageNotFoundError:
            v = "unknown"
        typer.echo(f"docspine {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """docspine CLI — ping, query and manage document tables."""
    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_format == "json", service="docspine-cli")


# ── Helpers ──────────────────────────────────────────────────────────────


def _open_store(uri: str | None) -> DocumentStore:
    uri = uri or get_settings().database_url
    if not uri:
        err_console.print("[bold red]Error[/bold red]: no database URI (use --uri or DOCSPINE_DATABASE_URL)")
        raise typer.Exit(code=2)
    try:
        return DocumentStore.open(uri)
    except DocstoreError as e:
        _fail(e)


def _fail(error: DocstoreError) -> None:
    err_console.print(f"[bold red]Error[/bold red] ({type(error).__name__}): {error.message}")
    raise typer.Exit(code=1)


def _print_rows(rows: list[dict[str, Any]], *, as_json: bool) -> None:
    if as_json:
        console.print_json(json.dumps(rows, default=str))
        return
    if not rows:
        console.print("[dim]No rows.[/dim]")
        return
    table = Table(show_lines=False, pad_edge=False)
    for col in rows[0]:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*(str(v) for v in row.values()))
    console.print(table)


UriOption = typer.Option(None, "--uri", "-u", help="Connection URI")


# ── Commands ─────────────────────────────────────────────────────────────


@app.command()
def ping(
    uri: str | None = UriOption,
    retries: int = typer.Option(3, "--retries", help="Attempts (max 10)"),
    interval: int = typer.Option(1, "--interval", help="Seconds between attempts (max 60)"),
) -> None:
    """Check database connectivity."""
    store = _open_store(uri)
    with store:
        try:
            store.ping(retries, interval)
        except DocstoreError as e:
            _fail(e)
    console.print("[green]OK[/green]")


@app.command()
def query(
    statement: str = typer.Argument(..., help="SQL query"),
    args: list[str] = typer.Argument(None, help="Positional parameters"),
    uri: str | None = UriOption,
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Run a query and print its rows."""
    store = _open_store(uri)
    with store:
        try:
            rows = store.execute_query(statement, *(args or []))
        except DocstoreError as e:
            _fail(e)
    _print_rows(rows, as_json=json_out)


@app.command("exec")
def exec_(
    statement: str = typer.Argument(..., help="SQL statement"),
    args: list[str] = typer.Argument(None, help="Positional parameters"),
    uri: str | None = UriOption,
) -> None:
    """Run a statement and print the affected row count."""
    store = _open_store(uri)
    with store:
        try:
            affected = store.execute_sql(statement, *(args or []))
        except DocstoreError as e:
            _fail(e)
    console.print(f"{affected} row(s) affected")


@app.command()
def ddl(
    table: str = typer.Option(..., "--table", "-t", help="Table to create"),
    index: list[str] = typer.Option([], "--index", "-i", help="Document field to index (repeatable)"),
    uri: str | None = UriOption,
) -> None:
    """Create a document table and its field indexes."""
    store = _open_store(uri)
    with store:
        try:
            store.execute_ddl({table: index})
        except DocstoreError as e:
            _fail(e)
    console.print(f"[green]Table {table} ready[/green] ({len(index)} index(es))")


@app.command()
def drop(
    table: str = typer.Argument(..., help="Table to drop"),
    uri: str | None = UriOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Drop a table."""
    if not yes:
        typer.confirm(f"Drop table {table}?", abort=True)
    store = _open_store(uri)
    with store:
        try:
            store.drop_table(table)
        except DocstoreError as e:
            _fail(e)
    console.print(f"[green]Dropped {table}[/green]")


@app.command()
def purge(
    table: str = typer.Argument(..., help="Table to empty"),
    uri: str | None = UriOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete every row of a table."""
    if not yes:
        typer.confirm(f"Purge all rows from {table}?", abort=True)
    store = _open_store(uri)
    with store:
        try:
            store.purge_table(table)
        except DocstoreError as e:
            _fail(e)
    console.print(f"[green]Purged {table}[/green]")


if __name__ == "__main__":
    app()
