"""Typer CLI entrypoint for Place Harvester."""

from __future__ import annotations

import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from .config import ConfigRepository, GlobalConfig
from .engine import PlacePersistence, PlaceRecord, ProgressStore, SearchClient
from .errors import ConfigurationError, HarvesterError
from .infra import DocumentStore, open_document_store
from .logging_conf import (
    available_query_logs,
    configure_logging,
    harvester_log_path,
    query_log_path,
    tail_log,
)
from .orchestrator import BatchOrchestrator, CancellationToken, SearchFn, SearchOutcome, StatusReport
from .ui import ProgressReporter

app = typer.Typer(
    help="Place Harvester command line tool",
    no_args_is_help=True,
    rich_markup_mode=None,
)
log_app = typer.Typer(
    name="log",
    help="Log inspection commands",
    no_args_is_help=True,
    rich_markup_mode=None,
)

console = Console()


@dataclass
class AppState:
    repository: ConfigRepository
    config: GlobalConfig
    store: DocumentStore
    progress_store: ProgressStore
    persistence: PlacePersistence
    search_client_factory: Callable[[], SearchFn]

    def orchestrator(self, search: SearchFn | None = None) -> BatchOrchestrator:
        return BatchOrchestrator(
            progress_store=self.progress_store,
            persistence=self.persistence,
            search=search or _search_unavailable,
            batch_config=self.config.batch,
        )


def _search_unavailable(query: str) -> list[PlaceRecord]:
    raise ConfigurationError("No search client configured for this command")


def build_state(verbose: bool) -> AppState:
    configure_logging(verbose=verbose)
    repository = ConfigRepository()
    global_config = repository.load_global_config()
    store = open_document_store(global_config.storage, repository.locator.project_root)
    return AppState(
        repository=repository,
        config=global_config,
        store=store,
        progress_store=ProgressStore(store),
        persistence=PlacePersistence(store),
        search_client_factory=lambda: SearchClient(global_config.search_api),
    )


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


def _progress_default_enabled() -> bool:
    return bool(getattr(sys.stdout, "isatty", lambda: False)())


def _location(city: str, state: str, country: str) -> str:
    return ", ".join(part for part in (city, state, country) if part)


def _render_outcome(title: str, outcome: SearchOutcome) -> Table:
    table = Table(title=title, box=box.SIMPLE_HEAD)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    if outcome.skipped:
        status = "already completed"
    else:
        status = "completed" if outcome.success else "failed"
    table.add_row("Status", status)
    table.add_row("Fetched this run", str(outcome.found))
    table.add_row("Newly stored", str(outcome.added))
    table.add_row("Total for query", str(outcome.count))
    if outcome.resumed_from_index is not None:
        table.add_row("Resumed from", str(outcome.resumed_from_index))
    if outcome.fingerprint:
        table.add_row("Fingerprint", outcome.fingerprint[:16])
    return table


def _render_status(report: StatusReport) -> Table:
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Status", report.status.value if report.status else "-")
    table.add_row("Progress", f"{report.progress_index}/{report.total_sub_targets}")
    table.add_row("Results", str(report.result_count))
    table.add_row("Resumable", "yes" if report.can_resume else "no")
    if report.error_message:
        table.add_row("Last error", report.error_message)
    if report.fingerprint:
        table.add_row("Fingerprint", report.fingerprint[:16])
    return table


app.add_typer(log_app, name="log", help="View query and application logs")


@app.callback()
def main(
    ctx: typer.Context, verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging", is_flag=True)
) -> None:
    try:
        state = build_state(verbose)
    except ConfigurationError as exc:
        console.print(str(exc), style="red")
        raise typer.Exit(code=1)
    ctx.obj = state
    ctx.call_on_close(state.store.close)


@app.command("search", help="Search places and store them. Use --city ALL to walk every city of the state.")
def search(
    ctx: typer.Context,
    keyword: str = typer.Argument(..., help="Search keyword, e.g. 'Coffee'."),
    country: str = typer.Option(..., "--country", help="Country name."),
    state_name: str = typer.Option(..., "--state", help="State or region name."),
    city: Optional[str] = typer.Option(None, "--city", help="City name, or ALL for every city in the catalog."),
    override: bool = typer.Option(False, "--override", help="Restart even if the query already completed.", is_flag=True),
    cities_file: Optional[Path] = typer.Option(
        None, "--cities-file", help="City list (yaml/json/txt) used instead of the stored catalog."
    ),
    quiet: bool = typer.Option(False, "--quiet", help="Print a one-line summary only.", is_flag=True),
) -> None:
    state = _get_state(ctx)
    city = (city or "").strip()
    sub_targets: list[str] | None = None
    if city == state.config.batch.all_cities_sentinel:
        try:
            if cities_file is not None:
                sub_targets = state.repository.load_cities_file(cities_file)
            else:
                sub_targets = state.repository.load_cities(country, state_name)
        except FileNotFoundError as exc:
            console.print(str(exc), style="red")
            raise typer.Exit(code=1)

    try:
        client = state.search_client_factory()
    except ConfigurationError as exc:
        console.print(str(exc), style="red")
        raise typer.Exit(code=1)

    token = CancellationToken()
    progress = ProgressReporter(
        enabled=state.config.enable_progress_bar and _progress_default_enabled() and not quiet
    )
    previous_handler = signal.signal(signal.SIGINT, lambda *_: token.cancel())
    try:
        outcome = state.orchestrator(client).search_and_save(
            keyword,
            country,
            state_name,
            city,
            override=override,
            sub_targets=sub_targets,
            cancel=token,
            progress=progress,
        )
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        close = getattr(client, "close", None)
        if callable(close):
            close()

    if quiet:
        if outcome.success:
            label = "skipped" if outcome.skipped else "done"
            console.print(f"{label}: total {outcome.count}, added {outcome.added}, fetched {outcome.found}")
        else:
            console.print(f"failed: {outcome.error}")
    else:
        console.print(_render_outcome(f"{keyword} in {_location(city, state_name, country)}", outcome))
        if outcome.error:
            console.print(outcome.error, style="red")
    if not outcome.success:
        raise typer.Exit(code=1)


@app.command("status", help="Show the stored progress of a query.")
def status(
    ctx: typer.Context,
    keyword: str = typer.Argument(..., help="Search keyword."),
    country: str = typer.Option(..., "--country", help="Country name."),
    state_name: str = typer.Option(..., "--state", help="State or region name."),
    city: Optional[str] = typer.Option(None, "--city", help="City name; empty or ALL checks the multi-city run."),
) -> None:
    state = _get_state(ctx)
    try:
        report = state.orchestrator().check_status(keyword, country, state_name, city or "")
    except HarvesterError as exc:
        console.print(str(exc), style="red")
        raise typer.Exit(code=1)
    if not report.exists:
        console.print("No record for this query.", style="dim")
        return
    console.print(_render_status(report))


@app.command("history", help="List the most recent queries.")
def history(
    ctx: typer.Context,
    limit: int = typer.Option(10, "--limit", min=1, help="Number of records to show."),
) -> None:
    state = _get_state(ctx)
    try:
        records = state.orchestrator().recent_queries(limit)
        stored = state.persistence.count_all()
    except HarvesterError as exc:
        console.print(str(exc), style="red")
        raise typer.Exit(code=1)
    if not records:
        console.print("No queries recorded yet.", style="dim")
        return
    table = Table(title=f"Last {len(records)} queries", box=box.SIMPLE_HEAD)
    table.add_column("Created", style="green")
    table.add_column("Keyword")
    table.add_column("Location", overflow="fold")
    table.add_column("Status", style="cyan")
    table.add_column("Progress", justify="right")
    table.add_column("Results", justify="right")
    for record in records:
        table.add_row(
            record.created_at or "-",
            record.keyword,
            _location(record.city, record.state, record.country) or "-",
            record.status.value,
            f"{record.progress_index}/{record.total_sub_targets}",
            str(record.result_count),
        )
    console.print(table)
    console.print(f"Stored places: {stored}", style="cyan")


@app.command("catalogs", help="List the stored city catalogs.")
def catalogs(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    paths = list(state.repository.list_catalogs())
    if not paths:
        console.print("No city catalogs yet.", style="dim")
        return
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("Country", style="green")
    table.add_column("State")
    table.add_column("Cities", justify="right")
    table.add_column("File", overflow="fold")
    for path in paths:
        try:
            cities = str(len(state.repository.load_cities_file(path)))
        except ValueError as exc:
            cities = "invalid"
            console.print(str(exc), style="yellow")
        table.add_row(path.parent.name, path.stem, cities, path.name)
    console.print(table)


@app.command("reset", help="Discard the stored progress of a query so it starts over.")
def reset(
    ctx: typer.Context,
    keyword: str = typer.Argument(..., help="Search keyword."),
    country: str = typer.Option(..., "--country", help="Country name."),
    state_name: str = typer.Option(..., "--state", help="State or region name."),
    city: Optional[str] = typer.Option(None, "--city", help="City name; empty or ALL resets the multi-city run."),
    yes: bool = typer.Option(False, "--yes", help="Skip the confirmation prompt.", is_flag=True),
) -> None:
    state = _get_state(ctx)
    location = _location(city or "", state_name, country)
    if not yes:
        confirm = typer.confirm(f"Reset progress of `{keyword}` in {location}?", default=False)
        if not confirm:
            console.print("Cancelled.", style="yellow")
            raise typer.Exit(code=0)
    try:
        record = state.orchestrator().reset_query(keyword, country, state_name, city or "")
    except HarvesterError as exc:
        console.print(str(exc), style="red")
        raise typer.Exit(code=1)
    console.print(f"Progress of `{keyword}` in {location} was reset ({record.fingerprint[:16]}).", style="green")


@log_app.command("list", help="List per-query log files.")
def log_list() -> None:
    logs = list(available_query_logs())
    if not logs:
        console.print("No query logs yet.", style="dim")
        return
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("File", style="green")
    for path in logs:
        table.add_row(path.name)
    console.print(table)


@log_app.command("show", help="Show the tail of the application log or of one query log.")
def log_show(
    query: Optional[str] = typer.Option(
        None, "--query", help="Query fingerprint (at least its first 16 characters)."
    ),
    tail: int = typer.Option(100, "--tail", min=1, help="Number of lines to show."),
) -> None:
    path = query_log_path(query) if query else harvester_log_path()
    lines = tail_log(path, tail)
    if not lines:
        console.print("No log lines yet.", style="dim")
        return
    console.print(f"{path.name} · last {len(lines)} lines", style="cyan")
    console.print("".join(lines), markup=False, highlight=False)


def cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli()
