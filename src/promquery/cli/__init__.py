"""promquery-poll: block until Prometheus queries return to their baseline.

Exit codes:
  0  every watched query converged
  1  configuration error (bad query, matcher, address or option value)
  2  polling failed (baseline or watcher error)
  3  the deadline elapsed first
"""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from promquery.errors import ConfigurationError
from promquery.models import OutcomeStatus, PollerSettings
from promquery.poller import Poller

app = typer.Typer(
    name="promquery-poll",
    help="Wait for Prometheus queries to return within tolerance of their baseline",
    no_args_is_help=True,
)
console = Console()

EXIT_CONVERGED = 0
EXIT_CONFIGURATION = 1
EXIT_FAILED = 2
EXIT_TIMED_OUT = 3

_EXIT_CODES = {
    OutcomeStatus.CONVERGED: EXIT_CONVERGED,
    OutcomeStatus.FAILED: EXIT_FAILED,
    OutcomeStatus.TIMED_OUT: EXIT_TIMED_OUT,
}


def _build_poller(settings: PollerSettings) -> Poller:
    return Poller.from_settings(settings)


def _load_settings(overrides: dict[str, object]) -> PollerSettings:
    """Merge explicit options over the PROMQUERY_ environment."""
    try:
        settings = PollerSettings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        console.print("[red]Invalid configuration:[/red]")
        for err in e.errors():
            field = ".".join(str(part) for part in err["loc"])
            console.print(f"  [red]✗[/red] {field}: {err['msg']}")
        raise typer.Exit(EXIT_CONFIGURATION) from None

    if not settings.addresses:
        console.print("[red]At least one --addr (or PROMQUERY_ADDRESSES) is required[/red]")
        raise typer.Exit(EXIT_CONFIGURATION)
    return settings


@app.command()
def poll(
    addr: Annotated[
        list[str] | None,
        typer.Option("--addr", "-a", help="Prometheus address, e.g. http://localhost:9090"),
    ] = None,
    query: Annotated[
        list[str] | None, typer.Option("--query", "-q", help="PromQL query to watch")
    ] = None,
    interval: Annotated[
        float | None, typer.Option("--interval", help="Seconds between polls [default: 30]")
    ] = None,
    timeout: Annotated[
        float | None, typer.Option("--timeout", help="Overall deadline in seconds [default: 120]")
    ] = None,
    success_count: Annotated[
        int | None,
        typer.Option(
            "--success-count",
            help="In-tolerance samples required before the converging one [default: 0]",
        ),
    ] = None,
    label: Annotated[
        list[str] | None,
        typer.Option(
            "--label", "-l", help="Matcher added to every query (name=value, name=~re, ...)"
        ),
    ] = None,
    baseline_error_policy: Annotated[
        str | None,
        typer.Option(
            "--baseline-error-policy",
            help="exclude: skip queries whose baseline failed; abort: fail the run",
        ),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Capture a baseline for each query, then poll until all are back within tolerance."""
    if verbose:
        logging.getLogger("promquery").setLevel(logging.DEBUG)

    settings = _load_settings(
        {
            "addresses": addr,
            "queries": query,
            "labels": label,
            "interval_sec": interval,
            "timeout_sec": timeout,
            "success_count": success_count,
            "baseline_error_policy": baseline_error_policy,
        }
    )

    try:
        poller = _build_poller(settings)
    except ConfigurationError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(EXIT_CONFIGURATION) from None

    console.print(
        f"[bold]Watching {len(poller.queries)} queries[/bold] "
        f"(interval {settings.interval_sec:g}s, timeout {settings.timeout_sec:g}s)"
    )
    for q in poller.queries:
        console.print(f"  [cyan]{escape(str(q))}[/cyan]")

    async def _run():
        async with poller:
            return await poller.run(
                settings.interval,
                settings.timeout,
                on_sample=lambda line: console.print(f"[dim]{escape(line)}[/dim]"),
            )

    outcome = asyncio.run(_run())

    for skipped in outcome.skipped:
        console.print(f"[yellow]skipped (no baseline):[/yellow] {escape(skipped)}")
    if outcome.ok:
        console.print(f"[green]All queries converged in {outcome.elapsed_sec:.1f}s[/green]")
    elif outcome.status == OutcomeStatus.TIMED_OUT:
        console.print(f"[red]Timed out: {escape(outcome.error or '')}[/red]")
    else:
        console.print(f"[red]Polling failed: {escape(outcome.error or '')}[/red]")

    raise typer.Exit(_EXIT_CODES[outcome.status])


def main() -> None:
    """Entry point for promquery-poll."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app()


if __name__ == "__main__":
    main()
