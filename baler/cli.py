"""Command line interface for baler chains and workers."""

from __future__ import annotations

import asyncio
import importlib
import logging
from datetime import timedelta
from typing import List, Optional

import typer

from baler import ChainEngine, StepWorker, get_repository
from baler.config import load_config
from baler.errors import ChainNotFoundError
from baler.transports import TransportPool

app = typer.Typer(help="CLI for baler chains")

# Command groups
chain_app = typer.Typer(help="Commands for inspecting and maintaining chains")
worker_app = typer.Typer(help="Commands for running workers")

app.add_typer(chain_app, name="chain")
app.add_typer(worker_app, name="worker")

ImportOption = typer.Option(
    None,
    "--import",
    "-i",
    help="Module to import first, e.g. the one registering callbacks and jobs",
)


def _import_modules(modules: Optional[List[str]]) -> None:
    for module in modules or []:
        importlib.import_module(module)


def _engine() -> ChainEngine:
    config = load_config()
    return ChainEngine(
        repository=get_repository(),
        transports=TransportPool.from_config(config),
        config=config,
    )


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v")) -> None:
    """baler CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@chain_app.command("list")
def chain_list() -> None:
    """
    List all chains with their current status.

    Example:
        baler chain list
        # Output: 0c4f...    running    nightly-import
    """
    repo = get_repository()
    chains = asyncio.run(repo.list_chains())
    if not chains:
        typer.echo("No chains found")
        return
    for chain in chains:
        typer.echo(f"{chain.id}\t{chain.status.value}\t{chain.name or ''}")


@chain_app.command("show")
def chain_show(chain_id: str) -> None:
    """
    Show a chain and the steps it has left.

    Args:
        chain_id: Chain to inspect (get from 'chain list')
    """
    repo = get_repository()
    chain = asyncio.run(repo.get_chain(chain_id))
    if chain is None:
        typer.echo("Chain not found")
        raise typer.Exit(code=1)
    steps = asyncio.run(repo.get_steps(chain_id))
    typer.echo(f"Chain {chain.id}: {chain.status.value}")
    if chain.name:
        typer.echo(f"Name: {chain.name}")
    if chain.resume_at:
        typer.echo(f"Resumes at: {chain.resume_at.isoformat()}")
    if chain.failure:
        typer.echo(f"Failure: {chain.failure}")
    if chain.last_processed_at:
        typer.echo(f"Last processed: {chain.last_processed_at.isoformat()}")
    for step in steps:
        typer.echo(
            f"- [{step.order}] {step.job.type} (attempts: {step.attempts})"
        )


@chain_app.command("resume")
def chain_resume(modules: Optional[List[str]] = ImportOption) -> None:
    """
    Resume paused chains that are due. Meant to run on a schedule.

    Example:
        * * * * * baler chain resume --import myapp.chains
    """
    _import_modules(modules)
    resumed = asyncio.run(_engine().sweep())
    typer.echo(f"Resumed {len(resumed)} chains")


@chain_app.command("prune")
def chain_prune(
    older_than: Optional[int] = typer.Option(
        None, help="Retention window in seconds (default: from configuration)"
    ),
) -> None:
    """
    Delete finished and failed chains past the retention window.

    Example:
        baler chain prune --older-than 86400
    """
    window = timedelta(seconds=older_than) if older_than is not None else None
    pruned = asyncio.run(_engine().prune(window))
    typer.echo(f"Pruned {pruned} chains")


@chain_app.command("cancel")
def chain_cancel(chain_id: str) -> None:
    """Cancel a chain; its remaining steps are dropped without callbacks."""
    try:
        chain = asyncio.run(_engine().cancel(chain_id))
    except ChainNotFoundError:
        typer.echo("Chain not found")
        raise typer.Exit(code=1)
    typer.echo(f"Chain {chain.id}: {chain.status.value}")


@worker_app.command("run")
def worker_run(
    queue: str = typer.Argument("default"),
    connection: Optional[str] = typer.Option(None, help="Named connection to consume"),
    lifespan: Optional[float] = typer.Option(None, help="Seconds to run before exiting"),
    modules: Optional[List[str]] = ImportOption,
) -> None:
    """
    Run a worker that executes chain steps from a queue.

    Example:
        baler worker run imports --import myapp.jobs --lifespan 300
    """
    _import_modules(modules)
    worker = StepWorker(_engine(), queue=queue, connection=connection)
    typer.echo(f"Starting worker on queue: {queue}")
    asyncio.run(worker.start(lifespan=lifespan))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
