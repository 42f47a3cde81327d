"""CLI for batchprompt - run one prompt across many projects and manage saved jobs."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Awaitable, Callable

import click
from pydantic import ValidationError

from batchprompt.config import LOG_FORMAT, Settings
from batchprompt.dispatcher import InvalidSubmissionError, Run, SubmitOptions, TaskDispatcher
from batchprompt.schemas import (
    JobBackend,
    JobDefinition,
    JobTrigger,
    PreCheck,
    ProgressStatus,
    RunSnapshot,
    SkipCondition,
)
from batchprompt.store import PersistenceError, RemoteJobStore, SQLiteJobStore
from batchprompt.transport import HttpTransport

STATUS_LABELS = {
    ProgressStatus.PENDING: "pending",
    ProgressStatus.RUNNING: "running",
    ProgressStatus.SKIPPED: "skipped",
    ProgressStatus.COMPLETE: "done",
    ProgressStatus.ERROR: "error",
}

StartRun = Callable[[TaskDispatcher], Awaitable[Run]]


def _make_store(settings: Settings) -> SQLiteJobStore | RemoteJobStore:
    if settings.jobs_url:
        return RemoteJobStore(settings.jobs_url, timeout=settings.connect_timeout)
    return SQLiteJobStore(settings.jobs_db_path)


def _build_pre_check(command: str | None, skip_if: str, pattern: str | None) -> PreCheck | None:
    if not command:
        if pattern:
            raise click.BadParameter("--pattern needs --pre-check", param_hint="--pattern")
        return None
    try:
        return PreCheck(command=command, skip_if=skip_if, pattern=pattern)
    except ValidationError as e:
        raise click.BadParameter(str(e), param_hint="--pre-check") from e


def run_options(f):
    """Backend options shared by commands that run or define a job."""
    f = click.option(
        "--max-parallel",
        type=click.IntRange(min=1),
        default=None,
        help="Projects the backend runs at once (backend default: 3)",
    )(f)
    f = click.option("--pattern", default=None, help="Regex used with --skip-if matches")(f)
    f = click.option(
        "--skip-if",
        type=click.Choice([c.value for c in SkipCondition]),
        default=SkipCondition.EMPTY.value,
        help="Skip a project when the pre-check output is empty, non-empty or matches --pattern",
    )(f)
    f = click.option(
        "--pre-check",
        "pre_check_command",
        default=None,
        help="Cheap shell command run in each project before the agent",
    )(f)
    f = click.option(
        "--backend",
        type=click.Choice([b.value for b in JobBackend]),
        default=None,
        help="Agent to run the prompt with (backend default: claude)",
    )(f)
    return f


class ProgressPrinter:
    """Echoes each status change of a run as it happens."""

    def __init__(self) -> None:
        self.last: RunSnapshot | None = None

    def __call__(self, snapshot: RunSnapshot) -> None:
        previous = {entry.path: entry.status for entry in self.last} if self.last else {}
        for entry in snapshot:
            if previous.get(entry.path) == entry.status:
                continue
            label = STATUS_LABELS[entry.status]
            if entry.status == ProgressStatus.COMPLETE and entry.needs_human:
                label = "needs review"
            line = f"  [{label:>12}] {entry.name}"
            if entry.error:
                line += f" - {entry.error}"
            click.echo(line)
        self.last = snapshot


def _echo_summary(snapshot: RunSnapshot, show_output: bool) -> None:
    counts = snapshot.counts()
    parts = [f"{STATUS_LABELS[status]}: {count}" for status, count in counts.items() if count]
    click.echo(f"\n{'=' * 60}")
    click.echo(f"Outcome: {snapshot.outcome.value} ({', '.join(parts)})")
    click.echo(f"{'=' * 60}")

    if show_output:
        for entry in snapshot:
            if not entry.output:
                continue
            click.echo(f"\n--- {entry.name} ({entry.path}) ---")
            click.echo(entry.output.rstrip())


async def _dispatch(dispatcher: TaskDispatcher, start: StartRun):
    run = await start(dispatcher)
    snapshot = await run.wait()
    return run, snapshot


def _run_batch(
    settings: Settings,
    start: StartRun,
    project_count: int,
    store: SQLiteJobStore | RemoteJobStore | None,
    show_output: bool,
    raw: bool,
) -> None:
    printer = ProgressPrinter()
    dispatcher = TaskDispatcher(
        HttpTransport(settings.backend_url, connect_timeout=settings.connect_timeout),
        store=store,
        on_update=None if raw else printer,
    )

    if not raw:
        click.echo(f"Running prompt across {project_count} project(s)...\n")

    try:
        run, snapshot = asyncio.run(_dispatch(dispatcher, start))
    except InvalidSubmissionError as e:
        raise click.UsageError(str(e)) from e
    except PersistenceError as e:
        click.echo(f"Error: {e}; nothing was run", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nCancelled.", err=True)
        if printer.last is not None:
            _echo_summary(printer.last, show_output)
        sys.exit(130)

    if raw:
        click.echo(json.dumps(snapshot.to_dict(), indent=2))
    else:
        _echo_summary(snapshot, show_output)

    if run.transport_error is not None:
        click.echo(f"Error: {run.transport_error}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version="0.1.0", prog_name="batchprompt")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """batchprompt - Send one prompt to many local projects at once.

    Streams each project's progress as the backend works through them.
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)
    try:
        ctx.obj = Settings.from_env()
    except ValueError as e:
        raise click.UsageError(str(e)) from e


@main.command()
@click.argument("prompt")
@click.argument(
    "paths",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, file_okay=False, dir_okay=True, resolve_path=True),
)
@click.option("--url", default=None, help="Execution backend base URL")
@click.option("--save-as", "save_as", default=None, help="Also save this prompt as a named job")
@click.option(
    "--trigger",
    type=click.Choice([t.value for t in JobTrigger]),
    default=JobTrigger.MANUAL.value,
    help="Trigger recorded with --save-as",
)
@run_options
@click.option("--show-output", is_flag=True, help="Print each project's output at the end")
@click.option("--raw", is_flag=True, help="Output the final snapshot as JSON")
@click.pass_obj
def run(
    settings: Settings,
    prompt: str,
    paths: tuple[str, ...],
    url: str | None,
    save_as: str | None,
    trigger: str,
    backend: str | None,
    pre_check_command: str | None,
    skip_if: str,
    pattern: str | None,
    max_parallel: int | None,
    show_output: bool,
    raw: bool,
) -> None:
    """Run PROMPT against every project directory in PATHS.

    \b
    Example:
        batchprompt run "update the README" ~/src/app ~/src/lib
        batchprompt run "bump deps" . ../other --save-as weekly-deps
        batchprompt run "fix lint" ~/src/* --pre-check "ruff check -q ." --skip-if empty
    """
    if url:
        settings.backend_url = url

    pre_check = _build_pre_check(pre_check_command, skip_if, pattern)
    options = SubmitOptions(
        backend=JobBackend(backend) if backend else None,
        pre_check=pre_check,
        max_parallel=max_parallel,
    )

    store = None
    if save_as is not None:
        try:
            options.persist = JobDefinition(
                name=save_as,
                prompt=prompt,
                project_paths=list(paths),
                trigger=trigger,
                backend=backend or JobBackend.CLAUDE,
                pre_check=pre_check,
                max_parallel=max_parallel,
            )
        except ValidationError as e:
            raise click.BadParameter(str(e), param_hint="--save-as") from e

        try:
            store = _make_store(settings)
        except PersistenceError as e:
            click.echo(f"Error: job could not be saved, nothing was run: {e}", err=True)
            sys.exit(1)

    _run_batch(
        settings,
        lambda dispatcher: dispatcher.submit(prompt, list(paths), options),
        len(paths),
        store,
        show_output,
        raw,
    )


@main.group()
def jobs() -> None:
    """Manage saved jobs."""
    pass


@jobs.command("list")
@click.option(
    "--trigger",
    type=click.Choice([t.value for t in JobTrigger]),
    default=None,
    help="Only show jobs with this trigger",
)
@click.option("--raw", is_flag=True, help="Output raw JSON instead of formatted text")
@click.pass_obj
def list_jobs(settings: Settings, trigger: str | None, raw: bool) -> None:
    """List saved jobs."""
    try:
        definitions = _make_store(settings).list(trigger=trigger)
    except PersistenceError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if raw:
        payload = [d.model_dump(mode="json", by_alias=True, exclude_none=True) for d in definitions]
        click.echo(json.dumps(payload, indent=2))
        return

    if not definitions:
        click.echo("No jobs found. Run 'batchprompt jobs create' to add one.")
        return

    click.echo("Saved jobs:")
    for definition in definitions:
        line = (
            f"  - {definition.id}  {definition.name} "
            f"[{definition.trigger.value}] ({len(definition.project_paths)} projects, "
            f"{definition.backend.value})"
        )
        if definition.status:
            line += f" {definition.status.value}"
        if definition.last_run:
            line += f", last run {definition.last_run:%Y-%m-%d %H:%M}"
        if definition.last_skipped:
            line += f", last skipped {definition.last_skipped:%Y-%m-%d %H:%M}"
        click.echo(line)


@jobs.command("create")
@click.argument("name")
@click.argument("prompt")
@click.argument(
    "paths",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, file_okay=False, dir_okay=True, resolve_path=True),
)
@click.option(
    "--trigger",
    type=click.Choice([t.value for t in JobTrigger]),
    default=JobTrigger.MANUAL.value,
    help="When the job is meant to run",
)
@run_options
@click.pass_obj
def create_job(
    settings: Settings,
    name: str,
    prompt: str,
    paths: tuple[str, ...],
    trigger: str,
    backend: str | None,
    pre_check_command: str | None,
    skip_if: str,
    pattern: str | None,
    max_parallel: int | None,
) -> None:
    """Save PROMPT against PATHS as a job called NAME.

    \b
    Example:
        batchprompt jobs create weekly-deps "bump dependencies" ~/src/app ~/src/lib
    """
    pre_check = _build_pre_check(pre_check_command, skip_if, pattern)
    try:
        definition = JobDefinition(
            name=name,
            prompt=prompt,
            project_paths=list(paths),
            trigger=trigger,
            backend=backend or JobBackend.CLAUDE,
            pre_check=pre_check,
            max_parallel=max_parallel,
        )
    except ValidationError as e:
        raise click.UsageError(str(e)) from e

    try:
        job_id = _make_store(settings).create(definition)
    except PersistenceError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Saved job '{definition.name}' as {job_id}")


@jobs.command("delete")
@click.argument("job_id")
@click.confirmation_option(prompt="Are you sure you want to delete this job?")
@click.pass_obj
def delete_job(settings: Settings, job_id: str) -> None:
    """Delete a saved job.

    \b
    Example:
        batchprompt jobs delete job_1700000000000_abc1234
    """
    try:
        deleted = _make_store(settings).delete(job_id)
    except PersistenceError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not deleted:
        click.echo(f"Job not found: {job_id}", err=True)
        sys.exit(1)
    click.echo(f"Deleted job: {job_id}")


@jobs.command("run")
@click.argument("job_id")
@click.option("--url", default=None, help="Execution backend base URL")
@click.option("--show-output", is_flag=True, help="Print each project's output at the end")
@click.option("--raw", is_flag=True, help="Output the final snapshot as JSON")
@click.pass_obj
def run_job(settings: Settings, job_id: str, url: str | None, show_output: bool, raw: bool) -> None:
    """Run a saved job by id and record how it ended on the job."""
    if url:
        settings.backend_url = url

    try:
        store = _make_store(settings)
        definition = store.get(job_id)
    except PersistenceError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if definition is None:
        click.echo(f"Job not found: {job_id}", err=True)
        sys.exit(1)

    if not raw:
        click.echo(f"Job: {definition.name}")
    _run_batch(
        settings,
        lambda dispatcher: dispatcher.submit_job(definition),
        len(definition.project_paths),
        store,
        show_output,
        raw,
    )


@main.command()
@click.option("--port", default=8000, help="Port to run the jobs API on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def serve(port: int, host: str, reload: bool) -> None:
    """Start the jobs HTTP API server."""
    import uvicorn

    click.echo(f"Starting batchprompt jobs API on {host}:{port}")
    uvicorn.run(
        "batchprompt.broker:app",
        host=host,
        port=port,
        reload=reload,
    )


if __name__ == "__main__":
    main()
