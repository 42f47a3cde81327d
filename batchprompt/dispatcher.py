"""Dispatches a prompt to many projects and tracks each one from the event stream."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Iterable

import httpx

from batchprompt.demux import StreamDemultiplexer
from batchprompt.reducer import apply_event, fail_unfinished
from batchprompt.schemas import (
    DoneEvent,
    Event,
    JobBackend,
    JobDefinition,
    JobStatus,
    PreCheck,
    ProgressStatus,
    RunOutcome,
    RunRequest,
    RunSnapshot,
    Target,
)
from batchprompt.store import JobStore, PersistenceError
from batchprompt.transport import Transport, TransportError

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[RunSnapshot], None]

# Status recorded on a saved job once its run has ended
JOB_STATUS_BY_OUTCOME = {
    RunOutcome.COMPLETE: JobStatus.IDLE,
    RunOutcome.NEEDS_HUMAN: JobStatus.NEEDS_HUMAN,
    RunOutcome.ERROR: JobStatus.ERROR,
    RunOutcome.RUNNING: JobStatus.ERROR,
}


class InvalidSubmissionError(ValueError):
    """Raised when a prompt or target list cannot be submitted."""

    pass


class CancellationToken:
    """One-shot cancellation signal shared between a run and its caller."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class SubmitOptions:
    """Optional behaviour for a submission.

    `backend`, `pre_check` and `max_parallel` are forwarded to the execution
    backend; left unset, the backend uses its defaults.
    """

    persist: JobDefinition | None = None
    backend: JobBackend | None = None
    pre_check: PreCheck | None = None
    max_parallel: int | None = None


class Run:
    """A single submission in flight.

    The run owns the only mutable reference to its snapshot. Every change
    replaces the snapshot object, so readers always see a consistent view.
    """

    def __init__(
        self,
        request: RunRequest,
        targets: list[Target],
        transport: Transport,
        on_update: SnapshotCallback | None = None,
        on_finish: Callable[[Run], Awaitable[None]] | None = None,
    ):
        self.request = request
        self.token = CancellationToken()
        self.run_id: str | None = None
        self.result_url: str | None = None
        self.transport_error: Exception | None = None
        self._transport = transport
        self._on_update = on_update
        self._on_finish = on_finish
        self._snapshot = RunSnapshot.initial(targets)
        self._task: asyncio.Task[RunSnapshot] | None = None
        self._publish()

    @property
    def snapshot(self) -> RunSnapshot:
        return self._snapshot

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    @property
    def finished(self) -> bool:
        return self._task is not None and self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._drive())

    def cancel(self) -> None:
        """Stop reading the stream. Entries keep their last observed status."""
        if not self.token.cancelled:
            logger.info("Cancelling run")
        self.token.cancel()

    async def wait(self) -> RunSnapshot:
        """Wait for the run to end and return the final snapshot."""
        self.start()
        assert self._task is not None
        return await self._task

    def _publish(self) -> None:
        if self._on_update is not None:
            self._on_update(self._snapshot)

    def _apply(self, event: Event) -> None:
        if self.run_id is None and event.run_id:
            self.run_id = event.run_id
        if isinstance(event, DoneEvent):
            self.result_url = event.github_issue_url or self.result_url
            logger.info(f"Backend reported run {event.run_id or self.run_id} done")

        updated = apply_event(self._snapshot, event)
        if updated is self._snapshot:
            return
        self._snapshot = updated
        self._publish()

    async def _drive(self) -> RunSnapshot:
        await self._stream()
        if self._on_finish is not None:
            await self._on_finish(self)
        return self._snapshot

    async def _stream(self) -> None:
        demux = StreamDemultiplexer()
        try:
            await self._read_until_cancelled(demux)
        except (TransportError, httpx.HTTPError, OSError) as e:
            if self.token.cancelled:
                logger.warning(f"Error while closing cancelled run: {e}")
                return
            self.transport_error = e
            logger.error(f"Run transport failed: {e}")
            message = f"Transport failed: {e}" if str(e) else "Transport failed"
            self._snapshot = fail_unfinished(self._snapshot, message)
            self._publish()
            return

        demux.finish()
        if demux.dropped_lines:
            logger.warning(f"Dropped {demux.dropped_lines} malformed line(s)")
        if self.token.cancelled:
            logger.info(f"Run cancelled; outcome so far: {self._snapshot.outcome.value}")
        elif not self._snapshot.is_done:
            logger.warning("Stream ended before every project reached a final state")

    async def _read_until_cancelled(self, demux: StreamDemultiplexer) -> None:
        if self.token.cancelled:
            return

        reader = asyncio.ensure_future(self._read(demux))
        cancelled = asyncio.ensure_future(self.token.wait())
        try:
            await asyncio.wait({reader, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not reader.done():
                # Cancelling the reader unwinds the transport context, even mid-open
                reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reader

        if not reader.cancelled():
            reader.result()

    async def _read(self, demux: StreamDemultiplexer) -> None:
        async with self._transport.open(self.request) as chunks:
            async for chunk in chunks:
                for event in demux.feed(chunk):
                    self._apply(event)


class TaskDispatcher:
    """Validates submissions, persists jobs on request and starts runs.

    One run is active at a time: submitting again cancels the previous run
    if it is still streaming.
    """

    def __init__(
        self,
        transport: Transport,
        store: JobStore | None = None,
        on_update: SnapshotCallback | None = None,
    ):
        self.transport = transport
        self.store = store
        self.on_update = on_update
        self.active_run: Run | None = None

    @staticmethod
    def _resolve_targets(targets: Iterable[Target | str]) -> list[Target]:
        resolved = [t if isinstance(t, Target) else Target.from_path(t) for t in targets]
        if not resolved:
            raise InvalidSubmissionError("At least one target is required")

        seen: set[str] = set()
        for target in resolved:
            if target.path in seen:
                raise InvalidSubmissionError(f"Duplicate target path: {target.path}")
            seen.add(target.path)
        return resolved

    async def _store_call(self, action: str, method: Callable, *args):
        if self.store is None:
            raise PersistenceError("No job store configured")
        try:
            return await asyncio.to_thread(method, *args)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to {action}: {e}") from e

    async def _persist(self, definition: JobDefinition) -> str:
        if self.store is None:
            raise PersistenceError("No job store configured")
        job_id = await self._store_call("save job", self.store.create, definition)
        logger.info(f"Saved job '{definition.name}' as {job_id}")
        return job_id

    async def _record_job_run(self, job_id: str, run: Run) -> None:
        """Store how a saved job's run ended; failures are logged, not raised."""
        assert self.store is not None
        snapshot = run.snapshot
        if run.transport_error is not None:
            status = JobStatus.ERROR
        elif run.cancelled:
            status = JobStatus.IDLE
        else:
            status = JOB_STATUS_BY_OUTCOME[snapshot.outcome]

        try:
            if not run.cancelled and all(e.status == ProgressStatus.SKIPPED for e in snapshot):
                await self._store_call("record skip", self.store.mark_skipped, job_id)
            await self._store_call(
                "record run status", self.store.update_run_status, job_id, status, run.result_url
            )
        except PersistenceError as e:
            logger.error(f"Could not record run of job {job_id}: {e}")
            return
        logger.info(f"Recorded run of job {job_id}: {status.value}")

    async def submit(
        self,
        prompt: str,
        targets: Iterable[Target | str],
        options: SubmitOptions | None = None,
    ) -> Run:
        """Start a run of `prompt` against every target.

        Args:
            prompt: Instruction to send; must not be blank
            targets: Targets, or plain project paths, in display order
            options: Optional job definition to save before running, and
                backend run options

        Returns:
            The started Run

        Raises:
            InvalidSubmissionError: if the prompt or targets are unusable
            PersistenceError: if saving the job failed; nothing is dispatched
        """
        return await self._start(prompt, targets, options or SubmitOptions())

    async def submit_job(self, definition: JobDefinition, options: SubmitOptions | None = None) -> Run:
        """Run a saved job against its project paths.

        With a store and a stored id, the job is marked running first and its
        final status is recorded when the run ends.
        """
        options = replace(
            options or SubmitOptions(),
            backend=definition.backend,
            pre_check=definition.pre_check,
            max_parallel=definition.max_parallel,
        )
        job_id = definition.id if self.store is not None else None
        return await self._start(definition.prompt, definition.project_paths, options, job_id=job_id)

    async def _start(
        self,
        prompt: str,
        targets: Iterable[Target | str],
        options: SubmitOptions,
        job_id: str | None = None,
    ) -> Run:
        prompt = prompt.strip()
        if not prompt:
            raise InvalidSubmissionError("Prompt must not be empty")
        resolved = self._resolve_targets(targets)

        if options.persist is not None:
            await self._persist(options.persist)

        on_finish = None
        if job_id is not None:
            assert self.store is not None
            await self._store_call(
                "mark job running", self.store.update_run_status, job_id, JobStatus.RUNNING
            )
            on_finish = functools.partial(self._record_job_run, job_id)

        request = RunRequest(
            prompt=prompt,
            project_paths=[t.path for t in resolved],
            backend=options.backend,
            pre_check=options.pre_check,
            max_parallel=options.max_parallel,
        )

        previous = self.active_run
        if previous is not None and not previous.finished:
            logger.info("Cancelling previous run superseded by a new submission")
            previous.cancel()

        run = Run(request, resolved, self.transport, on_update=self.on_update, on_finish=on_finish)
        self.active_run = run
        run.start()
        logger.info(f"Dispatched prompt to {len(resolved)} project(s)")
        return run

    def cancel(self) -> None:
        """Cancel the active run, if any."""
        if self.active_run is not None:
            self.active_run.cancel()
