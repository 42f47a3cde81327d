"""Per-target state machine applied to run snapshots.

Every function here is pure: it takes a snapshot and returns either the same
snapshot object (nothing changed) or a new one.
"""

from __future__ import annotations

from batchprompt.schemas import (
    CompleteEvent,
    ContentEvent,
    ErrorEvent,
    Event,
    PreCheckEvent,
    ProgressEntry,
    ProgressStatus,
    RunSnapshot,
    StartEvent,
)

UNKNOWN_ERROR = "Unknown error"


def _transition(entry: ProgressEntry, event: Event) -> ProgressEntry:
    """Return the entry after `event`, or the same entry if it does not apply."""
    status = entry.status

    if isinstance(event, PreCheckEvent):
        if status == ProgressStatus.PENDING and event.skipped:
            return entry.model_copy(update={"status": ProgressStatus.SKIPPED})
        return entry

    if isinstance(event, StartEvent):
        if status == ProgressStatus.PENDING:
            return entry.model_copy(update={"status": ProgressStatus.RUNNING})
        return entry

    if isinstance(event, ContentEvent):
        if status in (ProgressStatus.PENDING, ProgressStatus.RUNNING) and event.text:
            return entry.model_copy(update={"output": entry.output + event.text})
        return entry

    if isinstance(event, CompleteEvent):
        if status != ProgressStatus.RUNNING:
            return entry
        if event.error:
            return entry.model_copy(update={"status": ProgressStatus.ERROR, "error": event.error})
        return entry.model_copy(
            update={"status": ProgressStatus.COMPLETE, "needs_human": event.needs_human}
        )

    if isinstance(event, ErrorEvent):
        return entry.model_copy(
            update={"status": ProgressStatus.ERROR, "error": event.error or UNKNOWN_ERROR}
        )

    # done and unknown event types carry nothing for a single target
    return entry


def apply_event(snapshot: RunSnapshot, event: Event) -> RunSnapshot:
    """Apply one event to the snapshot.

    Events naming a project outside the run, events for targets already in a
    terminal state, and events whose precondition does not hold leave the
    snapshot untouched and return it as is.
    """
    index = snapshot.index_of(event.project)
    if index is None:
        return snapshot

    entry = snapshot.entries[index]
    if entry.status.is_terminal:
        return snapshot

    updated = _transition(entry, event)
    if updated is entry:
        return snapshot

    entries = list(snapshot.entries)
    entries[index] = updated
    return RunSnapshot(tuple(entries))


def fail_unfinished(snapshot: RunSnapshot, message: str) -> RunSnapshot:
    """Move every pending or running entry to Error with a shared message."""
    if snapshot.is_done:
        return snapshot

    return RunSnapshot(
        tuple(
            entry
            if entry.status.is_terminal
            else entry.model_copy(update={"status": ProgressStatus.ERROR, "error": message})
            for entry in snapshot.entries
        )
    )
