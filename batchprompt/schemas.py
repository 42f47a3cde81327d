"""Pydantic schemas for batchprompt wire events, run progress and job records."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import PurePath
from typing import Any, Iterator, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ProgressStatus(str, Enum):
    """Per-target run status."""

    PENDING = "pending"
    RUNNING = "running"
    SKIPPED = "skipped"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ProgressStatus.SKIPPED, ProgressStatus.COMPLETE, ProgressStatus.ERROR)


class JobTrigger(str, Enum):
    """When a saved job is meant to run."""

    MANUAL = "manual"
    ON_LOGIN = "on-login"
    ON_DEVICE_CHANGE = "on-device-change"
    BEFORE_FIRST_PROMPT = "before-first-prompt"


class JobBackend(str, Enum):
    """Agent the backend runs the prompt with."""

    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"


class JobStatus(str, Enum):
    """Run state recorded on a saved job."""

    IDLE = "idle"
    RUNNING = "running"
    NEEDS_HUMAN = "needs-human"
    ERROR = "error"


class SkipCondition(str, Enum):
    """When a pre-check's output means the project is skipped."""

    EMPTY = "empty"
    NON_EMPTY = "non-empty"
    MATCHES = "matches"


class RunOutcome(str, Enum):
    """Run-level status derived from the entries of a snapshot."""

    RUNNING = "running"
    COMPLETE = "complete"
    NEEDS_HUMAN = "needs-human"
    ERROR = "error"


# --- Targets ---


class Target(BaseModel):
    """One dispatch destination: a local project directory."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., min_length=1)
    name: str

    @classmethod
    def from_path(cls, path: str) -> Target:
        """Build a target whose name is the last segment of its path."""
        name = PurePath(path.rstrip("/\\") or path).name or path
        return cls(path=path, name=name)


# --- Wire events ---


class _Envelope(BaseModel):
    """Fields shared by every event on the wire."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    project: str | None = None
    project_name: str | None = Field(default=None, alias="projectName")
    run_id: str | None = Field(default=None, alias="runId")


class PreCheckEvent(_Envelope):
    """Pre-check finished for a project; `skipped` means it will not run."""

    type: Literal["pre-check"] = "pre-check"
    skipped: bool = False
    pre_check_output: str | None = Field(default=None, alias="preCheckOutput")


class StartEvent(_Envelope):
    type: Literal["start"] = "start"


class ContentEvent(_Envelope):
    """A chunk of output text for one project."""

    type: Literal["content"] = "content"
    text: str = ""


class CompleteEvent(_Envelope):
    """A project finished; an `error` here means it finished unsuccessfully."""

    type: Literal["complete"] = "complete"
    needs_human: bool | None = Field(default=None, alias="needsHuman")
    error: str | None = None
    output: str | None = None


class ErrorEvent(_Envelope):
    type: Literal["error"] = "error"
    error: str | None = None


class DoneEvent(_Envelope):
    """Emitted once by the producer after every project has finished."""

    type: Literal["done"] = "done"
    github_issue_url: str | None = Field(default=None, alias="githubIssueUrl")


class UnknownEvent(_Envelope):
    """Envelope with a `type` this client does not know about."""

    type: str


Event = Union[
    PreCheckEvent,
    StartEvent,
    ContentEvent,
    CompleteEvent,
    ErrorEvent,
    DoneEvent,
    UnknownEvent,
]

EVENT_TYPES: dict[str, type[_Envelope]] = {
    "pre-check": PreCheckEvent,
    "start": StartEvent,
    "content": ContentEvent,
    "complete": CompleteEvent,
    "error": ErrorEvent,
    "done": DoneEvent,
}


def parse_event(payload: dict[str, Any]) -> Event:
    """Validate a decoded envelope into its event model.

    Raises:
        pydantic.ValidationError: if the payload does not fit its model
    """
    kind = payload.get("type")
    model = EVENT_TYPES.get(kind, UnknownEvent) if isinstance(kind, str) else UnknownEvent
    return model.model_validate(payload)  # type: ignore[return-value]


# --- Run progress ---


class ProgressEntry(BaseModel):
    """Progress of one target within a run."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    path: str
    name: str
    status: ProgressStatus = ProgressStatus.PENDING
    output: str = ""
    error: str | None = None
    needs_human: bool | None = Field(default=None, alias="needsHuman")


@dataclass(frozen=True)
class RunSnapshot:
    """Immutable view of every target's progress, in submission order."""

    entries: tuple[ProgressEntry, ...]

    @classmethod
    def initial(cls, targets: list[Target]) -> RunSnapshot:
        return cls(tuple(ProgressEntry(path=t.path, name=t.name) for t in targets))

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[ProgressEntry]:
        return iter(self.entries)

    def __getitem__(self, index: int) -> ProgressEntry:
        return self.entries[index]

    @property
    def paths(self) -> list[str]:
        return [entry.path for entry in self.entries]

    def index_of(self, path: str | None) -> int | None:
        """Position of the entry for `path`, or None if it is not part of the run."""
        for i, entry in enumerate(self.entries):
            if entry.path == path:
                return i
        return None

    def get(self, path: str) -> ProgressEntry | None:
        index = self.index_of(path)
        return None if index is None else self.entries[index]

    @property
    def is_done(self) -> bool:
        return all(entry.status.is_terminal for entry in self.entries)

    @property
    def has_errors(self) -> bool:
        return any(entry.status == ProgressStatus.ERROR for entry in self.entries)

    @property
    def needs_human(self) -> bool:
        return any(entry.needs_human for entry in self.entries)

    @property
    def outcome(self) -> RunOutcome:
        if not self.is_done:
            return RunOutcome.RUNNING
        if self.has_errors:
            return RunOutcome.ERROR
        if self.needs_human:
            return RunOutcome.NEEDS_HUMAN
        return RunOutcome.COMPLETE

    def counts(self) -> dict[ProgressStatus, int]:
        """Number of entries in each status."""
        counts = {status: 0 for status in ProgressStatus}
        for entry in self.entries:
            counts[entry.status] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "projects": [entry.model_dump(mode="json", by_alias=True) for entry in self.entries],
        }


# --- Requests and persisted records ---


class PreCheck(BaseModel):
    """Shell command the backend runs per project before invoking the agent."""

    model_config = ConfigDict(populate_by_name=True)

    command: str = Field(..., min_length=1)
    skip_if: SkipCondition = Field(..., alias="skipIf")
    pattern: str | None = None

    @model_validator(mode="after")
    def _check_pattern(self) -> PreCheck:
        if self.skip_if == SkipCondition.MATCHES and not self.pattern:
            raise ValueError("skipIf 'matches' requires a pattern")
        if self.pattern is not None:
            try:
                re.compile(self.pattern)
            except re.error as e:
                raise ValueError(f"invalid pattern: {e}") from e
        return self


class RunRequest(BaseModel):
    """Body sent to the execution backend to start a run.

    Unset options are left out of the body so the backend applies its own
    defaults (claude, no pre-check, 3 in parallel).
    """

    model_config = ConfigDict(populate_by_name=True)

    prompt: str
    project_paths: list[str] = Field(..., alias="projectPaths")
    backend: JobBackend | None = None
    pre_check: PreCheck | None = Field(default=None, alias="preCheck")
    max_parallel: int | None = Field(default=None, ge=1, alias="maxParallel")


class JobDefinition(BaseModel):
    """A named, reusable prompt and project list.

    `status`, `last_run`, `last_skipped` and `last_result_url` describe the
    job's most recent run. Stores only change them through their run-state
    operations; saving a definition leaves them alone.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    name: str
    prompt: str
    project_paths: list[str] = Field(..., min_length=1, alias="projectPaths")
    trigger: JobTrigger = JobTrigger.MANUAL
    backend: JobBackend = JobBackend.CLAUDE
    pre_check: PreCheck | None = Field(default=None, alias="preCheck")
    max_parallel: int | None = Field(default=None, ge=1, alias="maxParallel")

    status: JobStatus | None = None
    last_run: datetime | None = Field(default=None, alias="lastRun")
    last_skipped: datetime | None = Field(default=None, alias="lastSkipped")
    last_result_url: str | None = Field(default=None, alias="lastResultUrl")

    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    @field_validator("name", "prompt")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("project_paths")
    @classmethod
    def _no_blank_paths(cls, value: list[str]) -> list[str]:
        if any(not path.strip() for path in value):
            raise ValueError("project paths must not be blank")
        return value


class JobListResponse(BaseModel):
    jobs: list[JobDefinition]


class JobStatusUpdate(BaseModel):
    """Outcome of a job run, recorded on the job."""

    model_config = ConfigDict(populate_by_name=True)

    status: JobStatus
    last_result_url: str | None = Field(default=None, alias="lastResultUrl")


class ErrorResponse(BaseModel):
    """Error response for failed requests."""

    detail: str
    error_code: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    broker: Literal["healthy", "unhealthy"] = "healthy"
    store: Literal["healthy", "unhealthy"] = "healthy"
    job_count: int = 0
