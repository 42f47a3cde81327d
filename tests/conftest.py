"""Pytest configuration and fixtures for batchprompt tests."""

import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path

import pytest


class ScriptedTransport:
    """Transport that replays fixed chunks, then ends, fails or hangs."""

    def __init__(self, chunks=(), error=None, hang=False):
        self.chunks = list(chunks)
        self.error = error
        self.hang = hang
        self.requests = []
        self.closed = False
        self.drained = asyncio.Event()

    @asynccontextmanager
    async def open(self, request):
        self.requests.append(request)
        try:
            yield self._iterate()
        finally:
            self.closed = True

    async def _iterate(self):
        for chunk in self.chunks:
            yield chunk
        self.drained.set()
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.Event().wait()


def _frame(payload: dict) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


@pytest.fixture
def frame():
    """Encode an event payload the way the backend writes it."""
    return _frame


@pytest.fixture
def scripted_transport():
    """Factory for transports replaying a fixed list of chunks."""
    return ScriptedTransport


@pytest.fixture
def two_targets():
    """The two-project submission used across dispatcher scenarios."""
    from batchprompt.schemas import Target

    return [Target(path="/a", name="a"), Target(path="/b", name="b")]


@pytest.fixture
def project_dirs(tmp_path: Path) -> list[Path]:
    """Create two project directories on disk."""
    dirs = []
    for name in ("alpha", "beta"):
        project = tmp_path / "projects" / name
        project.mkdir(parents=True)
        dirs.append(project)
    return dirs


@pytest.fixture
def jobs_db_path(tmp_path: Path) -> Path:
    """Create a temporary path for the jobs database."""
    return tmp_path / "jobs.db"
