"""Runtime configuration for batchprompt."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from batchprompt.store import DEFAULT_DB_PATH
from batchprompt.transport import DEFAULT_BASE_URL, DEFAULT_CONNECT_TIMEOUT

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(slots=True)
class Settings:
    """Where runs are sent and where jobs are kept."""

    backend_url: str = DEFAULT_BASE_URL
    jobs_db_path: Path = DEFAULT_DB_PATH
    jobs_url: str | None = None
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from the environment, falling back to local defaults.

        Raises:
            ValueError: if BATCHPROMPT_TIMEOUT is not a positive number
        """
        timeout = os.getenv("BATCHPROMPT_TIMEOUT", str(DEFAULT_CONNECT_TIMEOUT))
        try:
            connect_timeout = float(timeout)
        except ValueError:
            raise ValueError(
                f"BATCHPROMPT_TIMEOUT must be a number of seconds, got {timeout!r}"
            ) from None
        if connect_timeout <= 0:
            raise ValueError(f"BATCHPROMPT_TIMEOUT must be positive, got {timeout!r}")

        return cls(
            backend_url=os.getenv("BATCHPROMPT_URL", DEFAULT_BASE_URL),
            jobs_db_path=Path(os.getenv("BATCHPROMPT_JOBS_DB", str(DEFAULT_DB_PATH))).expanduser(),
            jobs_url=os.getenv("BATCHPROMPT_JOBS_URL") or None,
            connect_timeout=connect_timeout,
        )
