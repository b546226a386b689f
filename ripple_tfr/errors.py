"""Error types raised by the analysis pipeline."""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union


class InputFileError(RuntimeError):
    """A required input file is missing or does not have the expected content.

    Carries the subject / channel / path that triggered it so the batch log
    says exactly where the run stopped.
    """

    def __init__(
        self,
        message: str,
        *,
        subject: Optional[int] = None,
        channel: Optional[str] = None,
        path: Optional[Union[str, Path]] = None,
    ):
        self.subject = subject
        self.channel = channel
        self.path = None if path is None else str(path)

        where = []
        if subject is not None:
            where.append(f"subject={subject}")
        if channel is not None:
            where.append(f"channel={channel}")
        if path is not None:
            where.append(f"path={path}")
        full = f"{message} ({', '.join(where)})" if where else message
        super().__init__(full)


class InsufficientSubjectsError(RuntimeError):
    """Fewer than two paired units are available for a permutation test."""

    def __init__(self, n_units: int, *, channel: Optional[str] = None):
        self.n_units = int(n_units)
        self.channel = channel
        ch = f" for channel {channel}" if channel is not None else ""
        super().__init__(f"Need at least 2 paired units{ch}, got {self.n_units}")
