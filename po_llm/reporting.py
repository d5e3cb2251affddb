"""Progress reporting channel shared by concurrently running tasks."""

from __future__ import annotations

import asyncio
import pathlib
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional


class EventKind(Enum):
    FILE_STARTED = "file_started"
    FILE_FINISHED = "file_finished"
    LANGUAGE_FINISHED = "language_finished"
    BATCH_FINISHED = "batch_finished"
    PREVIEW = "preview"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class ReportEvent:
    """A single progress message emitted by a running task."""

    kind: EventKind
    message: str
    file: Optional[pathlib.Path] = None
    language: Optional[str] = None

    def render(self) -> str:
        prefix = ""
        if self.file is not None:
            prefix = self.file.name
            if self.language:
                prefix += f" [{self.language}]"
            prefix += ": "
        marker = {
            EventKind.WARNING: "warning: ",
            EventKind.ERROR: "error: ",
        }.get(self.kind, "")
        return f"{prefix}{marker}{self.message}"


class ProgressReporter:
    """Queue-backed sink; tasks emit events and never touch the console."""

    def __init__(self, *, keep_history: bool = False) -> None:
        self._queue: "asyncio.Queue[Optional[ReportEvent]]" = asyncio.Queue()
        self.keep_history = keep_history
        self.history: List[ReportEvent] = []

    def emit(
        self,
        kind: EventKind,
        message: str,
        *,
        file: Optional[pathlib.Path] = None,
        language: Optional[str] = None,
    ) -> None:
        event = ReportEvent(kind=kind, message=message, file=file, language=language)
        if self.keep_history:
            self.history.append(event)
        self._queue.put_nowait(event)

    def close(self) -> None:
        self._queue.put_nowait(None)

    async def drain(self, handler: Callable[[ReportEvent], None]) -> None:
        """Deliver events to ``handler`` until :meth:`close` is called."""

        while True:
            event = await self._queue.get()
            if event is None:
                return
            handler(event)


class ConsoleSink:
    """Prints events to stdout, hiding per-batch chatter unless verbose."""

    QUIET_KINDS = {EventKind.BATCH_FINISHED, EventKind.FILE_STARTED}

    def __init__(self, *, verbose: bool) -> None:
        self.verbose = verbose

    def __call__(self, event: ReportEvent) -> None:
        if event.kind in self.QUIET_KINDS and not self.verbose:
            return
        print(event.render())
