"""Progress events emitted while a sync pass runs."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum


class SyncPhase(str, Enum):
    DISCOVER = "discover"
    PULL = "pull"
    PUSH = "push"
    IMPORT = "import"
    EXPORT = "export"


@dataclass
class SyncProgress:
    """One update on the progress channel.

    A run ends with exactly one event where ``complete`` is True or ``error``
    is set.
    """

    phase: SyncPhase
    step: str = ""
    current: int = 0
    total: int = 0
    contact_name: str | None = None
    complete: bool = False
    error: str | None = None

    @property
    def is_final(self) -> bool:
        return self.complete or self.error is not None


ProgressCallback = Callable[[SyncProgress], Awaitable[None]]


@dataclass
class ProgressRecorder:
    """Progress callback that keeps every event, mostly for tests and the CLI."""

    events: list[SyncProgress] = field(default_factory=list)

    async def __call__(self, event: SyncProgress) -> None:
        self.events.append(event)

    @property
    def last(self) -> SyncProgress | None:
        return self.events[-1] if self.events else None

    def phases(self) -> list[SyncPhase]:
        seen: list[SyncPhase] = []
        for event in self.events:
            if event.phase not in seen:
                seen.append(event.phase)
        return seen


async def emit(progress: ProgressCallback | None, event: SyncProgress) -> None:
    if progress is not None:
        await progress(event)
