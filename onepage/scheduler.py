from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Status(Enum):
    Idle = "idle"
    Dirty = "dirty"
    Building = "building"


@dataclass(frozen=True)
class PendingChange:
    reload_template: bool = False

    def merge(self, other: PendingChange | None) -> PendingChange:
        if other is None:
            return self
        return PendingChange(reload_template=self.reload_template or other.reload_template)


@dataclass(frozen=True)
class BuildRequest:
    generation: int
    reload_template: bool = False


@dataclass
class PendingState:
    in_flight: bool = False
    pending: PendingChange | None = None

    @property
    def has_pending_change(self) -> bool:
        return self.pending is not None


@dataclass
class RebuildScheduler:
    """
    Merges change notifications into a single pending change and dispatches at most one build at a time.

    Every stimulus method ends with a tick: if no build is in flight and a change is pending,
    the pending change becomes a BuildRequest for the caller to start, and the scheduler is Building
    until build_completed() is called. Changes that arrive while Building are held (and merged)
    until then, so a burst of changes costs exactly one follow-up build.

    The scheduler is not thread-safe; it must only be driven from one place (the orchestrator's message loop).
    """

    state: PendingState = field(default_factory=PendingState)
    dispatched: int = 0
    closed: bool = False

    @property
    def status(self) -> Status:
        if self.state.in_flight:
            return Status.Building
        elif self.state.has_pending_change:
            return Status.Dirty
        else:
            return Status.Idle

    def source_changed(self) -> BuildRequest | None:
        return self.changed(PendingChange())

    def template_changed(self) -> BuildRequest | None:
        return self.changed(PendingChange(reload_template=True))

    def changed(self, change: PendingChange) -> BuildRequest | None:
        self.state.pending = change.merge(self.state.pending)
        return self.tick()

    def build_completed(self) -> BuildRequest | None:
        if not self.state.in_flight:
            raise RuntimeError("Build completed, but no build was in flight")

        self.state.in_flight = False
        return self.tick()

    def tick(self) -> BuildRequest | None:
        if self.closed or self.state.in_flight or self.state.pending is None:
            return None

        pending = self.state.pending
        self.state.pending = None
        self.state.in_flight = True
        self.dispatched += 1

        return BuildRequest(generation=self.dispatched, reload_template=pending.reload_template)

    def close(self) -> None:
        self.closed = True
