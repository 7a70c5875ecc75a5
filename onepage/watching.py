from __future__ import annotations

import re
from asyncio import Event, Queue
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from watchfiles import Change, awatch

from onepage.messages import Fatal, Message, SourceChanged, TemplateChanged
from onepage.sources import CONTENT_EXTENSIONS


@dataclass(frozen=True)
class ChangeEvent:
    change: Change
    path: Path
    is_directory: bool
    extension: str

    @classmethod
    def from_change(cls, change: Change, path: str) -> ChangeEvent:
        p = Path(path)
        return cls(
            change=change,
            path=p,
            is_directory=p.is_dir(),
            extension=p.suffix.lower(),
        )

    @property
    def was_removed(self) -> bool:
        return self.change is Change.deleted


def as_changes(events: Iterable[ChangeEvent]) -> set[tuple[Change, str]]:
    return {(e.change, str(e.path)) for e in events}


class ChangeClassifier:
    """
    Decides which filesystem changes should cause a rebuild.

    A bad ignore pattern disables ignoring instead of failing;
    the compilation error is kept in pattern_error for the caller to report.
    """

    def __init__(self, ignore: str | None = None):
        self.ignore: re.Pattern[str] | None = None
        self.pattern_error: re.error | None = None

        if ignore:
            try:
                self.ignore = re.compile(ignore)
            except re.error as e:
                self.pattern_error = e

    def is_ignored(self, event: ChangeEvent) -> bool:
        return self.ignore is not None and self.ignore.search(event.path.name) is not None

    def is_relevant_source_change(self, event: ChangeEvent) -> bool:
        return (
            not event.is_directory
            and not event.was_removed
            and not self.is_ignored(event)
            and event.extension in CONTENT_EXTENSIONS
        )

    def relevant_source_changes(self, events: Iterable[ChangeEvent]) -> tuple[ChangeEvent, ...]:
        return tuple(e for e in events if self.is_relevant_source_change(e))

    def is_relevant_template_change(self, event: ChangeEvent, template: Path) -> bool:
        return event.path.resolve() == template.resolve()

    def relevant_template_changes(
        self, events: Iterable[ChangeEvent], template: Path
    ) -> tuple[ChangeEvent, ...]:
        return tuple(e for e in events if self.is_relevant_template_change(e, template))


async def watch_source(
    root: Path,
    classifier: ChangeClassifier,
    events: Queue[Message],
    stop_event: Event,
    debounce: int,
) -> None:
    try:
        async for changes in awatch(root, recursive=True, stop_event=stop_event, debounce=debounce):
            relevant = classifier.relevant_source_changes(ChangeEvent.from_change(c, p) for c, p in changes)
            if relevant:
                await events.put(SourceChanged(changes=as_changes(relevant)))
    except OSError as e:
        await events.put(Fatal(text=f"Could not watch {root} directory -- {e}"))


async def watch_template(
    template: Path,
    classifier: ChangeClassifier,
    events: Queue[Message],
    stop_event: Event,
    debounce: int,
) -> None:
    # Watching the parent directory catches editors that save by replacing the file.
    try:
        async for changes in awatch(
            template.resolve().parent, recursive=False, stop_event=stop_event, debounce=debounce
        ):
            relevant = classifier.relevant_template_changes(
                (ChangeEvent.from_change(c, p) for c, p in changes), template
            )
            if relevant:
                await events.put(TemplateChanged(changes=as_changes(relevant)))
    except OSError as e:
        await events.put(Fatal(text=f"Could not watch template file {template} -- {e}"))
