from __future__ import annotations

import os
from asyncio import Event, Queue, Task, create_task, sleep, wait_for
from collections.abc import AsyncIterator, Callable, Coroutine
from pathlib import Path

import pytest
from watchfiles import Change

from onepage.messages import Fatal, Message, SourceChanged, TemplateChanged
from onepage.watching import ChangeClassifier, ChangeEvent, as_changes, watch_source, watch_template


def event(
    path: str,
    is_directory: bool = False,
    was_removed: bool = False,
) -> ChangeEvent:
    p = Path(path)
    return ChangeEvent(
        change=Change.deleted if was_removed else Change.modified,
        path=p,
        is_directory=is_directory,
        extension=p.suffix.lower(),
    )


@pytest.mark.parametrize(
    ("e", "expected"),
    (
        (event("/src/a.css"), True),
        (event("/src/b.js"), True),
        (event("/src/deep/nested/c.JS"), True),
        (event("/src/Style.CSS"), True),
        (event("/src/readme.md"), False),
        (event("/src/a.css", was_removed=True), False),
        (event("/src/weird.css", is_directory=True), False),
        (event("/src/noextension"), False),
        (event("/src/a.css.map"), False),
    ),
)
def test_source_relevance(e: ChangeEvent, expected: bool) -> None:
    assert ChangeClassifier().is_relevant_source_change(e) is expected


@pytest.mark.parametrize(
    ("ignore", "e", "expected"),
    (
        (r"\.min\.js$", event("/src/vendor.min.js"), False),
        (r"\.min\.js$", event("/src/app.js"), True),
        (r"^_", event("/src/_draft.css"), False),
        (r"^_", event("/src/_drafts/real.css"), True),  # only the file name is matched
        (r"draft", event("/src/my-draft-styles.css"), False),  # matches anywhere in the name
    ),
)
def test_ignore_pattern(ignore: str, e: ChangeEvent, expected: bool) -> None:
    assert ChangeClassifier(ignore=ignore).is_relevant_source_change(e) is expected


def test_malformed_ignore_pattern_fails_open() -> None:
    classifier = ChangeClassifier(ignore="([unclosed")

    assert classifier.pattern_error is not None
    assert classifier.ignore is None
    assert classifier.is_relevant_source_change(event("/src/([unclosed.css"))


def test_empty_ignore_pattern_ignores_nothing() -> None:
    classifier = ChangeClassifier(ignore="")

    assert classifier.pattern_error is None
    assert classifier.is_relevant_source_change(event("/src/a.css"))


def test_batch_keeps_only_relevant_events() -> None:
    classifier = ChangeClassifier(ignore=r"~$")

    assert classifier.relevant_source_changes([]) == ()
    assert classifier.relevant_source_changes([event("/src/a.txt"), event("/src/b.css~")]) == ()
    assert classifier.relevant_source_changes([event("/src/a.txt"), event("/src/b.css")]) == (
        event("/src/b.css"),
    )


def test_as_changes() -> None:
    assert as_changes([event("/src/a.css"), event("/src/b.js", was_removed=True)]) == {
        (Change.modified, "/src/a.css"),
        (Change.deleted, "/src/b.js"),
    }


def test_template_changes_are_relevant_only_for_the_template_itself(tmp_path: Path) -> None:
    template = tmp_path / "index.html"
    classifier = ChangeClassifier(ignore=r"index")

    events = [
        event(str(tmp_path / "other.html")),
        event(str(template), was_removed=True),
        event(str(template)),
    ]

    assert classifier.relevant_template_changes(events, template) == tuple(events[1:])


def test_change_event_from_watchfiles_change(tmp_path: Path) -> None:
    (tmp_path / "dir.css").mkdir()

    assert ChangeEvent.from_change(Change.added, str(tmp_path / "dir.css")).is_directory
    assert ChangeEvent.from_change(Change.deleted, str(tmp_path / "gone.js")) == ChangeEvent(
        change=Change.deleted,
        path=tmp_path / "gone.js",
        is_directory=False,
        extension=".js",
    )
    assert ChangeEvent.from_change(Change.deleted, str(tmp_path / "gone.js")).was_removed
    assert ChangeEvent.from_change(Change.modified, str(tmp_path / "A.CSS")).extension == ".css"


async def test_watching_a_missing_directory_is_fatal(tmp_path: Path) -> None:
    q: Queue[Message] = Queue()

    await wait_for(
        watch_source(
            root=tmp_path / "missing",
            classifier=ChangeClassifier(),
            events=q,
            stop_event=Event(),
            debounce=50,
        ),
        timeout=5,
    )

    msg = q.get_nowait()

    assert isinstance(msg, Fatal)
    assert "missing" in msg.text


def drain(q: Queue[Message]) -> list[Message]:
    messages = []
    while not q.empty():
        messages.append(q.get_nowait())
    return messages


def changed_paths(message: Message) -> set[Path]:
    assert isinstance(message, (SourceChanged, TemplateChanged))
    return {Path(path).resolve() for _, path in message.changes}


async def first_message(q: Queue[Message], touch: Callable[[], object], timeout: float = 10) -> Message:
    # The watcher may not be listening yet, so keep touching until something arrives.
    for _ in range(int(timeout / 0.25)):
        touch()
        try:
            return await wait_for(q.get(), timeout=0.25)
        except TimeoutError:
            continue

    raise AssertionError(f"No change was reported within {timeout} seconds")


class Watchers:
    def __init__(self) -> None:
        self.stop_event = Event()
        self.tasks: list[Task[None]] = []

    def start(self, watcher: Coroutine[None, None, None]) -> None:
        self.tasks.append(create_task(watcher))

    async def stop(self) -> None:
        self.stop_event.set()
        for task in self.tasks:
            await wait_for(task, timeout=5)


@pytest.fixture
async def watchers() -> AsyncIterator[Watchers]:
    w = Watchers()

    yield w

    await w.stop()


async def test_watch_source_reports_only_relevant_changes(source: Path, watchers: Watchers) -> None:
    q: Queue[Message] = Queue()
    watchers.start(
        watch_source(
            root=source,
            classifier=ChangeClassifier(ignore=r"\.min\.js$"),
            events=q,
            stop_event=watchers.stop_event,
            debounce=50,
        )
    )

    msg = await first_message(q, lambda: (source / "a.css").write_text("p{}"))

    assert isinstance(msg, SourceChanged)
    assert changed_paths(msg) == {(source / "a.css").resolve()}

    await sleep(0.5)
    drain(q)

    (source / "x.min.js").write_text("minified();")
    (source / "notes.txt").write_text("not a source")
    (source / "assets").mkdir()

    await sleep(0.5)

    assert drain(q) == []

    (source / "assets" / "c.js").write_text("c();")

    msg = await wait_for(q.get(), timeout=5)

    assert isinstance(msg, SourceChanged)
    assert changed_paths(msg) == {(source / "assets" / "c.js").resolve()}


async def test_watch_template_sees_saves_that_replace_the_file(tmp_path: Path, watchers: Watchers) -> None:
    template = tmp_path / "template.html"
    template.write_text("{{ css }}{{ js }}")

    def save_by_replacing() -> None:
        tmp = tmp_path / "template.html.tmp"
        tmp.write_text("<main>{{ css }}{{ js }}</main>")
        os.replace(tmp, template)
        (tmp_path / "other.html").write_text("unrelated")

    q: Queue[Message] = Queue()
    watchers.start(
        watch_template(
            template=template,
            classifier=ChangeClassifier(ignore="template"),
            events=q,
            stop_event=watchers.stop_event,
            debounce=50,
        )
    )

    msg = await first_message(q, save_by_replacing)

    assert isinstance(msg, TemplateChanged)
    assert changed_paths(msg) == {template.resolve()}
