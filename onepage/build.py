from __future__ import annotations

import os
import shutil
import sys
import threading
from asyncio import Future, Queue, Task, create_task, get_running_loop
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from tempfile import NamedTemporaryFile
from time import monotonic
from typing import Any, BinaryIO, Protocol, TypeVar

from jinja2 import Template

from onepage.messages import BuildCompleted, BuildStarted, Message
from onepage.scheduler import BuildRequest
from onepage.sources import (
    DEFAULT_TEMPLATE,
    BuildError,
    compile_template,
    gather_sources,
    load_template,
    render_page,
)
from onepage.utils import short_hash

T = TypeVar("T")


class Sink(Protocol):
    closed: bool

    def write(self, data: bytes) -> None: ...

    def finish(self) -> None: ...


class SinkClosed(BuildError):
    pass


class FileSink:
    """
    Replaces the artifact file atomically:
    the page is written to a temporary file next to it, then renamed over it.

    Once finished, further writes are refused, so a build that outlives shutdown
    cannot touch the artifact.
    """

    def __init__(self, path: Path):
        self.path = path
        self.closed = False
        self.lock = threading.Lock()

    def write(self, data: bytes) -> None:
        with self.lock:
            if self.closed:
                raise SinkClosed(f"Discarded page for {self.path}, the output is already closed")

            self.replace(data)

    def replace(self, data: bytes) -> None:
        tmp: Path | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with NamedTemporaryFile(
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as f:
                tmp = Path(f.name)
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            if self.path.exists():
                shutil.copymode(self.path, tmp)
            else:
                tmp.chmod(0o644)
            os.replace(tmp, self.path)
        except OSError as e:
            if tmp is not None:
                tmp.unlink(missing_ok=True)
            raise BuildError(f"Failed to write {self.path} -- {e}") from e

    def finish(self) -> None:
        with self.lock:
            self.closed = True


class StreamSink:
    def __init__(self, stream: BinaryIO | None = None, separator: bytes = b"\n"):
        self.stream = stream if stream is not None else sys.stdout.buffer
        self.separator = separator
        self.closed = False
        self.lock = threading.Lock()

    def write(self, data: bytes) -> None:
        with self.lock:
            if self.closed:
                raise SinkClosed("Discarded page, the output is already closed")

            try:
                self.stream.write(data)
                self.stream.write(self.separator)
                self.stream.flush()
            except OSError as e:
                raise BuildError(f"Failed to write output -- {e}") from e

    def finish(self) -> None:
        with self.lock:
            if self.closed:
                return
            self.closed = True

            try:
                self.stream.write(b"\n")
                self.stream.flush()
            except (OSError, ValueError):
                # the stream may already be closed at interpreter shutdown
                pass


class BuildExecutor:
    """
    Performs full rebuilds: walk the sources, render the template, hand the page to the sink.

    Only one build runs at a time (the scheduler guarantees it),
    so the loaded template needs no locking even though builds run in worker threads.
    """

    def __init__(
        self,
        source: Path,
        sink: Sink,
        template: Path | None = None,
        reload_url: str | None = None,
    ):
        self.source = source
        self.sink = sink
        self.template_path = template
        self.reload_url = reload_url

        self.template: Template | None = None

    def reload_template(self) -> None:
        # On failure, the previously loaded template is kept.
        if self.template_path is None:
            self.template = compile_template(DEFAULT_TEMPLATE)
        else:
            self.template = load_template(self.template_path)

    def render(self, reload_template: bool = False) -> bytes:
        if reload_template or self.template is None:
            self.reload_template()

        if self.template is None:
            raise BuildError("No template loaded")

        return render_page(self.template, gather_sources(self.source), reload_url=self.reload_url)

    def execute(self, reload_template: bool = False) -> bytes:
        page = self.render(reload_template=reload_template)
        self.sink.write(page)
        return page


@dataclass(frozen=True)
class Build:
    request: BuildRequest

    events: Queue[Message] = field(repr=False)

    start_time: float
    task: Task[None]

    @classmethod
    async def start(cls, executor: BuildExecutor, request: BuildRequest, events: Queue[Message]) -> Build:
        start_time = monotonic()

        await events.put(
            BuildStarted(generation=request.generation, reload_template=request.reload_template)
        )

        task = create_task(
            run(executor=executor, request=request, start_time=start_time, events=events),
            name=f"Build {request.generation}",
        )

        return cls(request=request, events=events, start_time=start_time, task=task)

    async def wait(self) -> Build:
        await self.task
        return self


async def run(executor: BuildExecutor, request: BuildRequest, start_time: float, events: Queue[Message]) -> None:
    # Completion is always reported, so the scheduler can never be left waiting on a build.
    try:
        page = await run_in_daemon_thread(
            executor.execute,
            request.reload_template,
            name=f"Build {request.generation}",
        )
    except BuildError as e:
        completed = BuildCompleted(
            generation=request.generation,
            duration=timedelta(seconds=monotonic() - start_time),
            error=str(e),
        )
    except Exception as e:
        completed = BuildCompleted(
            generation=request.generation,
            duration=timedelta(seconds=monotonic() - start_time),
            error=f"Unexpected {type(e).__name__} during build -- {e}",
        )
    else:
        completed = BuildCompleted(
            generation=request.generation,
            duration=timedelta(seconds=monotonic() - start_time),
            size=len(page),
            digest=short_hash(page),
        )

    await events.put(completed)


async def run_in_daemon_thread(func: Callable[..., T], *args: Any, name: str | None = None) -> T:
    """
    Like asyncio.to_thread, but on a daemon thread of its own:
    neither asyncio.run() nor interpreter exit waits for it to finish.
    """
    loop = get_running_loop()
    future: Future[T] = loop.create_future()

    def resolve(result: Any, error: BaseException | None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    def target() -> None:
        result: Any = None
        error: BaseException | None = None
        try:
            result = func(*args)
        except BaseException as e:
            error = e

        try:
            loop.call_soon_threadsafe(resolve, result, error)
        except RuntimeError:
            # the event loop is already closed, nobody is waiting for the result
            pass

    threading.Thread(target=target, name=name, daemon=True).start()

    return await future
