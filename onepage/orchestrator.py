from __future__ import annotations

import signal
import webbrowser
from asyncio import Event, Queue, Task, create_task, gather, get_running_loop, shield, to_thread, wait_for
from collections.abc import Callable
from types import FrameType
from typing import Any

from rich.console import Console

from onepage.build import Build, BuildExecutor, FileSink, Sink, StreamSink
from onepage.config import Config
from onepage.messages import (
    BuildCompleted,
    Debug,
    Fatal,
    Message,
    Problem,
    Quit,
    SourceChanged,
    TemplateChanged,
)
from onepage.notifier import ReloadNotifier
from onepage.renderer import Renderer
from onepage.scheduler import BuildRequest, RebuildScheduler
from onepage.sources import BuildError
from onepage.watching import ChangeClassifier, watch_source, watch_template


def make_sink(config: Config) -> Sink:
    return FileSink(config.outfile) if config.outfile is not None else StreamSink()


class Orchestrator:
    def __init__(self, config: Config, console: Console, executor: BuildExecutor | None = None):
        self.config = config
        self.console = console

        self.inbox: Queue[Message] = Queue()

        self.scheduler = RebuildScheduler()
        self.classifier = ChangeClassifier(ignore=config.ignore)
        self.executor = executor or BuildExecutor(
            source=config.source,
            sink=make_sink(config),
            template=config.template,
        )
        self.notifier = (
            ReloadNotifier(
                artifact=config.outfile,
                events=self.inbox,
                host=config.host,
                port=config.port,
                reload_path=config.reload_path,
                viewer_policy=config.viewer_policy,
            )
            if config.serving and config.outfile is not None
            else None
        )
        self.renderer = Renderer(
            scheduler=self.scheduler,
            console=console,
            notifier=self.notifier,
            verbose=config.verbose,
        )

        self.build: Build | None = None
        self.watchers: list[Task[None]] = []
        self.stop_watching = Event()
        self.browser_opened = False
        self.previous_sigint_handler: Callable[[int, FrameType | None], Any] | int | None = None

    async def run(self) -> int:
        if not self.config.dev:
            return await self.build_once()

        with self.renderer:
            try:
                if not await self.start_notifier():
                    return 1
                self.start_watchers()
                self.install_signal_handler()
                await self.report_configuration_problems()

                # The first build happens unconditionally; it also loads the template.
                await self.dispatch(self.scheduler.template_changed())

                return await self.handle_messages()
            finally:
                await self.shutdown()

    async def build_once(self) -> int:
        try:
            await to_thread(self.executor.execute, True)
        except BuildError as e:
            self.renderer.handle_message(Fatal(text=f"Failed to assemble {self.config.source} -- {e}"))
            return 1

        return 0

    async def handle_messages(self) -> int:
        while True:
            request: BuildRequest | None = None

            match message := await self.inbox.get():
                case SourceChanged():
                    request = self.scheduler.source_changed()

                case TemplateChanged():
                    request = self.scheduler.template_changed()

                case BuildCompleted() as completed:
                    self.build = None
                    if completed.succeeded:
                        await self.handle_successful_build(completed)
                    request = self.scheduler.build_completed()

                case Fatal():
                    self.renderer.handle_message(message)
                    return 1

                case Quit():
                    self.scheduler.close()
                    self.renderer.handle_message(message)
                    return 0

            self.renderer.handle_message(message)

            await self.dispatch(request)

    async def dispatch(self, request: BuildRequest | None) -> None:
        if request is None:
            return

        self.build = await Build.start(executor=self.executor, request=request, events=self.inbox)

    async def handle_successful_build(self, completed: BuildCompleted) -> None:
        if self.notifier is None:
            return

        await self.notifier.notify_reload(generation=completed.generation)

        if self.config.open_browser and not self.browser_opened:
            self.browser_opened = True
            if await to_thread(webbrowser.open, self.notifier.url):
                await self.inbox.put(Debug(text=f"Opened {self.notifier.url} in a web browser"))
            else:
                await self.inbox.put(Problem(text=f"Failed to open {self.notifier.url} in a web browser"))

    async def start_notifier(self) -> bool:
        if self.notifier is None:
            if self.config.outfile is None:
                await self.inbox.put(
                    Debug(text="No outfile given, so the page is written to standard output and not served")
                )
            return True

        try:
            await self.notifier.start()
        except OSError as e:
            self.renderer.handle_message(
                Fatal(text=f"Failed to start the dev server on {self.config.host}:{self.config.port} -- {e}")
            )
            return False

        self.executor.reload_url = self.notifier.reload_url
        await self.inbox.put(Debug(text=f"Serving {self.config.outfile} at {self.notifier.url}"))

        return True

    def start_watchers(self) -> None:
        self.watchers.append(
            create_task(
                watch_source(
                    root=self.config.source,
                    classifier=self.classifier,
                    events=self.inbox,
                    stop_event=self.stop_watching,
                    debounce=self.config.debounce,
                ),
                name="Watch source",
            )
        )

        if self.config.template is not None:
            self.watchers.append(
                create_task(
                    watch_template(
                        template=self.config.template,
                        classifier=self.classifier,
                        events=self.inbox,
                        stop_event=self.stop_watching,
                        debounce=self.config.debounce,
                    ),
                    name="Watch template",
                )
            )

    async def report_configuration_problems(self) -> None:
        if self.classifier.pattern_error is not None:
            await self.inbox.put(
                Problem(
                    text=f"Failed to compile ignore pattern {self.config.ignore!r}, nothing will be ignored -- "
                    f"{self.classifier.pattern_error}"
                )
            )

    def install_signal_handler(self) -> None:
        loop = get_running_loop()

        def on_sigint(sig: int, frame: FrameType | None) -> None:
            loop.call_soon_threadsafe(self.inbox.put_nowait, Quit())

        self.previous_sigint_handler = signal.signal(signal.SIGINT, on_sigint)

    async def shutdown(self) -> None:
        self.renderer.handle_shutdown_start()

        self.scheduler.close()

        self.stop_watching.set()
        for watcher in self.watchers:
            watcher.cancel()

        await gather(*self.watchers, return_exceptions=True)

        if self.build is not None:
            try:
                await wait_for(shield(self.build.task), timeout=self.config.shutdown_timeout)
            except TimeoutError:
                self.renderer.handle_message(
                    Problem(
                        text=f"Build #{self.build.request.generation} did not finish within "
                        f"{self.config.shutdown_timeout} seconds; exiting anyway and discarding its output"
                    )
                )

        if self.notifier is not None:
            await self.notifier.close()

        self.executor.sink.finish()

        if self.previous_sigint_handler is not None:
            signal.signal(signal.SIGINT, self.previous_sigint_handler)
            self.previous_sigint_handler = None

        self.renderer.handle_shutdown_end()
