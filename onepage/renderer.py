from __future__ import annotations

from datetime import datetime
from types import TracebackType
from typing import Type

from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.rule import Rule
from rich.style import Style
from rich.table import Table
from rich.text import Text
from typing_extensions import assert_never
from watchfiles import Change

from onepage.messages import (
    BuildCompleted,
    BuildStarted,
    Debug,
    Fatal,
    Message,
    Problem,
    Quit,
    ReloadSent,
    SourceChanged,
    TemplateChanged,
    ViewerConnected,
    ViewerDisconnected,
    ViewerMessage,
    ViewerRejected,
)
from onepage.notifier import ReloadNotifier
from onepage.scheduler import RebuildScheduler, Status

prefix_format = "{timestamp:%H:%M:%S} {id}  "
internal_format = "{timestamp:%H:%M:%S}"
CHANGE_TO_STYLE = {
    Change.added: Style(color="green"),
    Change.deleted: Style(color="red"),
    Change.modified: Style(color="yellow"),
}
STATUS_TO_COLOR = {
    Status.Idle: "green",
    Status.Dirty: "yellow",
    Status.Building: "cyan",
}
LABELS = ("source", "template", "build", "viewer", "onepage")


class Renderer:
    def __init__(
        self,
        scheduler: RebuildScheduler,
        console: Console,
        notifier: ReloadNotifier | None = None,
        verbose: bool = False,
    ):
        self.scheduler = scheduler
        self.console = console
        self.notifier = notifier
        self.verbose = verbose

        self.last_build: BuildCompleted | None = None

        self.live = Live(console=console, auto_refresh=False)

    def __enter__(self) -> None:
        self.live.start(refresh=True)

    def __exit__(
        self,
        exc_type: Type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.live.stop()

    def handle_message(self, message: Message) -> None:
        match message:
            case SourceChanged() | TemplateChanged() as msg:
                self.handle_change_message(msg)

            case BuildStarted() | BuildCompleted() as msg:
                self.handle_build_message(msg)

            case (
                ViewerConnected() | ViewerRejected() | ViewerDisconnected() | ReloadSent() | ViewerMessage()
            ) as msg:
                self.handle_viewer_message(msg)

            case Problem() | Fatal() | Debug() as msg:
                self.handle_text_message(msg)

            case Quit():
                pass

        self.update(message)

    def info(self, message: Message) -> RenderableType:
        status = self.scheduler.status

        table = Table.grid(padding=(1, 1, 0, 0), expand=False)

        parts: list[Text | str | tuple[str, str]] = [(status.value.capitalize(), STATUS_TO_COLOR[status])]

        if self.last_build is not None:
            if self.last_build.succeeded:
                parts.append(f"  last build #{self.last_build.generation} ok ({self.last_build.digest})")
            else:
                parts.append((f"  last build #{self.last_build.generation} failed", "red"))

        if self.notifier is not None:
            parts.append(f"  serving {self.notifier.url}")
            parts.append(("  viewer connected" if self.notifier.has_viewer else "  no viewer", "dim"))

        table.add_row(internal_format.format_map({"timestamp": message.timestamp}), Text.assemble(*parts))

        return Group(
            Rule(style=Style(color=STATUS_TO_COLOR[status])),
            table,
        )

    def prefix(self, id: str, message: Message, color: str) -> Text:
        return Text(
            prefix_format.format_map({"id": id, "timestamp": message.timestamp}).ljust(self.prefix_width),
            style=Style(color=color, dim=True),
        )

    def print(self, prefix: Text, body: Text) -> None:
        g = Table.grid()
        g.add_row(prefix, body)

        self.console.print(g)

    def handle_change_message(self, message: SourceChanged | TemplateChanged) -> None:
        changes = Text(" ").join(
            Text(path, style=CHANGE_TO_STYLE[change]) for change, path in sorted(message.changes)
        )

        match message:
            case SourceChanged():
                id, what = "source", "Detected changes to "
            case TemplateChanged():
                id, what = "template", "Detected changes to template "
            case _:
                assert_never(message)

        self.print(self.prefix(id, message, "yellow"), Text.assemble(what, changes, style=Style(dim=True)))

    def handle_build_message(self, message: BuildStarted | BuildCompleted) -> None:
        match message:
            case BuildStarted(generation=generation, reload_template=reload_template):
                if not self.verbose:
                    return
                body = Text.assemble(
                    f"Started build #{generation}",
                    " (reloading template)" if reload_template else "",
                    style=Style(dim=True),
                )
            case BuildCompleted(generation=generation, duration=duration, error=None) as msg:
                unchanged = self.last_build is not None and self.last_build.digest == msg.digest
                body = Text.assemble(
                    f"Build #{generation} wrote {msg.size} bytes ",
                    (f"({msg.digest}{', unchanged' if unchanged else ''})", "green"),
                    f" in {duration.total_seconds():.3f} seconds",
                )
                self.last_build = msg
            case BuildCompleted(generation=generation, error=error) as msg:
                body = Text.assemble(
                    (f"Build #{generation} failed: ", "red"),
                    (str(error), "red"),
                )
                self.last_build = msg
            case _:
                assert_never(message)

        self.print(self.prefix("build", message, "cyan"), body)

    def handle_viewer_message(
        self,
        message: ViewerConnected | ViewerRejected | ViewerDisconnected | ReloadSent | ViewerMessage,
    ) -> None:
        match message:
            case ViewerConnected(remote=remote, replaced=None):
                body = Text(f"Viewer {remote} connected")
            case ViewerConnected(remote=remote, replaced=replaced):
                body = Text(f"Viewer {remote} connected, replacing {replaced}")
            case ViewerRejected(remote=remote):
                body = Text(f"Rejected viewer {remote}: another viewer is already connected", style="yellow")
            case ViewerDisconnected(remote=remote, reason=reason):
                body = Text(f"Viewer {remote} disconnected ({reason})")
            case ReloadSent(remote=remote, generation=generation):
                body = Text(f"Told viewer {remote} to reload after build #{generation}")
            case ViewerMessage(remote=remote, text=text):
                if not self.verbose:
                    return
                body = Text(f"Received message from viewer {remote}: {text}")
            case _:
                assert_never(message)

        body.stylize(Style(dim=True))
        self.print(self.prefix("viewer", message, "magenta"), body)

    def handle_text_message(self, message: Problem | Fatal | Debug) -> None:
        match message:
            case Debug(text=text):
                if not self.verbose:
                    return
                body = Text(text, style=Style(dim=True))
            case Problem(text=text):
                body = Text(text, style=Style(color="yellow"))
            case Fatal(text=text):
                body = Text(text, style=Style(color="red", bold=True))
            case _:
                assert_never(message)

        self.print(self.prefix("onepage", message, "red"), body)

    def handle_shutdown_start(self) -> None:
        self.live.update(Group(Rule(), Text("Shutting down...")), refresh=True)

    def handle_shutdown_end(self) -> None:
        self.live.update(Rule(), refresh=True)

    def update(self, message: Message) -> None:
        self.live.update(self.info(message), refresh=True)

    @property
    def prefix_width(self) -> int:
        now = datetime.now()

        return max(len(prefix_format.format_map({"timestamp": now, "id": id})) for id in LABELS)
