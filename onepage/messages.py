from __future__ import annotations

from datetime import datetime, timedelta

from pydantic import Field
from watchfiles import Change

from onepage.model import Model


class Message(Model):
    timestamp: datetime = Field(default_factory=datetime.now)


class SourceChanged(Message):
    changes: set[tuple[Change, str]]


class TemplateChanged(Message):
    changes: set[tuple[Change, str]]


class BuildStarted(Message):
    generation: int
    reload_template: bool


class BuildCompleted(Message):
    generation: int
    duration: timedelta
    size: int | None = None
    digest: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class ViewerConnected(Message):
    remote: str
    replaced: str | None = None


class ViewerRejected(Message):
    remote: str


class ViewerDisconnected(Message):
    remote: str
    reason: str


class ViewerMessage(Message):
    remote: str
    text: str


class ReloadSent(Message):
    remote: str
    generation: int


class Problem(Message):
    text: str


class Debug(Message):
    text: str


class Fatal(Message):
    text: str


class Quit(Message):
    pass
