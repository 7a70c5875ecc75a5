from __future__ import annotations

from asyncio import sleep
from collections.abc import Awaitable, Callable
from io import StringIO
from pathlib import Path

import pytest
from rich.console import Console

CSS = "body{color:red}"
JS = "console.log(1)"

Eventually = Callable[[Callable[[], bool]], Awaitable[None]]


@pytest.fixture
def source(tmp_path: Path) -> Path:
    src = tmp_path / "src"
    src.mkdir()

    (src / "a.css").write_text(CSS)
    (src / "b.js").write_text(JS)

    return src


@pytest.fixture
def console() -> Console:
    return Console(file=StringIO(), width=200, force_terminal=False)


@pytest.fixture
def eventually() -> Eventually:
    async def wait(predicate: Callable[[], bool], timeout: float = 5) -> None:
        for _ in range(int(timeout / 0.01)):
            if predicate():
                return
            await sleep(0.01)

        raise AssertionError(f"Condition was not met within {timeout} seconds")

    return wait
