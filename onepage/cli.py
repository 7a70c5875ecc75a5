from __future__ import annotations

import asyncio
from pathlib import Path
from time import monotonic
from typing import Any, Optional

import typer.rich_utils as ru
from pydantic import ValidationError
from rich.console import Console
from rich.json import JSON
from rich.panel import Panel
from rich.text import Text
from typer import Argument, Exit, Option, Typer

from onepage.config import Config, find_config_file
from onepage.orchestrator import Orchestrator

ru.STYLE_HELPTEXT = ""

HELP = """
Assemble a single HTML page from the CSS and JavaScript files in SOURCE.

The contents of every .css file are inserted into the template where {{ css }} appears
(wrapped in a style tag), and the contents of every .js file where {{ js }} appears
(wrapped in a script tag). Nothing is transformed; minify or compile with other tools first.

With --dev, SOURCE and the template are watched and the page is rebuilt whenever they change.
If an outfile is given, the page is also served on --port, and an open browser tab
is told to reload after every successful build.
"""

cli = Typer(pretty_exceptions_enable=False)


@cli.command(help=HELP)
def run(
    source: Optional[Path] = Argument(
        default=None,
        help="The directory of CSS and JavaScript files to assemble.",
        show_default=False,
    ),
    outfile: Optional[Path] = Option(
        None,
        "--outfile",
        "-o",
        help="The file to write the page to. If not given, the page is written to standard output.",
    ),
    template: Optional[Path] = Option(
        None,
        "--template",
        "-t",
        help="The HTML template to insert the CSS and JavaScript into.",
    ),
    ignore: Optional[str] = Option(
        None,
        "--ignore",
        "-i",
        help="A regular expression for names of changed files that should not trigger rebuilds.",
    ),
    dev: Optional[bool] = Option(
        None,
        "--dev/--no-dev",
        help="Watch for changes, rebuild, and reload the browser.",
        show_default=False,
    ),
    host: Optional[str] = Option(None, help="The interface the dev server listens on."),
    port: Optional[int] = Option(
        None,
        help="The port the dev server listens on. Port 0 disables serving and hot reloading.",
    ),
    viewer_policy: Optional[str] = Option(
        None,
        help="When a second browser connects: 'replace' the first one, or 'reject' the newcomer.",
    ),
    open_browser: Optional[bool] = Option(
        None,
        "--open/--no-open",
        help="Open the page in a web browser after the first successful build.",
        show_default=False,
    ),
    verbose: Optional[bool] = Option(
        None,
        "--verbose/--quiet",
        "-v",
        help="Print debugging output.",
        show_default=False,
    ),
    config: Optional[Path] = Option(
        default=None,
        exists=True,
        readable=True,
        show_default=True,
        envvar="ONEPAGE_CONFIG",
        help="The path to a YAML configuration file. Command line options override its values.",
    ),
    dry: bool = Option(
        default=False,
        help="If enabled, print the resolved configuration and do not build anything.",
    ),
) -> None:
    start_time = monotonic()

    options: dict[str, Any] = {
        "source": source,
        "outfile": outfile,
        "template": template,
        "ignore": ignore,
        "dev": dev,
        "host": host,
        "port": port,
        "viewer_policy": viewer_policy,
        "open_browser": open_browser,
        "verbose": verbose,
    }
    overrides = {k: v for k, v in options.items() if v is not None}

    parsed_config = load_config(config or find_config_file(Path.cwd()), overrides, Console(stderr=True))

    # The page itself may go to standard output, so everything else goes to standard error.
    console = Console(stderr=parsed_config.outfile is None)

    if dry:
        console.print(
            Panel(
                JSON(parsed_config.model_dump_json(exclude_defaults=True)),
                title="Configuration",
                title_align="left",
            )
        )
        return

    orchestrator = Orchestrator(config=parsed_config, console=console)

    try:
        exit_code = asyncio.run(orchestrator.run())
    except KeyboardInterrupt:
        raise Exit(code=0)
    finally:
        end_time = monotonic()

        if parsed_config.dev:
            console.print(Text(f"Finished in {end_time - start_time:.3f} seconds."))

    raise Exit(code=exit_code)


def load_config(path: Path | None, overrides: dict[str, Any], console: Console) -> Config:
    try:
        if path is not None:
            return Config.from_file(path, **overrides)
        else:
            return Config.model_validate(overrides)
    except ValidationError as e:
        for err in e.errors():
            loc = ".".join(map(str, err["loc"])) or "config"
            msg = err["msg"]
            console.print(f"[red]ERROR[/red] {loc} -> {msg}")
        raise Exit(code=1)
    except NotImplementedError as e:
        console.print(f"[red]ERROR[/red] {path} -> {e}")
        raise Exit(code=1)


if __name__ == "__main__":
    cli()
