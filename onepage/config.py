from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

from identify.identify import tags_from_path
from pydantic import DirectoryPath, Field, FilePath, field_validator

from onepage.model import Model

CONFIG_FILE_NAMES = ("onepage.yaml", "onepage.yml")

ViewerPolicy = Literal["replace", "reject"]


class Config(Model):
    source: Annotated[
        DirectoryPath,
        Field(description="The directory whose CSS and JavaScript files are assembled."),
    ]
    template: Annotated[
        FilePath | None,
        Field(
            description="The HTML template to render. It must contain the {{ css }} and {{ js }} slots. "
            "If not given, a minimal default template is used.",
        ),
    ] = None
    outfile: Annotated[
        Path | None,
        Field(
            description="The file to write the assembled page to. Missing parent directories are created. "
            "If not given, the page is written to standard output.",
        ),
    ] = None
    ignore: Annotated[
        str | None,
        Field(description="A regular expression; changed files whose names match it do not trigger rebuilds."),
    ] = None

    dev: Annotated[
        bool,
        Field(description="Watch the source directory and template, rebuilding and reloading on changes."),
    ] = False
    host: Annotated[str, Field(description="The interface the dev server listens on.")] = "localhost"
    port: Annotated[
        int,
        Field(
            ge=0,
            le=65535,
            description="The port the dev server listens on. Port 0 disables serving and hot reloading.",
        ),
    ] = 8082
    reload_path: Annotated[
        str,
        Field(pattern=r"^/\S*$", description="The path browsers connect to for reload notifications."),
    ] = "/__onepage__/reload"
    viewer_policy: Annotated[
        ViewerPolicy,
        Field(
            description="What to do when a second browser connects for reload notifications: "
            "replace the current one, or reject the newcomer.",
        ),
    ] = "replace"
    open_browser: Annotated[
        bool,
        Field(description="Open the served page in a web browser after the first successful build."),
    ] = False

    debounce: Annotated[
        int,
        Field(ge=0, description="Milliseconds the file watcher waits to group changes into one batch."),
    ] = 300
    shutdown_timeout: Annotated[
        float,
        Field(gt=0, description="Seconds to wait for an in-flight build when shutting down."),
    ] = 5

    verbose: Annotated[bool, Field(description="Print debugging output.")] = False

    @field_validator("outfile")
    @classmethod
    def outfile_is_not_a_directory(cls, outfile: Path | None) -> Path | None:
        if outfile is not None and outfile.is_dir():
            raise ValueError(f"{outfile} is a directory, not a file")
        return outfile

    @property
    def serving(self) -> bool:
        return self.dev and self.outfile is not None and self.port > 0

    @classmethod
    def from_file(cls, file: Path, **overrides: Any) -> Config:
        tags = tags_from_path(str(file))

        if "yaml" in tags:
            return cls.model_validate_yaml(file.read_text(), **overrides)
        else:
            raise NotImplementedError("Currently, only YAML files are supported.")


def find_config_file(start: Path) -> Path | None:
    for dir in (start, *start.parents):
        contents = set(dir.iterdir())
        for name in CONFIG_FILE_NAMES:
            if (path := dir / name) in contents:
                return path

        if dir / ".git" in contents:
            break

    return None
