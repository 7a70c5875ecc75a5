from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from jinja2 import Environment, StrictUndefined, Template, TemplateError

CSS_EXTENSIONS = frozenset({".css"})
JS_EXTENSIONS = frozenset({".js"})
CONTENT_EXTENSIONS = CSS_EXTENSIONS | JS_EXTENSIONS

# Sources are decoded and re-encoded with surrogateescape so that
# arbitrary bytes pass through the template untouched.
ENCODING = "utf-8"
ERRORS = "surrogateescape"

DEFAULT_TEMPLATE = """\
<!doctype html>
<html>
  <head>
    <meta charset="utf-8">
    {{ css }}
  </head>
  <body></body>
  {{ js }}
</html>"""

RELOAD_SCRIPT = """
(function () {
    window.addEventListener("load", function () {
        var socket = new WebSocket("{{ url }}");
        socket.addEventListener("message", function (event) {
            if (event.data === "{{ message }}") {
                console.log("File change detected, reloading page.");
                window.location.reload();
            }
        });
    });
})();"""

RELOAD_MESSAGE = "reload"

template_environment = Environment(undefined=StrictUndefined, keep_trailing_newline=True)


class BuildError(Exception):
    pass


@dataclass(frozen=True)
class Sources:
    css: str
    js: str


def walk(directory: Path) -> Iterator[Path]:
    """
    Yield every file under the directory, depth first, in lexical order of names.
    Symlinked directories are not followed.
    """
    for entry in sorted(directory.iterdir(), key=lambda p: p.name):
        if entry.is_dir() and not entry.is_symlink():
            yield from walk(entry)
        else:
            yield entry


def gather_sources(root: Path) -> Sources:
    css: list[str] = []
    js: list[str] = []

    try:
        for path in walk(root):
            ext = path.suffix.lower()
            if ext in CSS_EXTENSIONS:
                parts = css
            elif ext in JS_EXTENSIONS:
                parts = js
            else:
                continue

            try:
                parts.append(path.read_bytes().decode(ENCODING, ERRORS))
            except FileNotFoundError:
                # removed between listing and reading
                continue
    except OSError as e:
        raise BuildError(f"Failed to read sources from {root} -- {e}") from e

    return Sources(css="".join(css), js="".join(js))


def compile_template(text: str, name: str = "<default>") -> Template:
    try:
        return template_environment.from_string(text)
    except TemplateError as e:
        raise BuildError(f"Failed to parse template {name} -- {e}") from e


def load_template(path: Path) -> Template:
    try:
        text = path.read_text(encoding=ENCODING)
    except OSError as e:
        raise BuildError(f"Could not read template file {path} -- {e}") from e

    return compile_template(text, name=str(path))


def reload_script(url: str) -> str:
    return template_environment.from_string(RELOAD_SCRIPT).render(url=url, message=RELOAD_MESSAGE)


def render_page(template: Template, sources: Sources, reload_url: str | None = None) -> bytes:
    js = sources.js
    if reload_url is not None:
        js += reload_script(reload_url)

    try:
        page = template.render(
            css=f'<style type="text/css">{sources.css}</style>',
            js=f'<script type="text/javascript">{js}</script>',
        )
    except TemplateError as e:
        raise BuildError(f"Failed to render template -- {e}") from e
    except Exception as e:
        # expressions in the template can raise anything, e.g. {{ 1 / 0 }}
        raise BuildError(f"Failed to render template -- {type(e).__name__}: {e}") from e

    return page.encode(ENCODING, ERRORS)
