from __future__ import annotations

from asyncio import Queue
from http import HTTPStatus
from pathlib import Path

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed
from websockets.frames import CloseCode
from websockets.http11 import Request, Response

from onepage.config import ViewerPolicy
from onepage.messages import (
    Debug,
    Message,
    Problem,
    ReloadSent,
    ViewerConnected,
    ViewerDisconnected,
    ViewerMessage,
    ViewerRejected,
)
from onepage.sources import RELOAD_MESSAGE


def describe(connection: ServerConnection) -> str:
    match connection.remote_address:
        case (host, port, *_):
            return f"{host}:{port}"
        case address:
            return str(address)


class ReloadNotifier:
    """
    Serves the artifact over HTTP and holds at most one WebSocket connection to a viewer,
    which is told to reload after every successful build.

    The viewer connection is only ever replaced through install(),
    which closes the previous connection as part of installing the new one.
    """

    def __init__(
        self,
        artifact: Path,
        events: Queue[Message],
        host: str = "localhost",
        port: int = 8082,
        reload_path: str = "/__onepage__/reload",
        viewer_policy: ViewerPolicy = "replace",
    ):
        self.artifact = artifact
        self.events = events
        self.host = host
        self.port = port
        self.reload_path = reload_path
        self.viewer_policy = viewer_policy

        self.server: Server | None = None
        self.connection: ServerConnection | None = None

    async def start(self) -> None:
        self.server = await serve(
            self.handle_connection,
            self.host,
            self.port,
            process_request=self.process_request,
        )

        if self.port == 0:
            self.port = next(iter(self.server.sockets)).getsockname()[1]

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}/"

    @property
    def reload_url(self) -> str:
        return f"ws://{self.host}:{self.port}{self.reload_path}"

    @property
    def has_viewer(self) -> bool:
        return self.connection is not None

    def process_request(self, connection: ServerConnection, request: Request) -> Response | None:
        path = request.path.split("?", 1)[0]
        if path == self.reload_path:
            return None

        return self.serve_artifact()

    def serve_artifact(self) -> Response:
        try:
            body = self.artifact.read_bytes()
        except FileNotFoundError:
            status = HTTPStatus.NOT_FOUND
            body = f"{self.artifact.name} has not been built yet.\n".encode()
            content_type = "text/plain; charset=utf-8"
        else:
            status = HTTPStatus.OK
            content_type = "text/html; charset=utf-8"

        headers = Headers(
            [
                ("Content-Type", content_type),
                ("Content-Length", str(len(body))),
                ("Cache-Control", "no-store"),
                ("Connection", "close"),
            ]
        )

        return Response(status.value, status.phrase, headers, body)

    async def handle_connection(self, connection: ServerConnection) -> None:
        remote = describe(connection)

        if not await self.install(connection):
            return

        try:
            # Inbound messages carry no meaning; reading only detects the viewer going away.
            async for message in connection:
                text = message if isinstance(message, str) else f"<{len(message)} bytes>"
                await self.events.put(ViewerMessage(remote=remote, text=text))
        except ConnectionClosed as e:
            reason = str(e)
        else:
            reason = "closed by viewer"
        finally:
            replaced = self.connection is not connection
            if not replaced:
                self.connection = None

        if not replaced:
            await self.events.put(ViewerDisconnected(remote=remote, reason=reason))

    async def install(self, connection: ServerConnection) -> bool:
        remote = describe(connection)
        previous = self.connection

        if previous is not None and self.viewer_policy == "reject":
            await self.events.put(ViewerRejected(remote=remote))
            await connection.close(CloseCode.TRY_AGAIN_LATER, "another viewer is already connected")
            return False

        self.connection = connection

        if previous is not None:
            await previous.close(CloseCode.GOING_AWAY, "replaced by a new viewer")

        await self.events.put(
            ViewerConnected(remote=remote, replaced=describe(previous) if previous is not None else None)
        )

        return True

    async def notify_reload(self, generation: int) -> bool:
        connection = self.connection
        if connection is None:
            return False

        remote = describe(connection)

        try:
            await connection.send(RELOAD_MESSAGE)
        except ConnectionClosed as e:
            if self.connection is connection:
                self.connection = None
            await self.events.put(
                Problem(text=f"Failed to send {RELOAD_MESSAGE!r} to viewer {remote}, dropping it -- {e}")
            )
            return False

        await self.events.put(ReloadSent(remote=remote, generation=generation))
        return True

    async def close(self) -> None:
        connection, self.connection = self.connection, None
        if connection is not None:
            await connection.close(CloseCode.GOING_AWAY, "shutting down")
            await self.events.put(Debug(text=f"Closed viewer connection {describe(connection)}"))

        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
