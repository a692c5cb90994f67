"""Ephemeral HTTP server session for OAuth redirects.

This module serves the local callback endpoint over asyncio streams. It:
- Parses one HTTP/1.1 request per connection and answers with Connection: close
- Passes each request to a (possibly middleware-wrapped) request handler
- Writes the response before publishing any authorization response it carries
- Publishes authorization responses on a channel closed exactly once, after
  the serve loop has stopped
- Shuts down gracefully: idle connections are dropped, in-flight handlers
  are allowed to finish
"""

import asyncio
import logging
import ssl
from dataclasses import dataclass, field, replace
from http import HTTPStatus
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qs, unquote, urlsplit

from .errors import AuthorizationError, LocalServerError
from .listener import LocalhostListener

logger = logging.getLogger(__name__)

# Upper bound for a request body (the callback never needs one)
MAX_BODY_BYTES = 64 * 1024

# Maximum number of header lines accepted per request
MAX_HEADERS = 100

# How long shutdown waits for in-flight handlers before cancelling them
SHUTDOWN_GRACE_SECONDS = 5.0


@dataclass(frozen=True)
class HttpRequest:
    """A parsed HTTP request as seen by the callback handler."""

    method: str
    target: str
    path: str
    query: dict[str, list[str]] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def param(self, name: str) -> str:
        """First value of a query parameter, or "" if absent."""
        values = self.query.get(name)
        return values[0] if values else ""

    def params(self) -> dict[str, str]:
        """All query parameters, first value of each."""
        return {name: values[0] for name, values in self.query.items() if values}


@dataclass(frozen=True)
class AuthorizationResponse:
    """Terminal outcome of one authorization round-trip.

    Exactly one of (code or token) and error is set.

    Attributes:
        code: Authorization code (authorization code grant)
        token: Token parsed from the redirect fragment (implicit grant)
        nonce: Nonce sent with the implicit request, for id_token validation
        error: Why the response could not be accepted
    """

    code: str | None = None
    token: Any = None
    nonce: str | None = None
    error: AuthorizationError | None = None

    def is_success(self) -> bool:
        """Check if the response carries a code or token and no error."""
        return self.error is None and (self.code is not None or self.token is not None)


@dataclass
class HttpResponse:
    """Response written back to the browser.

    ``authorization`` is the terminal outcome, if this request produced one.
    It is published on the session's channel only after the response has
    been written.
    """

    status: HTTPStatus
    body: str = ""
    content_type: str = "text/plain; charset=utf-8"
    headers: dict[str, str] = field(default_factory=dict)
    authorization: AuthorizationResponse | None = None


RequestHandler = Callable[[HttpRequest], Awaitable[HttpResponse]]
Middleware = Callable[[RequestHandler], RequestHandler]


def identity_middleware(handler: RequestHandler) -> RequestHandler:
    """Middleware that returns the handler unchanged."""
    return handler


def redirect(location: str, status: HTTPStatus = HTTPStatus.FOUND) -> HttpResponse:
    """Build a redirect response."""
    return HttpResponse(status=status, headers={"Location": location})


def error_response(
    message: str,
    status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR,
    authorization: AuthorizationResponse | None = None,
) -> HttpResponse:
    """Build a plain text error response."""
    return HttpResponse(status=status, body=message + "\n", authorization=authorization)


def not_found() -> HttpResponse:
    return error_response("404 page not found", HTTPStatus.NOT_FOUND)


def parse_request_line(line: str) -> tuple[str, str, str, dict[str, list[str]]]:
    """Split a request line into (method, target, path, query).

    Raises:
        ValueError: If the line is not a valid HTTP request line
    """
    parts = line.strip().split(" ")
    if len(parts) != 3 or not parts[2].startswith("HTTP/"):
        raise ValueError(f"malformed request line: {line.strip()!r}")

    method, target = parts[0], parts[1]
    url = urlsplit(target)
    query = parse_qs(url.query, keep_blank_values=True)
    return method, target, unquote(url.path) or "/", query


def encode_response(response: HttpResponse) -> bytes:
    """Serialize a response with the hardening headers applied to every reply."""
    body = response.body.encode("utf-8")
    lines = [
        f"HTTP/1.1 {response.status.value} {response.status.phrase}",
        f"Content-Type: {response.content_type}",
        f"Content-Length: {len(body)}",
        "X-Content-Type-Options: nosniff",
        "X-Frame-Options: DENY",
        "Cache-Control: no-store",
    ]
    lines.extend(f"{name}: {value}" for name, value in response.headers.items())
    lines.append("Connection: close")
    head = "\r\n".join(lines) + "\r\n\r\n"
    return head.encode("utf-8") + body


def create_ssl_context(cert_file: str, key_file: str) -> ssl.SSLContext:
    """Create a server-side TLS context from PEM certificate and key files.

    Raises:
        LocalServerError: If the certificate or key cannot be loaded
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    try:
        context.load_cert_chain(certfile=cert_file, keyfile=key_file)
    except (OSError, ssl.SSLError) as e:
        raise LocalServerError(f"could not load the TLS certificate: {e}") from e
    return context


class CallbackServer:
    """One serving session of the local callback server.

    The session owns the response channel: the handler side is the only
    producer, and the channel is closed (a ``None`` sentinel is queued)
    exactly once, by ``serve()``, after the server has stopped.

    Usage:
        server = CallbackServer(listener, handler)
        await server.start()
        serve_task = asyncio.create_task(server.serve())
        response = await server.responses.get()
        server.shutdown()
        await serve_task
    """

    def __init__(
        self,
        listener: LocalhostListener,
        handler: RequestHandler,
        ssl_context: ssl.SSLContext | None = None,
    ):
        self.listener = listener
        self.responses: asyncio.Queue[AuthorizationResponse | None] = asyncio.Queue()

        self._handler = handler
        self._ssl_context = ssl_context
        self._server: asyncio.Server | None = None
        self._shutdown_requested = asyncio.Event()
        self._channel_closed = False
        self._idle: set[asyncio.Task[Any]] = set()
        self._active: set[asyncio.Task[Any]] = set()

    async def start(self) -> None:
        """Start accepting connections on the listener socket.

        Raises:
            LocalServerError: If the server cannot be started
        """
        try:
            self._server = await asyncio.start_server(
                self._handle_connection,
                sock=self.listener.socket,
                ssl=self._ssl_context,
            )
        except OSError as e:
            raise LocalServerError(f"could not start a local server: {e}") from e

        logger.debug(f"Callback server started on {self.listener.url}")

    def shutdown(self) -> None:
        """Stop accepting connections and let serve() wind down.

        Safe to call more than once and from any task on the loop.
        """
        if self._server is not None:
            self._server.close()
        self._shutdown_requested.set()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown_requested.is_set()

    async def serve(self) -> None:
        """Serve until shutdown() is called, then drain and close the channel.

        In-flight handlers are given SHUTDOWN_GRACE_SECONDS to finish;
        connections that have not sent a request yet are dropped at once.
        If serve() itself is cancelled, every open connection is aborted
        before the cancellation propagates.
        """
        try:
            await self._shutdown_requested.wait()
            await self._drain()
        finally:
            if self._server is not None:
                self._server.close()
            try:
                await self._abort_connections()
            finally:
                self._close_channel()
                logger.debug("Callback server stopped")

    async def _abort_connections(self) -> None:
        tasks = self._idle | self._active
        if not tasks:
            return
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _drain(self) -> None:
        for task in list(self._idle):
            task.cancel()

        pending = self._idle | self._active
        if not pending:
            return

        _, still_running = await asyncio.wait(pending, timeout=SHUTDOWN_GRACE_SECONDS)
        for task in still_running:
            logger.warning("Callback handler did not finish in time, cancelling")
            task.cancel()
        if still_running:
            await asyncio.wait(still_running)

    def _close_channel(self) -> None:
        if not self._channel_closed:
            self._channel_closed = True
            self.responses.put_nowait(None)

    def _publish(self, response: AuthorizationResponse) -> None:
        if self._channel_closed:
            logger.debug("Dropping authorization response received after shutdown")
            return
        self.responses.put_nowait(response)

    async def _read_request(self, reader: asyncio.StreamReader) -> HttpRequest | None:
        """Read one request. Returns None if the peer closed without sending one."""
        request_line = await reader.readline()
        if not request_line:
            return None

        method, target, path, query = parse_request_line(
            request_line.decode("utf-8", errors="replace")
        )

        headers: dict[str, str] = {}
        for _ in range(MAX_HEADERS + 1):
            header_line = await reader.readline()
            if header_line in (b"\r\n", b"\n", b""):
                break
            name, _, value = header_line.decode("latin-1").partition(":")
            headers[name.strip().lower()] = value.strip()
        else:
            raise ValueError("too many request headers")

        body = b""
        length = int(headers.get("content-length", "0") or "0")
        if length > MAX_BODY_BYTES:
            raise ValueError(f"request body too large ({length} bytes)")
        if length > 0:
            body = await reader.readexactly(length)

        return HttpRequest(
            method=method,
            target=target,
            path=path,
            query=query,
            headers=headers,
            body=body,
        )

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle incoming HTTP connection."""
        task = asyncio.current_task()
        if task is None:
            raise LocalServerError("connection handler is not running in a task")
        self._idle.add(task)

        try:
            try:
                request = await self._read_request(reader)
            except ConnectionError as e:
                logger.debug(f"Connection dropped before a request was read: {e}")
                return
            except (ValueError, asyncio.IncompleteReadError) as e:
                logger.debug(f"Rejecting malformed request: {e}")
                self._idle.discard(task)
                try:
                    await self._write(
                        writer, error_response("400 bad request", HTTPStatus.BAD_REQUEST)
                    )
                except (ConnectionError, OSError):
                    pass
                return

            self._idle.discard(task)
            if request is None:
                return
            self._active.add(task)

            logger.debug(f"{request.method} {request.path}")
            try:
                response = await self._handler(request)
            except Exception as e:
                logger.warning(f"Error handling callback request: {e}")
                response = error_response("server error")

            try:
                await self._write(writer, response)
            except (ConnectionError, OSError) as e:
                logger.warning(f"Could not write callback response: {e}")
                if response.authorization is not None and response.authorization.error is None:
                    response = replace(
                        response,
                        authorization=AuthorizationResponse(
                            error=AuthorizationError(f"error while writing response body: {e}")
                        ),
                    )

            if response.authorization is not None:
                self._publish(response.authorization)

        finally:
            self._idle.discard(task)
            self._active.discard(task)
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, OSError, ssl.SSLError):
                pass

    async def _write(self, writer: asyncio.StreamWriter, response: HttpResponse) -> None:
        writer.write(encode_response(response))
        await writer.drain()
