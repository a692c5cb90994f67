"""Tests for the local callback HTTP server."""

import asyncio
from http import HTTPStatus

import pytest

from oauth_loopback.oauth.errors import AuthorizationError, LocalServerError
from oauth_loopback.oauth.listener import bind_localhost_listener
from oauth_loopback.oauth.server import (
    AuthorizationResponse,
    CallbackServer,
    HttpRequest,
    HttpResponse,
    create_ssl_context,
    encode_response,
    not_found,
    parse_request_line,
)


async def _send(port: int, raw: bytes) -> bytes:
    """Send a raw request and read the whole response."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(raw)
    await writer.drain()
    response = await reader.read()
    writer.close()
    await writer.wait_closed()
    return response


async def _get(port: int, target: str) -> bytes:
    return await _send(port, f"GET {target} HTTP/1.1\r\nHost: localhost\r\n\r\n".encode())


async def echo_handler(request: HttpRequest) -> HttpResponse:
    """Terminal on /done, 404 elsewhere."""
    if request.path == "/done":
        return HttpResponse(
            status=HTTPStatus.OK,
            body="done",
            authorization=AuthorizationResponse(code=request.param("code")),
        )
    if request.path == "/boom":
        raise RuntimeError("handler exploded")
    return not_found()


class TestParseRequestLine:
    """Tests for parse_request_line function."""

    def test_parses_path_and_query(self) -> None:
        """Test splitting a request line into its parts."""
        method, target, path, query = parse_request_line(
            "GET /callback?code=abc&state=x%20y HTTP/1.1\r\n"
        )
        assert method == "GET"
        assert target == "/callback?code=abc&state=x%20y"
        assert path == "/callback"
        assert query == {"code": ["abc"], "state": ["x y"]}

    def test_keeps_blank_values(self) -> None:
        """Test that empty parameters are kept."""
        _, _, _, query = parse_request_line("GET /?code=&state=s HTTP/1.1")
        assert query["code"] == [""]

    @pytest.mark.parametrize("line", ["", "GET /", "GET / FTP/1.0", "GET / HTTP/1.1 extra"])
    def test_malformed_raises(self, line: str) -> None:
        """Test that malformed request lines raise ValueError."""
        with pytest.raises(ValueError, match="malformed request line"):
            parse_request_line(line)


class TestEncodeResponse:
    """Tests for response serialization."""

    def test_security_headers(self) -> None:
        """Test that hardening headers are on every response."""
        raw = encode_response(not_found()).decode()

        assert raw.startswith("HTTP/1.1 404 Not Found\r\n")
        assert "X-Content-Type-Options: nosniff" in raw
        assert "X-Frame-Options: DENY" in raw
        assert "Cache-Control: no-store" in raw
        assert "Connection: close" in raw
        assert raw.endswith("\r\n\r\n404 page not found\n")

    def test_content_length_counts_bytes(self) -> None:
        """Test Content-Length for non-ASCII bodies."""
        raw = encode_response(HttpResponse(status=HTTPStatus.OK, body="é"))
        assert b"Content-Length: 2\r\n" in raw


class TestCreateSslContext:
    """Tests for TLS context creation."""

    def test_missing_files_raise(self, tmp_path) -> None:
        """Test that an unreadable certificate is reported as LocalServerError."""
        with pytest.raises(LocalServerError, match="could not load the TLS certificate"):
            create_ssl_context(str(tmp_path / "cert.pem"), str(tmp_path / "key.pem"))


class TestCallbackServer:
    """Tests for CallbackServer sessions."""

    @pytest.mark.asyncio
    async def test_publishes_terminal_response_after_write(self) -> None:
        """Test that the browser gets the body and the channel gets the response."""
        with bind_localhost_listener() as listener:
            server = CallbackServer(listener, echo_handler)
            await server.start()
            serve_task = asyncio.create_task(server.serve())

            raw = await _get(listener.port, "/done?code=abc")
            response = await asyncio.wait_for(server.responses.get(), 5)

            assert raw.startswith(b"HTTP/1.1 200 OK")
            assert raw.endswith(b"done")
            assert response == AuthorizationResponse(code="abc")

            server.shutdown()
            await asyncio.wait_for(serve_task, 5)

    @pytest.mark.asyncio
    async def test_non_terminal_requests_publish_nothing(self) -> None:
        """Test that a 404 leaves the channel empty."""
        with bind_localhost_listener() as listener:
            server = CallbackServer(listener, echo_handler)
            await server.start()
            serve_task = asyncio.create_task(server.serve())

            raw = await _get(listener.port, "/favicon.ico")

            assert raw.startswith(b"HTTP/1.1 404")
            assert server.responses.empty()

            server.shutdown()
            await asyncio.wait_for(serve_task, 5)

    @pytest.mark.asyncio
    async def test_channel_closed_exactly_once(self) -> None:
        """Test that serve() queues a single close sentinel on shutdown."""
        with bind_localhost_listener() as listener:
            server = CallbackServer(listener, echo_handler)
            await server.start()
            serve_task = asyncio.create_task(server.serve())

            server.shutdown()
            server.shutdown()
            await asyncio.wait_for(serve_task, 5)

            assert server.is_shutting_down
            assert await server.responses.get() is None
            assert server.responses.empty()

    @pytest.mark.asyncio
    async def test_cancelled_serve_still_closes_channel(self) -> None:
        """Test that cancelling serve() closes the channel too."""
        with bind_localhost_listener() as listener:
            server = CallbackServer(listener, echo_handler)
            await server.start()
            serve_task = asyncio.create_task(server.serve())
            await asyncio.sleep(0)

            serve_task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await serve_task

            assert await server.responses.get() is None

    @pytest.mark.asyncio
    async def test_handler_exception_returns_500(self) -> None:
        """Test that handler errors are answered without publishing."""
        with bind_localhost_listener() as listener:
            server = CallbackServer(listener, echo_handler)
            await server.start()
            serve_task = asyncio.create_task(server.serve())

            raw = await _get(listener.port, "/boom")

            assert raw.startswith(b"HTTP/1.1 500")
            assert b"handler exploded" not in raw
            assert server.responses.empty()

            server.shutdown()
            await asyncio.wait_for(serve_task, 5)

    @pytest.mark.asyncio
    async def test_malformed_request_returns_400(self) -> None:
        """Test that garbage on the wire gets a 400."""
        with bind_localhost_listener() as listener:
            server = CallbackServer(listener, echo_handler)
            await server.start()
            serve_task = asyncio.create_task(server.serve())

            raw = await _send(listener.port, b"NONSENSE\r\n\r\n")

            assert raw.startswith(b"HTTP/1.1 400")
            assert server.responses.empty()

            server.shutdown()
            await asyncio.wait_for(serve_task, 5)

    @pytest.mark.asyncio
    async def test_idle_connection_does_not_block_shutdown(self) -> None:
        """Test that a connection which never sends a request is dropped on shutdown."""
        with bind_localhost_listener() as listener:
            server = CallbackServer(listener, echo_handler)
            await server.start()
            serve_task = asyncio.create_task(server.serve())

            _, idle_writer = await asyncio.open_connection("127.0.0.1", listener.port)
            await asyncio.sleep(0.1)

            server.shutdown()
            await asyncio.wait_for(serve_task, 2)

            idle_writer.close()

    @pytest.mark.asyncio
    async def test_in_flight_handler_finishes_before_close(self) -> None:
        """Test that shutdown waits for a handler that is already running."""
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_handler(request: HttpRequest) -> HttpResponse:
            started.set()
            await release.wait()
            return HttpResponse(
                status=HTTPStatus.OK,
                authorization=AuthorizationResponse(code="late"),
            )

        with bind_localhost_listener() as listener:
            server = CallbackServer(listener, slow_handler)
            await server.start()
            serve_task = asyncio.create_task(server.serve())

            request_task = asyncio.create_task(_get(listener.port, "/"))
            await asyncio.wait_for(started.wait(), 5)

            server.shutdown()
            await asyncio.sleep(0.05)
            assert not serve_task.done()

            release.set()
            raw = await asyncio.wait_for(request_task, 5)
            await asyncio.wait_for(serve_task, 5)

            assert raw.startswith(b"HTTP/1.1 200")
            assert await server.responses.get() == AuthorizationResponse(code="late")
            assert await server.responses.get() is None

    @pytest.mark.asyncio
    async def test_write_failure_publishes_error(self, monkeypatch) -> None:
        """Test that a code whose page could not be delivered becomes an error."""
        with bind_localhost_listener() as listener:
            server = CallbackServer(listener, echo_handler)

            async def broken_write(writer, response):
                raise ConnectionResetError("peer went away")

            monkeypatch.setattr(server, "_write", broken_write)
            await server.start()
            serve_task = asyncio.create_task(server.serve())

            await _get(listener.port, "/done?code=abc")
            response = await asyncio.wait_for(server.responses.get(), 5)

            assert response.code is None
            assert isinstance(response.error, AuthorizationError)
            assert str(response.error) == "error while writing response body: peer went away"

            server.shutdown()
            await asyncio.wait_for(serve_task, 5)

    @pytest.mark.asyncio
    async def test_cancelled_serve_closes_open_connections(self) -> None:
        """Test that cancelling serve() drops connections instead of serving them later."""
        with bind_localhost_listener() as listener:
            server = CallbackServer(listener, echo_handler)
            await server.start()
            serve_task = asyncio.create_task(server.serve())

            reader, writer = await asyncio.open_connection("127.0.0.1", listener.port)
            await asyncio.sleep(0.1)

            serve_task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await serve_task

            assert await asyncio.wait_for(reader.read(), 2) == b""
            assert server.responses.get_nowait() is None
            writer.close()
