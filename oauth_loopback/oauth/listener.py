"""Local TCP listener for the OAuth callback server.

Binds a listening socket on the requested address, trying candidate ports in
order, and derives the URL the browser should use to reach it. The URL always
uses the hostname ``localhost`` regardless of the bind address.
"""

import logging
import socket
import sys
from typing import Any, Sequence

from .errors import ListenerError

logger = logging.getLogger(__name__)

# Default bind address (loopback only). Use "0.0.0.0" to bind all interfaces.
DEFAULT_BIND_ADDRESS = "127.0.0.1"

# Backlog for the listening socket
LISTEN_BACKLOG = 16


class LocalhostListener:
    """A bound, listening socket plus the localhost URL pointing at it.

    The caller owns the socket and must close it (directly or via the
    context manager) on every exit path.
    """

    def __init__(self, sock: socket.socket, use_tls: bool = False):
        self.socket = sock
        self.port: int = sock.getsockname()[1]
        self.scheme = "https" if use_tls else "http"
        self.url = f"{self.scheme}://localhost:{self.port}"

    def close(self) -> None:
        """Close the listening socket. Safe to call more than once."""
        if self.socket.fileno() != -1:
            self.socket.close()
            logger.debug(f"Listener on port {self.port} closed")

    def __enter__(self) -> "LocalhostListener":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


def _listen(address: str, port: int) -> socket.socket:
    """Bind and listen on a single address/port pair."""
    infos = socket.getaddrinfo(
        address, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
    )
    family, socktype, proto, _, sockaddr = infos[0]

    sock = socket.socket(family, socktype, proto)
    try:
        # Allow rebinding a port whose previous listener left TIME_WAIT connections.
        # Not on Windows, where SO_REUSEADDR lets two sockets share a live port.
        if sys.platform != "win32":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(sockaddr)
        sock.listen(LISTEN_BACKLOG)
    except OSError:
        sock.close()
        raise
    return sock


def bind_localhost_listener(
    address: str | None = None,
    ports: Sequence[int] | None = None,
    use_tls: bool = False,
) -> LocalhostListener:
    """Start a TCP listener for the callback server.

    If ports is None or empty, the OS assigns a free port. Otherwise the
    ports are tried in order and the first successful bind wins.

    Args:
        address: Address to bind, default 127.0.0.1
        ports: Candidate ports, tried in order
        use_tls: Whether the server will serve TLS (decides the URL scheme)

    Returns:
        LocalhostListener with the bound socket and its localhost URL

    Raises:
        ListenerError: If no candidate port could be bound. The message
            lists every attempted port and the reason it failed.
    """
    address = address or DEFAULT_BIND_ADDRESS
    candidates = list(ports) if ports else [0]

    errors: list[str] = []
    for port in candidates:
        try:
            sock = _listen(address, port)
        except OSError as e:
            errors.append(f"could not listen on {address}:{port}: {e}")
            continue

        listener = LocalhostListener(sock, use_tls=use_tls)
        logger.debug(f"Listening on {address}:{listener.port}")
        return listener

    raise ListenerError(f"no available port ({'; '.join(errors)})")
