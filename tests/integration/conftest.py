"""Integration test configuration.

Runs a real HTTP/1.1 server on an ephemeral local port so requests travel
through the socket-level pooled transport instead of httpx.MockTransport.

Routes:
- POST /sparql: echoes nothing, answers ``Hello World!``
- GET /hello: answers ``Hello World!``
- GET /keepalive: answers with ``Keep-Alive: timeout=7``
- GET /redirect: 302 to /hello
- GET /status/<code>: answers ``<code>`` with a fixed error body
- GET /slow: waits one second before answering
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest


@dataclass
class SeenRequest:
    method: str
    path: str
    # Lowercased names
    headers: dict[str, str]
    body: bytes
    client_port: int


@dataclass
class LocalServer:
    base_url: str
    port: int
    requests: list[SeenRequest] = field(default_factory=list)

    @property
    def last(self) -> SeenRequest:
        assert self.requests, "no request reached the server"
        return self.requests[-1]


class _Handler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    server: _Server

    def log_message(self, format, *args):  # noqa: A002
        pass

    def _record(self) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else b""
        self.server.state.requests.append(
            SeenRequest(
                method=self.command,
                path=self.path,
                headers={k.lower(): v for k, v in self.headers.items()},
                body=body,
                client_port=self.client_address[1],
            )
        )

    def _reply(self, status: int, body: bytes, headers: dict[str, str] | None = None) -> None:
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=UTF-8")
        self.send_header("Content-Length", str(len(body)))
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(body)

    def do_POST(self) -> None:
        self._record()
        self._reply(200, b"Hello World!")

    def do_GET(self) -> None:
        self._record()
        if self.path == "/keepalive":
            self._reply(200, b"Hello World!", {"Keep-Alive": "timeout=7, max=100"})
        elif self.path == "/redirect":
            self._reply(302, b"", {"Location": "/hello"})
        elif self.path.startswith("/status/"):
            self._reply(int(self.path.rsplit("/", 1)[1]), b"  server exploded\n")
        elif self.path == "/slow":
            time.sleep(1.0)
            self._reply(200, b"late")
        else:
            self._reply(200, b"Hello World!")


class _Server(ThreadingHTTPServer):
    daemon_threads = True
    state: LocalServer


@pytest.fixture
def local_server():
    """Real HTTP server on 127.0.0.1 with an ephemeral port."""
    server = _Server(("127.0.0.1", 0), _Handler)
    port = server.server_address[1]
    server.state = LocalServer(base_url=f"http://127.0.0.1:{port}", port=port)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server.state
    server.shutdown()
    server.server_close()
    thread.join(timeout=5)
