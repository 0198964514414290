from __future__ import annotations

import socket
import threading
import time
from collections import deque
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest


class _Handler(BaseHTTPRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def _handle(self) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length).decode("utf-8") if length else ""

        path = self.path.split("?", 1)[0]

        if path == "/echo":
            self.server.requests.append(
                {"method": self.command, "headers": dict(self.headers), "body": body}
            )
            self._reply(200)
            return
        if path == "/redirect":
            self.send_response(302)
            self.send_header("Location", "/ok")
            self.send_header("Content-Length", "0")
            self.end_headers()
            return
        if path == "/slow":
            time.sleep(1.0)
            self._reply(200)
            return
        if path == "/delayed":
            self.server.enter()
            try:
                time.sleep(0.2)
            finally:
                self.server.leave()
            self._reply(200)
            return
        if path == "/flaky":
            statuses = self.server.statuses
            self._reply(statuses.popleft() if statuses else 200)
            return

        routes = {"/ok": 200, "/created": 201, "/no-content": 204, "/edge": 299,
                  "/not-modified": 304, "/error": 500, "/unavailable": 503}
        self._reply(routes.get(path, 404))

    def _reply(self, status: int) -> None:
        try:
            self.send_response(status)
            if status in (204, 304):
                self.end_headers()
                return
            payload = b"ok" if 200 <= status <= 299 else b"nope"
            self.send_header("Content-Type", "text/plain; charset=utf-8")
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)
        except (BrokenPipeError, ConnectionResetError):
            # client already gave up (timeout tests)
            pass

    do_GET = _handle  # noqa: N815
    do_POST = _handle  # noqa: N815
    do_PUT = _handle  # noqa: N815
    do_DELETE = _handle  # noqa: N815


class _Server(ThreadingHTTPServer):
    daemon_threads = True
    # room for every connection of a large cycle arriving at once
    request_queue_size = 512

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.requests = []
        self.statuses = deque()
        self._lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0

    def enter(self) -> None:
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)

    def leave(self) -> None:
        with self._lock:
            self.in_flight -= 1


@pytest.fixture(scope="session")
def local_server():
    httpd = _Server(("127.0.0.1", 0), _Handler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield httpd
    finally:
        httpd.shutdown()
        httpd.server_close()


@pytest.fixture
def server(local_server):
    local_server.requests.clear()
    local_server.statuses.clear()
    local_server.max_in_flight = 0
    return local_server


@pytest.fixture
def base_url(server) -> str:
    host, port = server.server_address[:2]
    return f"http://{host}:{port}"


@pytest.fixture
def closed_port_url() -> str:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return f"http://127.0.0.1:{port}/"


@pytest.fixture
def write_config(tmp_path):
    def _write(text: str) -> str:
        path = tmp_path / "endpoints.yaml"
        path.write_text(text, encoding="utf-8")
        return str(path)

    return _write
