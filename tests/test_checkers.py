import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from outboundlb.checkers import Checker, HealthCheckError, HTTPChecker, TCPChecker


def _closed_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def http_server():
    servers = []

    def start(routes):
        class Handler(BaseHTTPRequestHandler):
            def do_GET(self):
                status, headers, delay = routes.get(self.path, (404, {}, 0.0))
                if delay:
                    time.sleep(delay)
                self.send_response(status)
                for name, value in headers.items():
                    self.send_header(name, value)
                self.send_header("Content-Length", "0")
                self.end_headers()

            def log_message(self, *args):
                pass

        server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        server.daemon_threads = True
        threading.Thread(target=server.serve_forever, daemon=True).start()
        servers.append(server)
        return f"http://127.0.0.1:{server.server_port}"

    yield start
    for server in servers:
        server.shutdown()
        server.server_close()


@pytest.fixture
def tcp_listener():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(8)
    yield sock
    sock.close()


def test_checker_is_abstract():
    with pytest.raises(TypeError):
        Checker()


def test_http_success(http_server):
    base = http_server({"/": (200, {}, 0.0)})
    assert HTTPChecker(base + "/", 5.0).check("127.0.0.1") is None


def test_http_redirect_status_without_location_is_success(http_server):
    base = http_server({"/": (301, {}, 0.0)})
    assert HTTPChecker(base + "/", 5.0).check("127.0.0.1") is None


def test_http_follows_redirect_to_failure(http_server):
    base = http_server({"/old": (302, {"Location": "/broken"}, 0.0), "/broken": (500, {}, 0.0)})
    with pytest.raises(HealthCheckError, match="500"):
        HTTPChecker(base + "/old", 5.0).check("127.0.0.1")


def test_http_follows_redirect_to_success(http_server):
    base = http_server({"/old": (302, {"Location": "/ok"}, 0.0), "/ok": (200, {}, 0.0)})
    assert HTTPChecker(base + "/old", 5.0).check("127.0.0.1") is None


def test_http_server_error(http_server):
    base = http_server({"/": (500, {}, 0.0)})
    with pytest.raises(HealthCheckError, match="unexpected status code: 500"):
        HTTPChecker(base + "/", 5.0).check("127.0.0.1")


def test_http_client_error(http_server):
    base = http_server({"/": (404, {}, 0.0)})
    with pytest.raises(HealthCheckError, match="404"):
        HTTPChecker(base + "/", 5.0).check("127.0.0.1")


def test_http_connection_refused():
    checker = HTTPChecker(f"http://127.0.0.1:{_closed_port()}/health", 1.0)
    with pytest.raises(HealthCheckError, match="http request failed"):
        checker.check("127.0.0.1")


def test_http_timeout(http_server):
    base = http_server({"/": (200, {}, 0.5)})
    with pytest.raises(HealthCheckError):
        HTTPChecker(base + "/", 0.1).check("127.0.0.1")


def test_http_expired_deadline(http_server):
    base = http_server({"/": (200, {}, 0.5)})
    with pytest.raises(HealthCheckError, match="deadline"):
        HTTPChecker(base + "/", 5.0).check("127.0.0.1", timeout=0)


def test_http_invalid_url():
    with pytest.raises(HealthCheckError, match="failed to create request"):
        HTTPChecker("://invalid-url", 1.0).check("127.0.0.1")


def test_tcp_success(tcp_listener):
    host, port = tcp_listener.getsockname()
    assert TCPChecker(f"{host}:{port}", 5.0).check("127.0.0.1") is None


def test_tcp_failure():
    with pytest.raises(HealthCheckError, match="tcp connect failed"):
        TCPChecker(f"127.0.0.1:{_closed_port()}", 1.0).check("127.0.0.1")


def test_tcp_timeout_is_quick():
    checker = TCPChecker("10.255.255.1:80", 0.1)
    start = time.monotonic()
    with pytest.raises(HealthCheckError):
        checker.check("127.0.0.1", timeout=0.2)
    assert time.monotonic() - start < 0.5


def test_tcp_expired_deadline(tcp_listener):
    host, port = tcp_listener.getsockname()
    with pytest.raises(HealthCheckError, match="deadline"):
        TCPChecker(f"{host}:{port}", 5.0).check("127.0.0.1", timeout=0)


@pytest.mark.parametrize("target", ["no-port", "127.0.0.1:http", "[::1]"])
def test_tcp_invalid_target(target):
    with pytest.raises(HealthCheckError, match="invalid target"):
        TCPChecker(target, 1.0).check("127.0.0.1")