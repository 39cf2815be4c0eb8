import json
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from logagent.config import AgentConfig, CollectionConfig, Config, HTTPServerConfig
from logagent.metrics import MetricsRecorder
from logagent.sinks import SinkKind


class RecordingSink:
    """In-memory sink used in place of stdout/Loki."""

    kind = SinkKind.STDOUT

    def __init__(self):
        self._lock = threading.Lock()
        self.entries = []
        self.close_calls = 0

    def send(self, entry):
        with self._lock:
            self.entries.append(entry)

    def close(self):
        with self._lock:
            self.close_calls += 1

    def messages(self):
        with self._lock:
            return [e.message for e in self.entries]


class FakeLoki:
    """Local HTTP server standing in for Loki's /ready and push endpoints."""

    def __init__(self):
        self.pushes = []
        self.headers = []
        self.statuses = []   # consumed one per push; empty means 204
        self.delay = 0.0     # seconds to stall before answering a push
        self._lock = threading.Lock()
        fake = self

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self):
                if self.path == "/ready":
                    self.send_response(200)
                    self.end_headers()
                    self.wfile.write(b"ready")
                else:
                    self.send_error(404)

            def do_POST(self):
                length = int(self.headers.get("Content-Length", 0))
                body = self.rfile.read(length)
                with fake._lock:
                    status = fake.statuses.pop(0) if fake.statuses else 204
                    if status < 300:
                        fake.pushes.append(json.loads(body))
                    fake.headers.append(dict(self.headers))
                if fake.delay:
                    time.sleep(fake.delay)
                self.send_response(status)
                self.end_headers()

            def log_message(self, format, *args):
                pass

        self._httpd = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        host, port = self._httpd.server_address[:2]
        self.base_url = f"http://{host}:{port}"
        self.url = f"{self.base_url}/loki/api/v1/push"
        self._thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)
        self._thread.start()

    def pushed_lines(self):
        with self._lock:
            return [
                value[1]
                for push in self.pushes
                for stream in push["streams"]
                for value in stream["values"]
            ]

    def request_count(self):
        with self._lock:
            return len(self.headers)

    def close(self):
        self._httpd.shutdown()
        self._httpd.server_close()


@pytest.fixture
def metrics():
    return MetricsRecorder()


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def fake_loki():
    server = FakeLoki()
    yield server
    server.close()


@pytest.fixture
def unused_port():
    """A local port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def make_config(tmp_path):
    """Build a Config tuned for fast tests, watching tmp_path/*.log by default."""

    def _make(**collection_overrides):
        collection = {
            "log_paths": (str(tmp_path / "*.log"),),
            "interval": 0.05,
            "batch_size": 10,
            "max_line_length": 1024,
            "queue_size": 100,
        }
        collection.update(collection_overrides)
        return Config(
            agent=AgentConfig(node_name="node-1", shutdown_grace=2.0),
            collection=CollectionConfig(**collection),
            http_server=HTTPServerConfig(address="127.0.0.1:0"),
        )

    return _make
