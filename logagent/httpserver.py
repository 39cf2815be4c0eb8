"""Liveness, readiness, and Prometheus metrics endpoints."""

import logging
import threading

from flask import Flask, Response, jsonify
from werkzeug.serving import WSGIRequestHandler, make_server

from logagent.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class BindError(Exception):
    """Raised when the health server cannot listen on its address."""


def create_health_app(metrics: MetricsRecorder, is_ready=None) -> Flask:
    """Build the Flask app. *is_ready* returns (ready, state_name)."""
    app = Flask(__name__)

    @app.route("/healthz")
    def healthz():
        return jsonify(status="ok")

    @app.route("/status")
    def status():
        ready, state = is_ready() if is_ready else (True, "running")
        if ready:
            return jsonify(status="ready", state=state)
        return jsonify(status="not ready", state=state), 503

    @app.route("/metrics")
    def prometheus_metrics():
        return Response(metrics.render_prometheus(), content_type=PROMETHEUS_CONTENT_TYPE)

    return app


class _QuietRequestHandler(WSGIRequestHandler):
    def log_request(self, code="-", size="-"):
        logger.debug("%s %s %s", self.command, self.path, code)


class HealthServer:
    """Serves the health app from a worker thread.

    ``bind`` opens the listening socket (failing fast on a busy port),
    ``serve`` blocks until ``shutdown`` is called.
    """

    def __init__(self, app: Flask, host: str, port: int,
                 read_timeout: float = 5.0, write_timeout: float = 10.0):
        self._app = app
        self._host = host
        self._port = port
        self._timeout = max(read_timeout, write_timeout)
        self._server = None
        self._lock = threading.Lock()
        self._serving = False
        self._closed = False

    @property
    def address(self) -> tuple[str, int]:
        if self._server is not None:
            return self._server.server_address[:2]
        return self._host, self._port

    def bind(self):
        handler = type("HealthRequestHandler", (_QuietRequestHandler,), {"timeout": self._timeout})
        try:
            self._server = make_server(self._host, self._port, self._app,
                                       threaded=True, request_handler=handler)
        except (OSError, SystemExit) as e:
            # werkzeug exits instead of raising when the port is taken
            raise BindError(
                f"failed to bind healthcheck HTTP server on {self._host}:{self._port}: {e}"
            ) from e
        logger.info("Healthcheck HTTP server bound on %s:%d", *self.address)

    def serve(self):
        server = self._server
        if server is None:
            raise RuntimeError("bind() must be called before serve()")
        with self._lock:
            if self._closed:
                return
            self._serving = True
        server.serve_forever()

    def shutdown(self):
        """Stop serving and close the socket. Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            serving = self._serving
        if self._server is None:
            return
        if serving:
            self._server.shutdown()
        self._server.server_close()
        logger.info("Healthcheck HTTP server stopped")
