"""Sinks: where the dispatcher delivers entries (stdout or Loki)."""

import enum
import logging
import sys
from datetime import datetime, timedelta, timezone

from logagent.config import Config
from logagent.loki_client import LokiClient, LokiClientError
from logagent.models import TRUNCATION_MARKER, Entry

logger = logging.getLogger(__name__)

APP_NAME_LABEL = "logging-agent"
TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class SinkInitError(Exception):
    """Raised when a sink cannot be constructed."""


class DeliveryError(Exception):
    """Raised when a sink rejects a single entry."""


class SinkKind(enum.Enum):
    STDOUT = "stdout"
    LOKI = "loki"


def format_entry(entry: Entry) -> str:
    """Render an entry as one deterministic text line (no trailing newline)."""
    message = entry.message + TRUNCATION_MARKER if entry.truncated else entry.message
    return "[{}] [{}] [{}] {}: {}".format(
        entry.timestamp.strftime(TIME_FORMAT),
        entry.level,
        entry.node_name,
        entry.source,
        message,
    )


class StdoutSink:
    kind = SinkKind.STDOUT

    def __init__(self, stream=None):
        self._stream = stream or sys.stdout

    def send(self, entry: Entry):
        # Write errors propagate: a broken stdout leaves nothing to log to.
        self._stream.write(format_entry(entry) + "\n")
        self._stream.flush()

    def close(self):
        self._stream.flush()


class LokiSink:
    """Maps entries to Loki labels and hands them to the push client."""

    kind = SinkKind.LOKI

    def __init__(self, client: LokiClient, static_labels: dict[str, str] | None = None,
                 send_timeout: float = 5.0):
        self._client = client
        self._static_labels = dict(static_labels or {})
        self._send_timeout = send_timeout

    def labels_for(self, entry: Entry) -> dict[str, str]:
        labels = dict(self._static_labels)
        labels.update({
            "app": APP_NAME_LABEL,
            "node": entry.node_name,
            "source": entry.source,
            "level": entry.level,
        })
        return labels

    def send(self, entry: Entry):
        timestamp_ns = (entry.timestamp - _EPOCH) // timedelta(microseconds=1) * 1000
        if not self._client.push(self.labels_for(entry), timestamp_ns, entry.message,
                                 timeout=self._send_timeout):
            raise DeliveryError(
                f"Loki client buffer full for {self._send_timeout:.1f}s, entry from {entry.source} dropped"
            )

    def close(self):
        self._client.stop()


def build_sink(config: Config):
    """Construct the sink selected by the configuration. Raises SinkInitError."""
    kind = SinkKind(config.sink_type)
    if kind is SinkKind.STDOUT:
        logger.info("Using stdout sink")
        return StdoutSink()

    loki = config.loki
    try:
        client = LokiClient(
            loki.url,
            tenant_id=loki.tenant_id,
            username=loki.username,
            password=loki.password,
            batch_size=loki.batch_size,
            batch_wait=loki.batch_wait,
            timeout=loki.timeout,
            max_retries=loki.max_retries,
            min_backoff=loki.min_backoff,
            max_backoff=loki.max_backoff,
            buffer_size=loki.buffer_size,
            tls_verify=loki.tls_verify,
            ca_file=loki.ca_file,
            probe_on_start=loki.probe_on_start,
        )
    except LokiClientError as e:
        raise SinkInitError(f"init Loki client: {e}") from e

    static_labels = dict(loki.external_labels)
    if config.agent.pod_name:
        static_labels["pod"] = config.agent.pod_name
    if config.agent.namespace:
        static_labels["namespace"] = config.agent.namespace
    logger.info("Using Loki sink: %s", loki.url)
    return LokiSink(client, static_labels, send_timeout=loki.send_timeout)
