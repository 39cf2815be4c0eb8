"""Loki push client: buffers entries and ships them in batches over HTTP."""

import json
import logging
import queue
import random
import threading
import time
from dataclasses import dataclass
from urllib.parse import urlparse

import requests

logger = logging.getLogger(__name__)

USER_AGENT = "logging-agent"


class LokiClientError(Exception):
    """Raised when the client cannot be constructed."""


@dataclass(frozen=True)
class LokiEntry:
    labels: tuple[tuple[str, str], ...]   # sorted label pairs
    timestamp_ns: int
    line: str


def encode_push_request(entries: list[LokiEntry]) -> bytes:
    """Group entries into streams by label set and encode the push body."""
    streams: dict[tuple, list] = {}
    for entry in entries:
        streams.setdefault(entry.labels, []).append([str(entry.timestamp_ns), entry.line])
    body = {
        "streams": [
            {"stream": dict(labels), "values": values}
            for labels, values in streams.items()
        ]
    }
    return json.dumps(body, separators=(",", ":")).encode("utf-8")


class LokiClient:
    """Background sender for the Loki push API.

    ``push`` only enqueues; a worker thread batches entries by count or age
    and POSTs them with retry and exponential backoff. ``stop`` flushes what
    is pending and closes the HTTP session.
    """

    def __init__(
        self,
        url: str,
        tenant_id: str = "",
        username: str = "",
        password: str = "",
        batch_size: int = 100,
        batch_wait: float = 1.0,
        timeout: float = 10.0,
        max_retries: int = 5,
        min_backoff: float = 0.5,
        max_backoff: float = 300.0,
        buffer_size: int = 1000,
        tls_verify: bool = True,
        ca_file: str = "",
        probe_on_start: bool = True,
        session: requests.Session | None = None,
    ):
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise LokiClientError(f"invalid Loki URL {url!r}")

        self._url = url
        self._base_url = f"{parsed.scheme}://{parsed.netloc}"
        self._batch_size = batch_size
        self._batch_wait = batch_wait
        self._timeout = timeout
        self._max_retries = max_retries
        self._min_backoff = min_backoff
        self._max_backoff = max_backoff

        self._session = session or requests.Session()
        self._session.headers.update({
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        })
        if tenant_id:
            self._session.headers["X-Scope-OrgID"] = tenant_id
        if username:
            self._session.auth = (username, password)
        self._session.verify = ca_file if ca_file else tls_verify

        if probe_on_start:
            self._probe()

        self._queue: queue.Queue = queue.Queue(maxsize=buffer_size)
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._sent = 0
        self._dropped = 0
        self._stopped = False
        self._thread = threading.Thread(target=self._run, name="loki-client", daemon=True)
        self._thread.start()
        logger.info("Loki client ready: %s (batch_size=%d, batch_wait=%.1fs)",
                    self._url, batch_size, batch_wait)

    @property
    def sent(self) -> int:
        with self._lock:
            return self._sent

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped

    def _probe(self):
        """Check that the Loki endpoint answers at all."""
        try:
            resp = self._session.get(f"{self._base_url}/ready", timeout=self._timeout)
        except requests.exceptions.RequestException as e:
            self._session.close()
            raise LokiClientError(f"Loki endpoint {self._base_url} unreachable: {e}") from e
        if resp.status_code != 200:
            logger.warning("Loki endpoint %s not ready yet (HTTP %d)",
                           self._base_url, resp.status_code)

    def push(self, labels: dict[str, str], timestamp_ns: int, line: str,
             timeout: float | None = None) -> bool:
        """Enqueue one entry. Returns False if the buffer stayed full for *timeout*."""
        if self._stop_event.is_set():
            return False
        entry = LokiEntry(tuple(sorted(labels.items())), timestamp_ns, line)
        try:
            self._queue.put(entry, timeout=timeout)
        except queue.Full:
            return False
        return True

    def stop(self):
        """Flush pending entries and release the HTTP session. Safe to call twice.

        An in-flight push is not retried, and buffered batches get one attempt
        each until one request timeout has passed; the rest are dropped.
        """
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        self._stop_event.set()
        self._thread.join()
        self._session.close()
        logger.info("Loki client stopped: sent=%d, dropped=%d", self.sent, self.dropped)

    def _run(self):
        batch: list[LokiEntry] = []
        batch_started = time.monotonic()
        while not self._stop_event.is_set():
            try:
                entry = self._queue.get(timeout=min(self._batch_wait, 0.5))
            except queue.Empty:
                entry = None

            if entry is not None:
                if not batch:
                    batch_started = time.monotonic()
                batch.append(entry)

            if batch and (len(batch) >= self._batch_size
                          or time.monotonic() - batch_started >= self._batch_wait):
                self._send_with_retry(batch, self._max_retries)
                batch = []

        # Drain whatever is still buffered: one attempt per batch, and only
        # while the flush deadline (one request timeout) has not passed
        while True:
            try:
                batch.append(self._queue.get_nowait())
            except queue.Empty:
                break
        deadline = time.monotonic() + self._timeout
        for start in range(0, len(batch), self._batch_size):
            chunk = batch[start:start + self._batch_size]
            if time.monotonic() >= deadline:
                self._drop(chunk, "flush deadline passed")
            else:
                self._send_with_retry(chunk, 1)

    def _send_with_retry(self, batch: list[LokiEntry], max_attempts: int):
        payload = encode_push_request(batch)
        for attempt in range(max_attempts):
            try:
                resp = self._session.post(self._url, data=payload, timeout=self._timeout)
            except requests.exceptions.RequestException as e:
                logger.warning("Push failed (attempt %d/%d): %s", attempt + 1, max_attempts, e)
            else:
                if resp.status_code < 300:
                    with self._lock:
                        self._sent += len(batch)
                    logger.debug("Pushed %d entries to Loki", len(batch))
                    return
                if resp.status_code != 429 and resp.status_code < 500:
                    logger.error("Loki rejected batch of %d entries (HTTP %d): %s",
                                 len(batch), resp.status_code, resp.text[:200])
                    break
                logger.warning("Push failed (attempt %d/%d): HTTP %d",
                               attempt + 1, max_attempts, resp.status_code)

            if self._stop_event.is_set():
                # no retries once stopping
                break
            if attempt + 1 < max_attempts:
                self._stop_event.wait(self._backoff_delay(attempt))

        self._drop(batch, "delivery failed")

    def _drop(self, batch: list[LokiEntry], reason: str):
        with self._lock:
            self._dropped += len(batch)
        logger.error("Dropped batch of %d entries: %s", len(batch), reason)

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff from min_backoff, capped at max_backoff, with jitter."""
        delay = min(self._min_backoff * (2 ** attempt), self._max_backoff)
        return delay * random.uniform(0.8, 1.2)
