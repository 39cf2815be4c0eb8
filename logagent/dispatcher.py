"""Dispatcher: drains the hand-off queue into the active sink."""

import logging
import threading

from logagent.buffer import HandoffQueue
from logagent.metrics import MetricsRecorder
from logagent.sinks import DeliveryError

logger = logging.getLogger(__name__)


class Dispatcher:
    """Single consumer of the hand-off queue.

    A rejected entry is logged, counted, and dropped; the loop keeps going.
    Any other exception from the sink escapes ``run`` and is treated by the
    agent as a fatal worker fault. The loop exits once the queue is closed;
    entries still queued at that point are discarded.
    """

    def __init__(self, queue: HandoffQueue, sink, metrics: MetricsRecorder):
        self._queue = queue
        self._sink = sink
        self._deliver = sink.send
        self._sink_label = {"sink": sink.kind.value}
        self._metrics = metrics
        self._lock = threading.Lock()
        self._delivered = 0
        self._failed = 0
        self._stopped = False

    @property
    def sink(self):
        return self._sink

    @property
    def delivered(self) -> int:
        with self._lock:
            return self._delivered

    @property
    def failed(self) -> int:
        with self._lock:
            return self._failed

    def run(self):
        logger.info("Dispatcher started (sink=%s)", self._sink.kind.value)
        while True:
            entry = self._queue.get()
            if entry is None:
                break
            try:
                self._deliver(entry)
            except DeliveryError as e:
                with self._lock:
                    self._failed += 1
                self._metrics.inc("delivery_failures", self._sink_label)
                logger.warning("Failed to deliver entry from %s: %s", entry.source, e)
                continue
            with self._lock:
                self._delivered += 1
            self._metrics.inc("entries_delivered", self._sink_label)
        logger.info("Dispatcher stopped: delivered=%d, failed=%d",
                    self.delivered, self.failed)

    def stop(self):
        """Release the sink. Only the first call has an effect."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        logger.info("Closing %s sink", self._sink.kind.value)
        self._sink.close()
