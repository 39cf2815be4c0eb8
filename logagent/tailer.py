"""Tailer: periodically expands glob patterns and reads newly appended lines."""

import glob
import logging
import os
import re
import threading

from logagent.buffer import HandoffQueue
from logagent.cursor import CursorTable, FileCursor
from logagent.metrics import LABEL_NODE, MetricsRecorder, make_labels_for_log_line
from logagent.models import DEFAULT_LEVEL, make_entry

logger = logging.getLogger(__name__)

# How often a producer blocked on a full queue re-checks the shutdown event.
_PUT_POLL_INTERVAL = 0.5
# Read size used while skipping the tail of an over-long line.
_DISCARD_CHUNK = 64 * 1024


class OpenError(Exception):
    """Raised when a log file cannot be opened or stat'ed."""


def _default_level(line: str) -> str:
    return DEFAULT_LEVEL


class Tailer:
    """Reads new lines from every file matched by the configured patterns.

    Each tick reads at most ``batch_size`` complete lines per file, starting
    at the file's cursor. The cursor advances only past lines the hand-off
    queue accepted, so nothing is emitted twice and nothing is skipped. A
    full queue blocks the tailer (backpressure) until space frees up or the
    agent shuts down.
    """

    def __init__(
        self,
        patterns,
        queue: HandoffQueue,
        shutdown_event: threading.Event,
        node_name: str,
        interval: float,
        batch_size: int,
        max_line_length: int,
        metrics: MetricsRecorder,
        level_resolver=None,
    ):
        self._patterns = list(patterns)
        self._queue = queue
        self._shutdown = shutdown_event
        self._node_name = node_name
        self._interval = interval
        self._batch_size = batch_size
        self._max_line_length = max_line_length
        # UTF-8 needs at most 4 bytes per character; one extra byte proves the line is too long
        self._read_limit = max_line_length * 4 + 1
        self._discard_chunk = max(self._read_limit, _DISCARD_CHUNK)
        self._metrics = metrics
        self._level_resolver = level_resolver or _default_level
        self._cursors = CursorTable()

    @property
    def cursors(self) -> CursorTable:
        return self._cursors

    def _cancelled(self) -> bool:
        return self._shutdown.is_set() or self._queue.closed

    def run(self):
        """Scan once per interval until shutdown."""
        logger.info("Tailer started: %d pattern(s), interval=%.1fs, batch_size=%d",
                    len(self._patterns), self._interval, self._batch_size)
        while not self._cancelled():
            n = self.scan()
            if n:
                logger.debug("Tick emitted %d entries", n)
            if self._shutdown.wait(self._interval):
                break
        logger.info("Tailer stopped")

    def close(self):
        """Release all cursors."""
        self._cursors.clear()

    def scan(self) -> int:
        """Run one collection tick. Returns the number of entries emitted."""
        matched: dict[str, str] = {}
        for pattern in self._patterns:
            try:
                paths = self._expand(pattern)
            except (OSError, ValueError, re.error) as e:
                logger.warning("Error globbing pattern %r, skipping: %s", pattern, e)
                self._metrics.inc("scan_errors", {"kind": "glob"})
                continue
            for path in paths:
                matched.setdefault(path, pattern)

        total = 0
        for path, pattern in matched.items():
            if self._cancelled():
                return total
            try:
                total += self._process_file(path, pattern)
            except OpenError as e:
                logger.warning("Error processing log file %s, will retry: %s", path, e)
                self._metrics.inc("scan_errors", {"kind": "open"})

        self._cursors.prune(matched)
        return total

    @staticmethod
    def _expand(pattern: str) -> list[str]:
        if not pattern or "\x00" in pattern:
            raise ValueError("empty or invalid pattern")
        return sorted(p for p in glob.glob(pattern, recursive=True) if not os.path.isdir(p))

    def _process_file(self, path: str, pattern: str) -> int:
        try:
            fh = open(path, "rb")
        except OSError as e:
            raise OpenError(f"failed to open file: {e}") from e

        with fh:
            try:
                st = os.fstat(fh.fileno())
            except OSError as e:
                raise OpenError(f"failed to stat file: {e}") from e

            identity = (st.st_dev, st.st_ino)
            cursor = self._cursors.resolve(path, identity, st.st_size)
            if st.st_size == 0 or st.st_size == cursor.offset:
                return 0
            return self._read_lines(fh, path, pattern, cursor, st.st_size)

    def _read_lines(self, fh, path: str, pattern: str, cursor: FileCursor, size: int) -> int:
        """Emit up to batch_size complete lines starting at the cursor offset.

        No read pulls more than one capped chunk into memory. A chunk that
        fills the cap without a newline is an over-long line: its head is
        emitted (truncated) and the rest of the line is skipped, across
        ticks if the newline has not been written yet.
        """
        offset = cursor.offset
        discarding = cursor.discarding
        emitted = 0
        try:
            fh.seek(offset)
            while emitted < self._batch_size:
                if discarding:
                    raw = fh.readline(self._discard_chunk)
                    if not raw:
                        break
                    offset += len(raw)
                    discarding = not raw.endswith(b"\n")
                    continue

                raw = fh.readline(self._read_limit)
                terminated = raw.endswith(b"\n")
                if not terminated and len(raw) < self._read_limit:
                    # EOF, or a line still being written
                    break
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if line.strip():
                    if not self._emit(line, path, pattern):
                        break
                    emitted += 1
                offset += len(raw)
                if not terminated:
                    logger.debug("Line in %s at offset %d exceeds %d characters, skipping its tail",
                                 path, offset - len(raw), self._max_line_length)
                    discarding = True
        except OSError as e:
            logger.warning("Read error in %s at offset %d, will resume there: %s",
                           path, offset, e)
            self._metrics.inc("scan_errors", {"kind": "read"})
        finally:
            self._cursors.update(path, cursor.identity, offset, size, discarding)
        return emitted

    def _emit(self, line: str, path: str, pattern: str) -> bool:
        """Hand one line to the queue. Returns False if the agent is stopping."""
        entry = make_entry(
            line,
            source=path,
            node_name=self._node_name,
            max_line_length=self._max_line_length,
            level=self._level_resolver(line),
        )
        waited = False
        while not self._queue.put(entry, timeout=_PUT_POLL_INTERVAL):
            if self._cancelled():
                return False
            if not waited:
                logger.debug("Hand-off queue full, waiting for the dispatcher")
                waited = True

        self._metrics.inc("log_lines", make_labels_for_log_line(pattern, self._node_name))
        if entry.truncated:
            self._metrics.inc("log_lines_truncated", {LABEL_NODE: self._node_name})
        return True
