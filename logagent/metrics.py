"""Thread-safe counters and gauges with a Prometheus text renderer."""

import threading
from collections import defaultdict

LABEL_LOG_FILE_NAME_PATTERN = "log_file_name_pattern"
LABEL_NODE = "node"

_FAMILIES = {
    "log_lines": ("counter", "Number of lines of log processed distinguished by log filename pattern"),
    "log_lines_truncated": ("counter", "Number of log lines cut to the maximum line length"),
    "scan_errors": ("counter", "Number of transient errors while scanning log files"),
    "entries_delivered": ("counter", "Number of entries handed to the sink"),
    "delivery_failures": ("counter", "Number of entries the sink rejected"),
    "handoff_queue_depth": ("gauge", "Entries waiting in the hand-off queue"),
}


def make_labels_for_log_line(pattern: str, node: str) -> dict[str, str]:
    return {LABEL_LOG_FILE_NAME_PATTERN: pattern, LABEL_NODE: node}


def _label_key(labels: dict | None) -> tuple:
    if not labels:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def _format_value(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


class MetricsRecorder:
    """Process-lifetime metrics; construct once and pass it to each component."""

    def __init__(self):
        self._lock = threading.Lock()
        self._values: dict[str, dict[tuple, float]] = defaultdict(dict)
        self._collectors: list = []

    def inc(self, name: str, labels: dict | None = None, amount: float = 1):
        if name not in _FAMILIES:
            raise KeyError(f"unknown metric {name!r}")
        key = _label_key(labels)
        with self._lock:
            series = self._values[name]
            series[key] = series.get(key, 0) + amount

    def set_gauge(self, name: str, value: float, labels: dict | None = None):
        if name not in _FAMILIES:
            raise KeyError(f"unknown metric {name!r}")
        with self._lock:
            self._values[name][_label_key(labels)] = value

    def add_collector(self, callback):
        """Register *callback(recorder)* to refresh gauges before each render."""
        self._collectors.append(callback)

    def get(self, name: str, labels: dict | None = None) -> float:
        with self._lock:
            return self._values.get(name, {}).get(_label_key(labels), 0)

    def total(self, name: str) -> float:
        """Sum of a family across all label sets."""
        with self._lock:
            return sum(self._values.get(name, {}).values())

    def snapshot(self) -> dict:
        with self._lock:
            return {
                name: {key: value for key, value in series.items()}
                for name, series in self._values.items()
            }

    def render_prometheus(self) -> str:
        """Render all families in the Prometheus text exposition format."""
        for callback in list(self._collectors):
            callback(self)

        lines = []
        with self._lock:
            for name in sorted(_FAMILIES):
                kind, help_text = _FAMILIES[name]
                lines.append(f"# HELP {name} {help_text}")
                lines.append(f"# TYPE {name} {kind}")
                for key in sorted(self._values.get(name, {})):
                    value = self._values[name][key]
                    if key:
                        rendered = ",".join(f'{k}="{_escape(v)}"' for k, v in key)
                        lines.append(f"{name}{{{rendered}}} {_format_value(value)}")
                    else:
                        lines.append(f"{name} {_format_value(value)}")
        return "\n".join(lines) + "\n"
