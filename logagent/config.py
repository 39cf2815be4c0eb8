"""Configuration: frozen dataclasses loaded from a YAML file and env vars."""

import logging
import os
import re
import socket
from dataclasses import dataclass, field
from urllib.parse import urlparse

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/logging-agent/config.yaml"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
SINKS = ("", "stdout", "loki")

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class ConfigError(Exception):
    """Raised when the configuration cannot be loaded or is invalid."""


def parse_duration(value) -> float:
    """Convert a duration to seconds.

    Accepts plain numbers (seconds) or Go-style strings such as
    ``"500ms"``, ``"5s"``, ``"1m30s"``.
    """
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ConfigError(f"invalid duration: {value!r}")

    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ConfigError(f"invalid duration: {value!r}")
    return total


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class CollectionConfig:
    log_paths: tuple[str, ...] = ("/var/log/containers/*.log",)
    interval: float = 5.0
    batch_size: int = 100
    max_line_length: int = 16384
    queue_size: int = 1000


@dataclass(frozen=True)
class HTTPServerConfig:
    address: str = ":8080"
    read_timeout: float = 5.0
    write_timeout: float = 10.0

    @property
    def host(self) -> str:
        host, _, _ = self.address.rpartition(":")
        if host.startswith("[") and host.endswith("]"):
            host = host[1:-1]
        return host or "0.0.0.0"

    @property
    def port(self) -> int:
        _, _, port = self.address.rpartition(":")
        return int(port)


@dataclass(frozen=True)
class LokiConfig:
    url: str = ""
    tenant_id: str = ""
    username: str = ""
    password: str = ""
    batch_size: int = 100
    batch_wait: float = 1.0
    timeout: float = 10.0
    max_retries: int = 5
    min_backoff: float = 0.5
    max_backoff: float = 300.0
    buffer_size: int = 1000
    send_timeout: float = 5.0
    tls_verify: bool = True
    ca_file: str = ""
    probe_on_start: bool = True
    external_labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AgentConfig:
    log_level: str = "INFO"
    node_name: str = ""
    pod_name: str = ""
    namespace: str = ""
    sink: str = ""
    shutdown_grace: float = 10.0


@dataclass(frozen=True)
class Config:
    agent: AgentConfig = field(default_factory=AgentConfig)
    collection: CollectionConfig = field(default_factory=CollectionConfig)
    http_server: HTTPServerConfig = field(default_factory=HTTPServerConfig)
    loki: LokiConfig = field(default_factory=LokiConfig)

    @property
    def sink_type(self) -> str:
        """Resolved sink name: explicit setting, else loki when a URL is set."""
        if self.agent.sink:
            return self.agent.sink
        return "loki" if self.loki.url else "stdout"


def load_yaml(path: str) -> dict:
    """Read the YAML file at *path*. Raises ConfigError on failure."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"read config file {path!r}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"parse config file {path!r}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path!r} must contain a mapping")
    logger.info("Loaded config from %s", path)
    return data


def _section(data: dict, name: str) -> dict:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"config section {name!r} must be a mapping")
    return section


def _positive_int(section: dict, key: str, default: int) -> int:
    try:
        value = int(section.get(key, default))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key} must be an integer") from e
    if value <= 0:
        raise ConfigError(f"{key} must be positive, got {value}")
    return value


def _positive_duration(section: dict, key: str, default: float) -> float:
    value = parse_duration(section.get(key, default))
    if value <= 0:
        raise ConfigError(f"{key} must be positive, got {value}")
    return value


def config_from_dict(data: dict, environ=None) -> Config:
    """Build and validate a Config from parsed YAML data and environment."""
    if environ is None:
        environ = os.environ

    agent = _section(data, "agent")
    collection = _section(data, "collection")
    http_server = _section(data, "http_server")
    loki = _section(data, "loki")

    log_paths = collection.get("log_paths", CollectionConfig.log_paths)
    if isinstance(log_paths, str):
        log_paths = [log_paths]
    if not log_paths:
        raise ConfigError("collection.log_paths must list at least one pattern")

    node_name = environ.get("NODE_NAME") or str(agent.get("node_name") or "")
    if not node_name:
        node_name = socket.gethostname()
        logger.info("node_name not configured, using hostname %s", node_name)

    log_level = (environ.get("LOG_LEVEL") or str(agent.get("log_level", "info"))).upper()
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"unknown log level {log_level!r}")

    sink = str(agent.get("sink") or "").lower()
    if sink not in SINKS:
        raise ConfigError(f"unknown sink {sink!r}, expected stdout or loki")

    address = str(http_server.get("address", HTTPServerConfig.address))
    if ":" not in address or not address.rpartition(":")[2].isdigit():
        raise ConfigError(f"http_server.address must be host:port, got {address!r}")
    if int(address.rpartition(":")[2]) > 65535:
        raise ConfigError(f"http_server.address port out of range, got {address!r}")

    url = str(loki.get("url") or "")
    if url:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigError(f"loki.url must be an http(s) URL, got {url!r}")
    if sink == "loki" and not url:
        raise ConfigError("sink is loki but loki.url is not set")

    external_labels = loki.get("external_labels") or {}
    if not isinstance(external_labels, dict):
        raise ConfigError("loki.external_labels must be a mapping")

    return Config(
        agent=AgentConfig(
            log_level=log_level,
            node_name=node_name,
            pod_name=environ.get("POD_NAME") or str(agent.get("pod_name") or ""),
            namespace=environ.get("POD_NAMESPACE") or str(agent.get("namespace") or ""),
            sink=sink,
            shutdown_grace=_positive_duration(agent, "shutdown_grace", AgentConfig.shutdown_grace),
        ),
        collection=CollectionConfig(
            log_paths=tuple(str(p) for p in log_paths),
            interval=_positive_duration(collection, "interval", CollectionConfig.interval),
            batch_size=_positive_int(collection, "batch_size", CollectionConfig.batch_size),
            max_line_length=_positive_int(
                collection, "max_line_length", CollectionConfig.max_line_length
            ),
            queue_size=_positive_int(collection, "queue_size", CollectionConfig.queue_size),
        ),
        http_server=HTTPServerConfig(
            address=address,
            read_timeout=_positive_duration(
                http_server, "read_timeout", HTTPServerConfig.read_timeout
            ),
            write_timeout=_positive_duration(
                http_server, "write_timeout", HTTPServerConfig.write_timeout
            ),
        ),
        loki=LokiConfig(
            url=url,
            tenant_id=str(loki.get("tenant_id") or ""),
            username=str(loki.get("username") or ""),
            password=str(loki.get("password") or ""),
            batch_size=_positive_int(loki, "batch_size", LokiConfig.batch_size),
            batch_wait=_positive_duration(loki, "batch_wait", LokiConfig.batch_wait),
            timeout=_positive_duration(loki, "timeout", LokiConfig.timeout),
            max_retries=_positive_int(loki, "max_retries", LokiConfig.max_retries),
            min_backoff=_positive_duration(loki, "min_backoff", LokiConfig.min_backoff),
            max_backoff=_positive_duration(loki, "max_backoff", LokiConfig.max_backoff),
            buffer_size=_positive_int(loki, "buffer_size", LokiConfig.buffer_size),
            send_timeout=_positive_duration(loki, "send_timeout", LokiConfig.send_timeout),
            tls_verify=_parse_bool(loki.get("tls_verify", True)),
            ca_file=str(loki.get("ca_file") or ""),
            probe_on_start=_parse_bool(loki.get("probe_on_start", True)),
            external_labels={str(k): str(v) for k, v in external_labels.items()},
        ),
    )


def load_config(path: str | None = None, environ=None) -> Config:
    """Load the config file (``CONFIG_PATH`` env var or the default path)."""
    if environ is None:
        environ = os.environ
    if path is None:
        path = environ.get("CONFIG_PATH", DEFAULT_CONFIG_PATH)
    return config_from_dict(load_yaml(path), environ)
