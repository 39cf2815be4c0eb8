"""Agent: owns the hand-off queue and runs the tailer, dispatcher, and health server."""

import enum
import logging
import threading

from logagent.buffer import HandoffQueue
from logagent.config import Config
from logagent.dispatcher import Dispatcher
from logagent.httpserver import BindError, HealthServer, create_health_app
from logagent.metrics import MetricsRecorder
from logagent.sinks import build_sink
from logagent.tailer import Tailer

logger = logging.getLogger(__name__)


class AgentState(enum.Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class StartupError(Exception):
    """Raised when the agent fails before reaching RUNNING."""


class WorkerError(Exception):
    """A worker thread failed; the agent shuts down when this happens."""

    def __init__(self, worker: str, cause: BaseException):
        super().__init__(f"worker {worker!r} failed: {cause!r}")
        self.worker = worker
        self.cause = cause


class Agent:
    """Collection-to-delivery pipeline with a CREATED → RUNNING → STOPPING → STOPPED lifecycle.

    Workers communicate only through the hand-off queue and the shutdown
    event. Any worker that raises, or returns while the agent is still
    running, is recorded as a WorkerError and makes ``run`` stop the agent.
    """

    def __init__(self, config: Config, metrics: MetricsRecorder, sink=None,
                 health_server: HealthServer | None = None):
        self._config = config
        self._metrics = metrics
        self._state = AgentState.CREATED
        self._state_lock = threading.Lock()
        self._shutdown = threading.Event()
        self._stop_requested = threading.Event()
        self._stopped = threading.Event()
        self._failures: list[WorkerError] = []
        self._threads: list[threading.Thread] = []

        collection = config.collection
        logger.info(
            "Initializing logging agent: node=%s, patterns=%s, interval=%.1fs, "
            "batch_size=%d, max_line_length=%d, queue_size=%d, sink=%s",
            config.agent.node_name, list(collection.log_paths), collection.interval,
            collection.batch_size, collection.max_line_length, collection.queue_size,
            config.sink_type,
        )

        self._queue = HandoffQueue(collection.queue_size)
        self._sink = sink if sink is not None else build_sink(config)
        self._dispatcher = Dispatcher(self._queue, self._sink, metrics)
        self._tailer = Tailer(
            collection.log_paths,
            self._queue,
            self._shutdown,
            node_name=config.agent.node_name,
            interval=collection.interval,
            batch_size=collection.batch_size,
            max_line_length=collection.max_line_length,
            metrics=metrics,
        )
        if health_server is None:
            http = config.http_server
            health_server = HealthServer(
                create_health_app(metrics, self._readiness),
                http.host, http.port,
                read_timeout=http.read_timeout,
                write_timeout=http.write_timeout,
            )
        self._health = health_server
        metrics.add_collector(
            lambda m: m.set_gauge("handoff_queue_depth", self._queue.qsize())
        )

    @property
    def state(self) -> AgentState:
        with self._state_lock:
            return self._state

    @property
    def is_ready(self) -> bool:
        return self.state is AgentState.RUNNING

    @property
    def failures(self) -> list[WorkerError]:
        with self._state_lock:
            return list(self._failures)

    @property
    def queue(self) -> HandoffQueue:
        return self._queue

    @property
    def tailer(self) -> Tailer:
        return self._tailer

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def health_server(self) -> HealthServer:
        return self._health

    def _readiness(self):
        state = self.state
        return state is AgentState.RUNNING, state.value

    def _set_state(self, state: AgentState):
        with self._state_lock:
            self._state = state
        logger.debug("Agent state -> %s", state.value)

    def start(self):
        """Bind the health server and start all workers."""
        with self._state_lock:
            if self._state is not AgentState.CREATED:
                raise RuntimeError(f"cannot start agent in state {self._state.value}")

        try:
            self._health.bind()
        except BindError as e:
            logger.error("Startup failed: %s", e)
            self._dispatcher.stop()
            self._set_state(AgentState.STOPPED)
            self._stopped.set()
            raise StartupError(str(e)) from e

        self._set_state(AgentState.RUNNING)
        workers = (
            ("health-server", self._health.serve),
            ("dispatcher", self._dispatcher.run),
            ("tailer", self._tailer.run),
        )
        for name, target in workers:
            t = threading.Thread(target=self._supervise, args=(name, target),
                                 name=name, daemon=True)
            self._threads.append(t)
            t.start()
        logger.info("Logging agent running on node %s", self._config.agent.node_name)

    def _supervise(self, name: str, target):
        try:
            target()
        except Exception as e:
            logger.exception("Panic in %s worker", name)
            self._fail(WorkerError(name, e))
            return
        if self.state is AgentState.RUNNING:
            logger.error("%s worker exited while the agent was running", name)
            self._fail(WorkerError(name, RuntimeError("worker exited unexpectedly")))

    def _fail(self, error: WorkerError):
        with self._state_lock:
            self._failures.append(error)
        self._stop_requested.set()

    def request_stop(self):
        """Ask a running ``run`` call to stop. Safe from signal handlers."""
        self._stop_requested.set()

    def run(self):
        """Start, block until a stop request or a worker fault, then stop.

        Raises the first WorkerError if a worker failed.
        """
        self.start()
        while not self._stop_requested.wait(0.5):
            pass

        failures = self.failures
        if failures:
            logger.error("Stopping agent after worker failure: %s", failures[0])
        self.stop()
        if failures:
            raise failures[0]

    def stop(self):
        """Cancel all workers, wait for them, and release the sink.

        Idempotent; a concurrent caller waits until the agent has stopped.
        """
        with self._state_lock:
            state = self._state
            if state is AgentState.RUNNING:
                self._state = AgentState.STOPPING
            elif state is AgentState.CREATED:
                self._state = AgentState.STOPPED

        if state is AgentState.STOPPING:
            self._stopped.wait()
            return
        if state is AgentState.STOPPED:
            return
        if state is AgentState.CREATED:
            self._dispatcher.stop()
            self._stopped.set()
            logger.info("Agent stopped before it was started")
            return

        logger.info("Shutting down agent...")
        self._stop_requested.set()
        self._shutdown.set()
        self._queue.close()
        self._health.shutdown()

        grace = self._config.agent.shutdown_grace
        for t in self._threads:
            t.join(grace)
            if t.is_alive():
                logger.warning("Worker %s still running after %.1fs, waiting for it", t.name, grace)
                t.join()

        self._dispatcher.stop()
        self._tailer.close()
        self._set_state(AgentState.STOPPED)
        self._stopped.set()
        logger.info("Agent stopped gracefully")
