"""Tests for the agent lifecycle and the end-to-end pipeline."""

import socket
import threading
import time

import pytest
import requests

from logagent.agent import Agent, AgentState, StartupError, WorkerError
from logagent.config import AgentConfig, Config, HTTPServerConfig, LokiConfig
from logagent.sinks import SinkInitError, SinkKind


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


class _ExplodingSink:
    kind = SinkKind.STDOUT

    def __init__(self):
        self.close_calls = 0

    def send(self, entry):
        raise RuntimeError("disk on fire")

    def close(self):
        self.close_calls += 1


class TestAgentPipeline:
    def test_delivers_lines_from_matching_files(self, tmp_path, make_config, metrics, recording_sink):
        (tmp_path / "a.log").write_text("x\ny\n")
        (tmp_path / "b.log").write_text("z\n")
        (tmp_path / "ignored.txt").write_text("nope\n")

        agent = Agent(make_config(), metrics, sink=recording_sink)
        agent.start()
        try:
            assert _wait_for(lambda: len(recording_sink.entries) == 3)
            with open(tmp_path / "a.log", "a") as fh:
                fh.write("later\n")
            assert _wait_for(lambda: len(recording_sink.entries) == 4)
        finally:
            agent.stop()

        assert sorted(recording_sink.messages()) == ["later", "x", "y", "z"]
        assert all(e.node_name == "node-1" for e in recording_sink.entries)
        assert recording_sink.close_calls == 1

    def test_health_endpoints_follow_state(self, make_config, metrics, recording_sink):
        agent = Agent(make_config(), metrics, sink=recording_sink)
        agent.start()
        try:
            host, port = agent.health_server.address
            base = f"http://{host}:{port}"
            assert requests.get(f"{base}/healthz", timeout=2).status_code == 200
            resp = requests.get(f"{base}/status", timeout=2)
            assert resp.status_code == 200
            assert resp.json()["state"] == "running"
            assert "handoff_queue_depth 0" in requests.get(f"{base}/metrics", timeout=2).text
        finally:
            agent.stop()

    def test_counts_delivered_entries(self, tmp_path, make_config, metrics, recording_sink):
        (tmp_path / "app.log").write_text("a\nb\n")
        agent = Agent(make_config(), metrics, sink=recording_sink)
        agent.start()
        try:
            assert _wait_for(lambda: metrics.get("entries_delivered", {"sink": "stdout"}) == 2)
        finally:
            agent.stop()
        assert agent.dispatcher.delivered == 2


class TestAgentLifecycle:
    def test_state_transitions(self, make_config, metrics, recording_sink):
        agent = Agent(make_config(), metrics, sink=recording_sink)
        assert agent.state is AgentState.CREATED
        assert not agent.is_ready
        agent.start()
        assert agent.state is AgentState.RUNNING
        assert agent.is_ready
        agent.stop()
        assert agent.state is AgentState.STOPPED
        assert not agent.is_ready

    def test_stop_is_idempotent(self, make_config, metrics, recording_sink):
        agent = Agent(make_config(), metrics, sink=recording_sink)
        agent.start()
        agent.stop()
        agent.stop()
        assert recording_sink.close_calls == 1

    def test_concurrent_stop(self, make_config, metrics, recording_sink):
        agent = Agent(make_config(), metrics, sink=recording_sink)
        agent.start()
        threads = [threading.Thread(target=agent.stop) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        assert agent.state is AgentState.STOPPED
        assert recording_sink.close_calls == 1

    def test_stop_before_start(self, make_config, metrics, recording_sink):
        agent = Agent(make_config(), metrics, sink=recording_sink)
        agent.stop()
        assert agent.state is AgentState.STOPPED
        assert recording_sink.close_calls == 1

    def test_start_after_stop_rejected(self, make_config, metrics, recording_sink):
        agent = Agent(make_config(), metrics, sink=recording_sink)
        agent.start()
        agent.stop()
        with pytest.raises(RuntimeError):
            agent.start()

    def test_workers_joined_on_stop(self, make_config, metrics, recording_sink):
        agent = Agent(make_config(), metrics, sink=recording_sink)
        agent.start()
        agent.stop()
        assert all(not t.is_alive() for t in agent._threads)
        assert agent.queue.closed
        assert len(agent.tailer.cursors) == 0

    def test_busy_port_fails_startup(self, tmp_path, metrics, recording_sink):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(("127.0.0.1", 0))
        sock.listen(1)
        try:
            port = sock.getsockname()[1]
            cfg = Config(
                agent=AgentConfig(node_name="node-1"),
                http_server=HTTPServerConfig(address=f"127.0.0.1:{port}"),
            )
            agent = Agent(cfg, metrics, sink=recording_sink)
            with pytest.raises(StartupError):
                agent.start()
            assert agent.state is AgentState.STOPPED
            assert recording_sink.close_calls == 1
        finally:
            sock.close()

    def test_run_returns_after_request_stop(self, make_config, metrics, recording_sink):
        agent = Agent(make_config(), metrics, sink=recording_sink)
        t = threading.Thread(target=agent.run, daemon=True)
        t.start()
        assert _wait_for(lambda: agent.state is AgentState.RUNNING)
        agent.request_stop()
        t.join(timeout=5)
        assert not t.is_alive()
        assert agent.state is AgentState.STOPPED


class TestAgentFailures:
    def test_sink_fault_stops_agent(self, tmp_path, make_config, metrics):
        (tmp_path / "app.log").write_text("boom\n")
        sink = _ExplodingSink()
        agent = Agent(make_config(), metrics, sink=sink)

        with pytest.raises(WorkerError) as excinfo:
            agent.run()
        assert excinfo.value.worker == "dispatcher"
        assert isinstance(excinfo.value.cause, RuntimeError)
        assert agent.state is AgentState.STOPPED
        assert sink.close_calls == 1

    def test_unreachable_loki_fails_construction(self, make_config, metrics, unused_port):
        base = make_config()
        cfg = Config(
            agent=base.agent,
            collection=base.collection,
            http_server=base.http_server,
            loki=LokiConfig(url=f"http://127.0.0.1:{unused_port}/loki/api/v1/push", timeout=1.0),
        )
        with pytest.raises(SinkInitError):
            Agent(cfg, metrics)

    def test_ships_to_loki(self, tmp_path, make_config, metrics, fake_loki):
        (tmp_path / "app.log").write_text("to loki\n")
        base = make_config()
        cfg = Config(
            agent=base.agent,
            collection=base.collection,
            http_server=base.http_server,
            loki=LokiConfig(url=fake_loki.url, batch_wait=0.05),
        )
        agent = Agent(cfg, metrics)
        agent.start()
        try:
            assert _wait_for(lambda: fake_loki.pushed_lines() == ["to loki"])
        finally:
            agent.stop()
        stream = fake_loki.pushes[0]["streams"][0]["stream"]
        assert stream["app"] == "logging-agent"
        assert stream["node"] == "node-1"
        assert stream["source"] == str(tmp_path / "app.log")
        assert stream["level"] == "info"
