"""Pytest configuration and fixtures for workbench tests."""

import socket
import sys
import time
from pathlib import Path

import pytest

from workbench.config import AppConfig
from workbench.events import EventSink
from workbench.port_freer import PortFreer
from workbench.ports import ReadinessProber


# Serves HTTP on the port (or host:port) named by the environment variable in argv[1]
SERVER_SCRIPT = """
import http.server, os, sys
port = int(os.environ[sys.argv[1]].rsplit(":", 1)[-1])
print(f"listening on {port}", flush=True)
http.server.HTTPServer(("127.0.0.1", port), http.server.BaseHTTPRequestHandler).serve_forever()
"""

SLEEP_SCRIPT = "import time; print('started', flush=True); time.sleep(60)"


class FakePortFreer(PortFreer):
    """Records free() calls instead of killing anything."""

    def __init__(self, pids=None):
        self.pids = list(pids or [])
        self.freed_ports = []
        self.killed = []

    def find_pids(self, port):
        self.freed_ports.append(port)
        pids, self.pids = self.pids, []
        return pids

    def kill_pid(self, pid):
        self.killed.append(pid)


def get_free_port() -> int:
    """Ask the OS for a currently unused loopback port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def wait_until(predicate, timeout: float = 10.0, interval: float = 0.05) -> bool:
    """Poll predicate until it returns truthy or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def python_command(script: str, *args: str) -> tuple[str, list[str]]:
    """(executable, args) running an inline Python script."""
    return sys.executable, ["-c", script, *args]


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    """Temporary config file location."""
    return tmp_path / "workbench" / "config.json"


@pytest.fixture
def config(config_path: Path) -> AppConfig:
    """Fresh AppConfig bound to a temporary file."""
    return AppConfig.load(config_path)


@pytest.fixture
def sink():
    """Started event sink, closed after the test."""
    event_sink = EventSink()
    event_sink.start()
    yield event_sink
    event_sink.close()


@pytest.fixture
def events(sink: EventSink) -> list:
    """Events delivered by the sink, in delivery order."""
    delivered = []
    sink.subscribe(delivered.append)
    return delivered


@pytest.fixture
def fake_freer() -> FakePortFreer:
    return FakePortFreer()


@pytest.fixture
def prober(fake_freer: FakePortFreer) -> ReadinessProber:
    """Real loopback prober whose port freeing is recorded, not executed."""
    return ReadinessProber(freer=fake_freer, timeout=0.5)


@pytest.fixture
def listener():
    """A bound, listening loopback socket; yields its port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(8)
    yield sock.getsockname()[1]
    sock.close()


def log_messages(events: list, component: str | None = None) -> list[str]:
    """Messages of component-log events, optionally for one component."""
    return [
        e.data.message
        for e in events
        if e.type.value == "component-log" and (component is None or e.data.component == component)
    ]


def wait_for_log(sink, events: list, text: str, component: str | None = None, timeout: float = 10.0) -> bool:
    """Wait until a delivered log message for the component contains text."""

    def seen() -> bool:
        sink.flush()
        return any(text in message for message in log_messages(events, component))

    return wait_until(seen, timeout=timeout)


def progress_events(events: list) -> list:
    """Payloads of component-progress events."""
    return [e.data for e in events if e.type.value == "component-progress"]
