"""Download manager for model pulls with throttled progress reporting."""

from __future__ import annotations

import json
import logging
import os
import re
import socket
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import httpx

from workbench.config import AppConfig
from workbench.discovery import find_ollama, ollama_install_hint
from workbench.errors import (
    AlreadyDownloadingError,
    DownloadInterruptedError,
    BinaryNotFoundError,
    NoActiveDownloadError,
    SpawnFailedError,
)
from workbench.events import EventSink
from workbench.launcher import terminate_process
from workbench.log_relay import WARNING_PREFIX, LogRelay
from workbench.ports import LOOPBACK, OLLAMA_PORT_RANGE, ReadinessProber
from workbench.schemas import ProgressStatus

logger = logging.getLogger(__name__)

COMPONENT = "Ollama Model Pull"

# Minimum spacing between progress events
PROGRESS_INTERVAL = 0.5  # seconds

# Connect timeout for the streaming pull request; reads are unbounded
HTTP_CONNECT_TIMEOUT = 10.0  # seconds

# Free-text markers the CLI prints while a pull is in progress
PROGRESS_MARKERS = (
    "pulling",
    "downloading",
    "verifying",
    "writing manifest",
    "removing any unused layers",
    "success",
)

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_PERCENT = re.compile(r"\b(\d{1,3})%")
_ETA = re.compile(r"\b(?:(\d+)h)?(?:(\d+)m)?(\d+)s\s*$")


class Transport(str, Enum):
    """How a pull talks to the model server."""

    HTTP = "http"
    CLI = "cli"


@dataclass
class ProgressSample:
    """One parsed progress payload."""

    message: str
    percent: int | None = None
    eta_seconds: int | None = None
    completed: float | None = None
    total: float | None = None
    failed: bool = False


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_eta(text: str) -> int | None:
    match = _ETA.search(text)
    if not match:
        return None
    hours, minutes, seconds = (int(g) if g else 0 for g in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def _parse_json_payload(payload: dict) -> ProgressSample | None:
    if isinstance(payload.get("error"), str):
        return ProgressSample(message=payload["error"], failed=True)

    status = payload.get("status")
    status = status if isinstance(status, str) else None
    completed, total = payload.get("completed"), payload.get("total")

    if _is_number(completed) and _is_number(total) and total > 0:
        percent = max(0, min(100, round(completed / total * 100)))
        return ProgressSample(
            message=status or "downloading",
            percent=percent,
            completed=float(completed),
            total=float(total),
        )

    if status:
        return ProgressSample(message=status, percent=100 if status == "success" else None)
    return None


def parse_progress_line(line: str) -> ProgressSample | None:
    """Parse one line of pull output.

    Recognizes JSON objects with numeric completed/total, JSON objects with a
    textual status or error, and free text carrying a known progress marker.

    Args:
        line: A single output line

    Returns:
        The parsed sample, or None for lines that are not progress
    """
    text = _ANSI_ESCAPE.sub("", line).strip()
    if not text:
        return None

    if text.startswith("{"):
        try:
            payload = json.loads(text)
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            return _parse_json_payload(payload)

    lowered = text.lower()
    if not any(marker in lowered for marker in PROGRESS_MARKERS):
        return None

    if lowered.startswith("error"):
        return ProgressSample(message=text, failed=True)

    percent_match = _PERCENT.search(text)
    percent = min(100, int(percent_match.group(1))) if percent_match else None
    if percent is None and lowered == "success":
        percent = 100
    return ProgressSample(message=text, percent=percent, eta_seconds=_parse_eta(text))


class ProgressThrottle:
    """Allows at most one emission per interval, however fast samples arrive."""

    def __init__(self, interval: float = PROGRESS_INTERVAL, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self.clock = clock
        self.last_emitted: float | None = None

    def ready(self) -> bool:
        """Check and claim the next emission slot."""
        now = self.clock()
        if self.last_emitted is None or now - self.last_emitted >= self.interval:
            self.last_emitted = now
            return True
        return False


@dataclass
class DownloadJob:
    """The single in-flight pull owned by a DownloadManager."""

    target: str
    transport: Transport | None = None
    process: subprocess.Popen | None = None
    response: httpx.Response | None = None
    client: httpx.Client | None = None
    thread: threading.Thread | None = None
    throttle: ProgressThrottle = field(default_factory=ProgressThrottle)
    started_at: float = field(default_factory=time.monotonic)
    last_progress_emitted: float | None = None
    last_percent: int = 0
    parsed_any: bool = False
    cancelled: bool = False
    error: str | None = None
    failure: DownloadInterruptedError | None = None
    finished: threading.Event = field(default_factory=threading.Event)
    _rate_origin: tuple[float, float, float] | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def estimate_eta(self, sample: ProgressSample, now: float) -> int | None:
        """Estimate seconds remaining from the byte rate since this layer began."""
        if sample.completed is None or sample.total is None:
            return None
        origin = self._rate_origin
        if origin is None or origin[2] != sample.total or sample.completed < origin[1]:
            self._rate_origin = (now, sample.completed, sample.total)
            return None
        elapsed = now - origin[0]
        done = sample.completed - origin[1]
        if elapsed <= 0 or done <= 0:
            return None
        return int((sample.total - sample.completed) / (done / elapsed))

    def close(self) -> None:
        """Abort the transport: terminate the child or drop the connection."""
        self.cancelled = True
        if self.process is not None:
            terminate_process(self.process, timeout=2.0)
        if self.response is not None:
            self._shutdown_connection(self.response)

    @staticmethod
    def _shutdown_connection(response: httpx.Response) -> None:
        """Shut down the socket under a streaming response.

        A reader blocked in iter_lines() on another thread only wakes once the
        socket is shut down; it then sees a read error.
        """
        stream = response.extensions.get("network_stream")
        sock = stream.get_extra_info("socket") if stream is not None else None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Socket already closed: {e}")


class DownloadManager:
    """Runs one cancellable model pull at a time.

    A pull requested while another is active is rejected with
    AlreadyDownloadingError; callers cancel first to switch models.
    """

    def __init__(
        self,
        sink: EventSink,
        config: AppConfig,
        prober: ReadinessProber | None = None,
        interval: float = PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        client_factory: Callable[..., httpx.Client] = httpx.Client,
        pull_command: Callable[[str], list[str]] | None = None,
    ):
        self.sink = sink
        self.config = config
        self.prober = prober or ReadinessProber()
        self.interval = interval
        self.clock = clock
        self.client_factory = client_factory
        self.pull_command = pull_command or self._default_pull_command
        self._job: DownloadJob | None = None
        self._last_job: DownloadJob | None = None
        self._lock = threading.Lock()

    @property
    def port(self) -> int:
        return self.config.ollama_port or OLLAMA_PORT_RANGE[0]

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._job is not None

    @property
    def active_target(self) -> str | None:
        with self._lock:
            return self._job.target if self._job else None

    @property
    def last_job(self) -> DownloadJob | None:
        """The most recently started pull, finished or not."""
        with self._lock:
            return self._last_job

    def pull(self, target: str) -> DownloadJob:
        """Start pulling a model in the background.

        Uses the model server's HTTP API when it is reachable, otherwise the
        service binary's own pull subcommand.

        Args:
            target: Model identifier, e.g. "llama3.2:1b"

        Returns:
            The started DownloadJob

        Raises:
            AlreadyDownloadingError: If a pull is already in flight
            BinaryNotFoundError: If the CLI transport has no binary
            SpawnFailedError: If the pull subprocess cannot start
        """
        with self._lock:
            if self._job is not None:
                raise AlreadyDownloadingError(f"Already downloading '{self._job.target}'")
            job = DownloadJob(target=target, throttle=ProgressThrottle(self.interval, self.clock))
            self._job = job
            self._last_job = job

        try:
            port = self.port
            if self.prober.is_reachable(port):
                job.transport = Transport.HTTP
                self.sink.log(COMPONENT, f"⬇ Pulling model '{target}' from the running server...")
                self._start_http(job, port)
            else:
                job.transport = Transport.CLI
                self.sink.log(COMPONENT, f"⬇ Pulling model '{target}'...")
                self._start_cli(job, port)
        except BaseException:
            self._clear(job)
            job.finished.set()
            raise

        logger.info(f"Pull of {target} started via {job.transport.value}")
        return job

    def cancel(self) -> DownloadJob:
        """Abort the active pull and free the slot.

        Raises:
            NoActiveDownloadError: If nothing is downloading
        """
        with self._lock:
            job = self._job
            if job is None:
                raise NoActiveDownloadError("No download in progress")
            self._job = None

        logger.info(f"Cancelling pull of {job.target}")
        job.close()
        return job

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for the most recent pull to finish. Returns True if it did."""
        with self._lock:
            job = self._last_job
        if job is None:
            return True
        return job.finished.wait(timeout)

    # --- Transports ---

    def _default_pull_command(self, target: str) -> list[str]:
        binary = self.config.ollama_path or find_ollama()
        if not binary:
            raise BinaryNotFoundError("Ollama", ollama_install_hint())
        return [binary, "pull", target]

    def _start_cli(self, job: DownloadJob, port: int) -> None:
        command = self.pull_command(job.target)
        env = {**os.environ, "OLLAMA_HOST": f"{LOOPBACK}:{port}"}
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=env,
            )
        except OSError as e:
            raise SpawnFailedError(f"Failed to start pull: {e}") from e

        job.process = process
        relay = LogRelay(self.sink, COMPONENT)
        readers = [
            relay.consume(process.stdout, lambda line: self._handle_line(job, line), name="stdout"),
            # The CLI draws its progress bar on stderr
            relay.consume(process.stderr, lambda line: self._handle_line(job, line, log_unparsed=True), name="stderr"),
        ]

        def run() -> None:
            code = process.wait()
            for reader in readers:
                reader.join()
            self._finish(job, code == 0, f"exit code {code}")

        job.thread = threading.Thread(target=run, name=f"pull-{job.target}", daemon=True)
        job.thread.start()

        # Cancelled while spawning
        if job.cancelled:
            terminate_process(process, timeout=2.0)

    def _start_http(self, job: DownloadJob, port: int) -> None:
        url = f"http://{LOOPBACK}:{port}/api/pull"
        job.client = self.client_factory(timeout=httpx.Timeout(HTTP_CONNECT_TIMEOUT, read=None))

        def run() -> None:
            success, detail = False, ""
            try:
                with job.client.stream("POST", url, json={"model": job.target, "stream": True}) as response:
                    job.response = response
                    # Cancelled while waiting for the response headers
                    if job.cancelled:
                        return
                    response.raise_for_status()
                    for line in response.iter_lines():
                        if job.cancelled:
                            break
                        self._handle_line(job, line)
                success = not job.cancelled
            except httpx.HTTPStatusError as e:
                detail = f"HTTP {e.response.status_code}"
            except httpx.HTTPError as e:
                detail = str(e) or type(e).__name__
            except Exception as e:
                # Closing the stream from cancel() surfaces here
                detail = str(e) or type(e).__name__
            finally:
                job.client.close()
                self._finish(job, success, detail)

        job.thread = threading.Thread(target=run, name=f"pull-{job.target}", daemon=True)
        job.thread.start()

    # --- Progress ---

    def _handle_line(self, job: DownloadJob, line: str, log_unparsed: bool = False) -> None:
        sample = parse_progress_line(line)
        if sample is None:
            text = line.strip()
            if log_unparsed and text:
                self.sink.log(COMPONENT, WARNING_PREFIX + text)
            return

        with job._lock:
            job.parsed_any = True
            if sample.failed:
                job.error = sample.message
                self.sink.log(COMPONENT, f"❌ {sample.message}")
                return

            if sample.percent is not None:
                job.last_percent = sample.percent
            eta = sample.eta_seconds
            if eta is None:
                eta = job.estimate_eta(sample, self.clock())

            if not job.throttle.ready():
                return
            job.last_progress_emitted = job.throttle.last_emitted
            percent = job.last_percent

        self.sink.progress(COMPONENT, percent, ProgressStatus.RUNNING, sample.message, eta)

    def _finish(self, job: DownloadJob, success: bool, detail: str) -> None:
        """Emit the terminal events for a job and release its slot."""
        target = job.target
        try:
            if job.cancelled:
                job.failure = DownloadInterruptedError(f"Download of '{target}' cancelled")
                self.sink.progress(
                    COMPONENT, job.last_percent, ProgressStatus.FAILED,
                    f"Download of '{target}' cancelled.",
                )
                self.sink.log(COMPONENT, f"🛑 Download of '{target}' cancelled.")
                logger.info(f"Pull of {target} cancelled")
            elif success and job.error is None:
                if job.parsed_any:
                    self.sink.progress(
                        COMPONENT, 100, ProgressStatus.DONE,
                        f"Model '{target}' pulled successfully.",
                    )
                    self.sink.log(COMPONENT, f"✅ Model '{target}' pulled successfully.")
                else:
                    self.sink.log(
                        COMPONENT,
                        f"ℹ Pull of '{target}' ended but no progress output was recognized.",
                    )
                if not self.config.ollama_default_model:
                    self.config.update(ollama_default_model=target)
                logger.info(f"Pull of {target} finished")
            else:
                reason = job.error or detail or "unknown error"
                job.failure = DownloadInterruptedError(f"Download of '{target}' interrupted: {reason}")
                self.sink.progress(
                    COMPONENT, job.last_percent, ProgressStatus.FAILED,
                    f"Download of '{target}' interrupted: {reason}",
                )
                self.sink.log(COMPONENT, f"❌ Download interrupted: {reason}")
                logger.warning(f"Pull of {target} interrupted: {reason}")
        finally:
            self._clear(job)
            job.finished.set()

    def _clear(self, job: DownloadJob) -> None:
        with self._lock:
            if self._job is job:
                self._job = None
