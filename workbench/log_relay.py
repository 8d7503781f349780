"""Log relay: drains child-process output into component-log events."""

from __future__ import annotations

import logging
import threading
from typing import Callable, TextIO

from workbench.events import EventSink

logger = logging.getLogger(__name__)

ERROR_PREFIX = "❌ "
WARNING_PREFIX = "⚠ "

# Markers that always surface, prefixed with ERROR_PREFIX
ERROR_MARKERS = ("ERR!", "Error:", "ERROR")

# Dependency chatter dropped unless verbose
NOISE_PATTERNS = (
    "deprecated",
    "npm WARN",
    "ERESOLVE",
    "conflicting peer dependency",
    "peerOptional",
)


def _categorize(line: str) -> str | None:
    """Return a semantic prefix for recognized lines."""
    if "added " in line and "packages" in line:
        return "📦 "
    if "audited " in line:
        return "🔍 "
    if "up to date" in line:
        return "✅ "
    return None


def is_noise(line: str) -> bool:
    """Check if a line is dependency-deprecation or peer-dependency chatter."""
    return any(pattern in line for pattern in NOISE_PATTERNS)


def filter_log_line(line: str, verbose: bool = False, fallback_prefix: str = "") -> str | None:
    """Filter and annotate one line of process output.

    Args:
        line: Raw line without its newline
        verbose: Keep noisy lines instead of dropping them
        fallback_prefix: Prefix for lines that match no category

    Returns:
        The line to emit, or None to suppress it
    """
    text = line.strip()
    if not text:
        return None

    if any(marker in text for marker in ERROR_MARKERS):
        return ERROR_PREFIX + text

    if not verbose and is_noise(text):
        return None

    prefix = _categorize(text)
    if prefix:
        return prefix + text
    return fallback_prefix + text


def iter_lines(stream: TextIO):
    """Yield lines from a text stream until EOF, without line endings."""
    for line in iter(stream.readline, ""):
        yield line.rstrip("\r\n")


class LogRelay:
    """Republishes a process's output streams as component-log events."""

    def __init__(self, sink: EventSink, component: str, verbose: bool = False):
        self.sink = sink
        self.component = component
        self.verbose = verbose

    def relay(self, stream: TextIO, fallback_prefix: str = "", name: str = "stdout") -> threading.Thread:
        """Start a worker that filters each line of the stream into the sink."""
        return self.consume(
            stream,
            lambda line: self._emit_filtered(line, fallback_prefix),
            name=name,
        )

    def consume(self, stream: TextIO, on_line: Callable[[str], None], name: str = "stdout") -> threading.Thread:
        """Start a worker that hands each raw line of the stream to a callback.

        The worker exits on EOF. Callback failures are logged and skipped so a
        slow or broken consumer never stops the pipe from being drained.
        """
        thread = threading.Thread(
            target=self._drain,
            args=(stream, on_line),
            name=f"relay-{self.component}-{name}",
            daemon=True,
        )
        thread.start()
        return thread

    def _emit_filtered(self, line: str, fallback_prefix: str) -> None:
        filtered = filter_log_line(line, verbose=self.verbose, fallback_prefix=fallback_prefix)
        if filtered is not None:
            self.sink.log(self.component, filtered)

    def _drain(self, stream: TextIO, on_line: Callable[[str], None]) -> None:
        try:
            for line in iter_lines(stream):
                try:
                    on_line(line)
                except Exception as e:
                    logger.debug(f"Dropped line from {self.component}: {e}")
        except (OSError, ValueError) as e:
            # Stream closed underneath us (process killed)
            logger.debug(f"Stopped reading {self.component} output: {e}")
        finally:
            try:
                stream.close()
            except OSError:
                pass
