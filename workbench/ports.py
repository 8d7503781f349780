"""Port allocation and readiness probing on the loopback interface."""

from __future__ import annotations

import logging
import socket

from workbench.config import AppConfig
from workbench.errors import PortUnavailableError
from workbench.port_freer import PortFreer, get_port_freer
from workbench.schemas import PortConfig

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"

# Port ranges scanned for each service (inclusive)
N8N_PORT_RANGE = (5678, 5698)
OLLAMA_PORT_RANGE = (11434, 11454)

# Connect timeout for readiness probes
PROBE_TIMEOUT = 0.5  # seconds


def check_port_available(port: int) -> bool:
    """Check if a local listener can be bound to the port right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((LOOPBACK, port))
        except OSError:
            return False
    return True


def find_available_port(start: int, end: int, exclude: set[int] | None = None) -> int | None:
    """Find the first bindable port in [start, end], scanning upward.

    Args:
        start: First port of the range
        end: Last port of the range (inclusive)
        exclude: Ports to skip even if bindable

    Returns:
        The first available port, or None if the range is exhausted
    """
    exclude = exclude or set()
    for port in range(start, end + 1):
        if port in exclude:
            continue
        if check_port_available(port):
            return port
    return None


def require_available_port(start: int, end: int, exclude: set[int] | None = None) -> int:
    """Like find_available_port, but an exhausted range is an error.

    Raises:
        PortUnavailableError: If no port in the range can be bound
    """
    port = find_available_port(start, end, exclude=exclude)
    if port is None:
        raise PortUnavailableError(f"No free port in {start}-{end}")
    return port


def _allocate_in_range(name: str, port_range: tuple[int, int], exclude: set[int]) -> int:
    start, end = port_range
    try:
        return require_available_port(start, end, exclude=exclude)
    except PortUnavailableError as e:
        # Optimistic fallback: the caller may still collide on this port
        fallback = next((p for p in range(start, end + 1) if p not in exclude), start)
        logger.warning(f"{name}: {e}, falling back to {fallback}")
        return fallback


def allocate_ports(
    config: AppConfig,
    n8n_range: tuple[int, int] = N8N_PORT_RANGE,
    ollama_range: tuple[int, int] = OLLAMA_PORT_RANGE,
) -> PortConfig:
    """Allocate the session port pair and persist it.

    Args:
        config: Configuration that receives the chosen ports
        n8n_range: Inclusive range scanned for n8n
        ollama_range: Inclusive range scanned for Ollama

    Returns:
        PortConfig with the allocated pair
    """
    n8n_port = _allocate_in_range("n8n", n8n_range, exclude=set())
    ollama_port = _allocate_in_range("ollama", ollama_range, exclude={n8n_port})

    ports = PortConfig(n8n_port=n8n_port, ollama_port=ollama_port)
    config.update(n8n_port=ports.n8n_port, ollama_port=ports.ollama_port)
    logger.info(f"Allocated ports: n8n={n8n_port}, ollama={ollama_port}")
    return ports


class ReadinessProber:
    """Bounded TCP probes against loopback ports, plus forced port freeing."""

    def __init__(self, freer: PortFreer | None = None, timeout: float = PROBE_TIMEOUT):
        self.freer = freer or get_port_freer()
        self.timeout = timeout

    def is_reachable(self, port: int, timeout: float | None = None) -> bool:
        """Check whether something accepts connections on the port.

        Never raises: no listener is a normal False.
        """
        try:
            with socket.create_connection((LOOPBACK, port), timeout=timeout or self.timeout):
                return True
        except OSError:
            return False

    def force_free(self, port: int) -> list[int]:
        """Terminate whatever holds the port. Idempotent on a free port.

        Raises:
            PlatformCommandFailedError: If port introspection cannot run
        """
        return self.freer.free(port)

    @staticmethod
    def address(port: int) -> str:
        return f"{LOOPBACK}:{port}"
