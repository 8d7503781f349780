"""Hardware checks: total RAM and free disk against minimums."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import psutil

from workbench.schemas import RequirementsReport

logger = logging.getLogger(__name__)

# n8n plus one small local model
MIN_RAM_GB = 8.0
MIN_DISK_GB = 10.0

_BYTES_PER_GB = 1024 ** 3

KNOWN_OS = ("windows", "macos", "linux")


def detect_os() -> str:
    """Short OS name: windows, macos, linux, or the raw platform string."""
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "macos"
    if sys.platform.startswith("linux"):
        return "linux"
    return sys.platform


def get_system_ram_gb() -> float:
    """Total physical memory in GB."""
    return psutil.virtual_memory().total / _BYTES_PER_GB


def get_free_disk_gb(path: str | Path) -> float:
    """Free space on the volume holding path, in GB."""
    return psutil.disk_usage(str(path)).free / _BYTES_PER_GB


def validate_requirements(
    min_ram_gb: float = MIN_RAM_GB,
    min_disk_gb: float = MIN_DISK_GB,
    path: str | Path | None = None,
) -> RequirementsReport:
    """Compare this machine against the minimums.

    Shortfalls are issues and fail the check; an unrecognized OS or an
    unreadable volume is only a warning.

    Args:
        min_ram_gb: Required total RAM
        min_disk_gb: Required free disk on the volume holding path
        path: Where models and n8n data live (defaults to the home directory)

    Returns:
        RequirementsReport with passed set when there are no issues
    """
    path = path or Path.home()
    os_name = detect_os()
    issues: list[str] = []
    warnings: list[str] = []

    ram_gb = round(get_system_ram_gb(), 1)
    if ram_gb < min_ram_gb:
        issues.append(f"Insufficient RAM: {ram_gb} GB (found) < {min_ram_gb} GB (required)")

    try:
        disk_gb = round(get_free_disk_gb(path), 1)
    except OSError as e:
        logger.warning(f"Free space check failed for {path}: {e}")
        warnings.append(f"Could not read free disk space at {path}: {e}")
        disk_gb = None
    if disk_gb is not None and disk_gb < min_disk_gb:
        issues.append(f"Low disk space: {disk_gb} GB (found) < {min_disk_gb} GB (required)")

    if os_name not in KNOWN_OS:
        warnings.append(f"Unrecognized OS detected: {os_name}")

    return RequirementsReport(
        passed=not issues,
        issues=issues,
        warnings=warnings,
        os=os_name,
        ram_gb=ram_gb,
        disk_gb=disk_gb,
    )
