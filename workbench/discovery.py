"""Binary discovery and one-shot toolchain version probes."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path

from workbench.schemas import EnvironmentStatus

logger = logging.getLogger(__name__)

VERSION_TIMEOUT = 10  # seconds

OLLAMA_DOWNLOAD_URL = "https://ollama.com/download"
NODE_DOWNLOAD_URL = "https://nodejs.org/en/download/"

# Known install locations checked after PATH
OLLAMA_CANDIDATES = [
    "%LOCALAPPDATA%/Programs/Ollama/ollama.exe",
    "C:/Program Files/Ollama/ollama.exe",
    "C:/Program Files (x86)/Ollama/ollama.exe",
    "/usr/local/bin/ollama",
    "/usr/bin/ollama",
    "/opt/homebrew/bin/ollama",
]

NPM_CANDIDATES = [
    "C:/Program Files/nodejs/npm.cmd",
    "C:/Program Files (x86)/nodejs/npm.cmd",
    "%APPDATA%/npm/npm.cmd",
    "/usr/local/bin/npm",
    "/opt/homebrew/bin/npm",
    "/usr/bin/npm",
]

N8N_CANDIDATES = [
    "%APPDATA%/npm/n8n.cmd",
    "/usr/local/bin/n8n",
    "/opt/homebrew/bin/n8n",
    "/usr/bin/n8n",
]


def _expand(candidate: str) -> str:
    return os.path.expandvars(os.path.expanduser(candidate))


def find_binary(name: str, candidates: list[str] | None = None) -> str | None:
    """Locate an executable on PATH, then in known install locations.

    Args:
        name: Executable name as looked up on PATH
        candidates: Absolute paths to try afterwards (env vars expanded)

    Returns:
        Path to the executable, or None if not found
    """
    found = shutil.which(name)
    if found:
        return found

    for candidate in candidates or []:
        expanded = _expand(candidate)
        # Unexpanded %VAR% means the variable is unset on this platform
        if "%" in expanded:
            continue
        if Path(expanded).is_file():
            logger.debug(f"Found {name} at {expanded}")
            return expanded

    logger.debug(f"{name} not detected in known paths")
    return None


def find_ollama() -> str | None:
    return find_binary("ollama", OLLAMA_CANDIDATES)


def find_npm() -> str | None:
    return find_binary("npm", NPM_CANDIDATES)


def detect_n8n_command() -> tuple[str, list[str]] | None:
    """Find how to start n8n: the global binary, else through npx."""
    n8n = find_binary("n8n", N8N_CANDIDATES)
    if n8n:
        return n8n, ["start"]

    npx = shutil.which("npx")
    if npx:
        return npx, ["--yes", "n8n", "start"]
    return None


def tool_version(binary: str, flag: str = "--version") -> str | None:
    """Run `binary flag` and return its trimmed stdout, or None on failure."""
    try:
        result = subprocess.run(
            [binary, flag],
            capture_output=True,
            text=True,
            timeout=VERSION_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"Version probe failed for {binary}: {e}")
        return None

    if result.returncode != 0:
        return None
    return result.stdout.strip().splitlines()[0] if result.stdout.strip() else None


def probe_environment() -> EnvironmentStatus:
    """Probe node, npm, n8n and ollama versions."""
    status = EnvironmentStatus()

    node = shutil.which("node")
    if node:
        status.node_version = tool_version(node, "-v")
        status.node_installed = status.node_version is not None

    npm = find_npm()
    if npm:
        status.npm_version = tool_version(npm, "-v")
        status.npm_installed = status.npm_version is not None

    n8n = find_binary("n8n", N8N_CANDIDATES)
    if n8n:
        status.n8n_version = tool_version(n8n)
        status.n8n_installed = status.n8n_version is not None

    ollama = find_ollama()
    if ollama:
        status.ollama_version = tool_version(ollama)
        status.ollama_installed = status.ollama_version is not None

    return status


def ollama_install_hint() -> str:
    """Remediation hint for a missing Ollama binary."""
    if sys.platform.startswith("win"):
        return f"Please download Ollama manually from {OLLAMA_DOWNLOAD_URL}/windows"
    if sys.platform == "darwin":
        return f"Please download Ollama from {OLLAMA_DOWNLOAD_URL}/mac"
    return f"Please install Ollama from {OLLAMA_DOWNLOAD_URL}/linux"


def node_install_hint() -> str:
    """Remediation hint for a missing Node.js runtime."""
    if sys.platform.startswith("win"):
        return "Please install Node.js from https://nodejs.org/dist/latest-v18.x/"
    if sys.platform == "darwin":
        return f"Please install Node.js from {NODE_DOWNLOAD_URL}"
    return f"Please install Node.js with your package manager: {NODE_DOWNLOAD_URL}package-manager/"
