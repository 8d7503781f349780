"""Workbench service orchestrator.

Allocates loopback ports for a local n8n agent-workflow runtime and an Ollama
model server, launches and stops them as child processes, relays their
output as structured events, and runs cancellable model pulls.
"""

__version__ = "0.1.0"
