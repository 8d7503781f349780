"""Pydantic schemas for workbench commands and front-end events."""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class ServiceName(str, Enum):
    """Services managed by the workbench."""

    N8N = "n8n"
    OLLAMA = "ollama"


class ProgressStatus(str, Enum):
    """Status carried by a progress event."""

    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class EventType(str, Enum):
    """Event channels emitted to the front end."""

    COMPONENT_LOG = "component-log"
    COMPONENT_PROGRESS = "component-progress"


# --- Port allocation ---


class PortConfig(BaseModel):
    """Port pair allocated once per session."""

    n8n_port: int = Field(..., ge=1, le=65535)
    ollama_port: int = Field(..., ge=1, le=65535)


# --- Events ---


class ComponentLog(BaseModel):
    """A single line of human-readable output for a component."""

    component: str
    message: str


class ComponentProgress(BaseModel):
    """Incremental progress for a long-running component operation."""

    component: str
    percent: int = Field(..., ge=0, le=100)
    status: ProgressStatus
    message: str
    eta_seconds: int | None = Field(default=None, ge=0)


class Event(BaseModel):
    """Envelope delivered to event subscribers."""

    type: EventType
    # Progress first: a progress payload also satisfies ComponentLog
    data: ComponentProgress | ComponentLog = Field(..., union_mode="left_to_right")


# --- Command results ---


class CommandResult(BaseModel):
    """Outcome of a front-end command."""

    ok: bool
    message: str
    error_kind: str | None = None


class PullRequest(BaseModel):
    """Request to pull a model."""

    target: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9][A-Za-z0-9._:/-]*$")


class ModelList(BaseModel):
    """Installed model identifiers in listing order, or why listing failed."""

    models: list[str] = Field(default_factory=list)
    ok: bool = True
    message: str | None = None
    error_kind: str | None = None


class EnvironmentStatus(BaseModel):
    """Result of probing the local toolchain."""

    node_installed: bool = False
    node_version: str | None = None
    npm_installed: bool = False
    npm_version: str | None = None
    n8n_installed: bool = False
    n8n_version: str | None = None
    ollama_installed: bool = False
    ollama_version: str | None = None


class RequirementsReport(BaseModel):
    """Machine resources compared against minimums for the local stack."""

    passed: bool
    issues: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    os: str
    ram_gb: float
    disk_gb: float | None = None


class ErrorResponse(BaseModel):
    """Error response for failed requests."""

    detail: str
    error_code: str | None = None


class HealthResponse(BaseModel):
    """Broker health check response."""

    broker: Literal["healthy", "unhealthy"] = "healthy"
    running_services: list[str] = Field(default_factory=list)
    download_active: bool = False
