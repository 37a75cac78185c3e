"""Response schemas for the kube-pat REST API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Error envelope returned by every failing endpoint."""

    error: str
    detail: str


class HealthResponse(BaseModel):
    status: str
    version: str


class ReadinessResponse(BaseModel):
    ready: bool
    controller: str
    cache_synced: bool


class CacheStats(BaseModel):
    translations: int
    services: int
    synced: bool


class StatusResponse(BaseModel):
    """Controller state plus the report of the most recent pass."""

    version: str
    controller: str
    passes: int
    interface: str
    cache: CacheStats
    last_pass: dict[str, Any] | None = None


class RulesResponse(BaseModel):
    chain: str = "PREROUTING"
    rules: list[str] = Field(default_factory=list)
