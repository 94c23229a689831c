"""
Collaborator health checks for converge.

Provides health verification for the control plane, artifact registry
and secret store clients.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    """Health status for a collaborator."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class HealthCheckResult:
    """Result of a health check."""

    provider_name: str
    provider_type: str  # control_plane, artifacts, secrets
    status: HealthStatus
    latency_ms: Optional[float] = None
    message: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_name": self.provider_name,
            "provider_type": self.provider_type,
            "status": self.status.value,
            "latency_ms": self.latency_ms,
            "message": self.message,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


class ProviderHealthChecker:
    """
    Health checker for collaborators.

    A collaborator that exposes an async `health_check()` returning a bool
    is checked; one that does not is reported healthy if it is reachable
    as an object (in-memory collaborators).
    """

    # Thresholds for health status
    LATENCY_DEGRADED_MS = 2000
    LATENCY_UNHEALTHY_MS = 10000

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds

    async def check(self, provider: Any, provider_type: str) -> HealthCheckResult:
        provider_name = getattr(provider, "name", "unknown")
        start_time = time.perf_counter()
        health_check = getattr(provider, "health_check", None)

        try:
            healthy = True
            if health_check is not None:
                healthy = await asyncio.wait_for(health_check(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            result = HealthCheckResult(
                provider_name=provider_name,
                provider_type=provider_type,
                status=HealthStatus.UNHEALTHY,
                latency_ms=(time.perf_counter() - start_time) * 1000,
                error=f"Timeout after {self.timeout_seconds}s",
            )
        except Exception as e:
            result = HealthCheckResult(
                provider_name=provider_name,
                provider_type=provider_type,
                status=HealthStatus.UNHEALTHY,
                latency_ms=(time.perf_counter() - start_time) * 1000,
                error=str(e),
            )
        else:
            latency_ms = (time.perf_counter() - start_time) * 1000
            if not healthy or latency_ms > self.LATENCY_UNHEALTHY_MS:
                status = HealthStatus.UNHEALTHY
            elif latency_ms > self.LATENCY_DEGRADED_MS:
                status = HealthStatus.DEGRADED
            else:
                status = HealthStatus.HEALTHY
            result = HealthCheckResult(
                provider_name=provider_name,
                provider_type=provider_type,
                status=status,
                latency_ms=latency_ms,
                message="Provider is operational" if healthy else "Health check failed",
            )

        return result

    @staticmethod
    def overall(results: List[HealthCheckResult]) -> HealthStatus:
        if not results:
            return HealthStatus.UNKNOWN
        statuses = {r.status for r in results}
        if HealthStatus.UNHEALTHY in statuses:
            return HealthStatus.UNHEALTHY
        if HealthStatus.DEGRADED in statuses:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY
