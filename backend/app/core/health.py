"""
Health check aggregation — deep health probe for the broadcast service.

Checks:
    • Broadcast store reachability (memory or SQL)
    • Scheduler loop (running, last sweep)
    • Channel adapters (configured providers)
    • Dispatcher backlog (broadcasts still fanning out)

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from backend.app.core.config import settings

if TYPE_CHECKING:
    from backend.app.broadcasts.service import BroadcastService

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


_start_time = time.monotonic()


async def check_store(service: "BroadcastService") -> ComponentHealth:
    """Round-trip to the broadcast store."""
    comp = ComponentHealth(name="store")
    start = time.monotonic()
    comp.details = {"backend": service.store.backend_name}
    try:
        service.store.ping()
        comp.message = "Store reachable"
    except Exception as e:
        logger.error("Store health check failed: %s", e)
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_scheduler(service: "BroadcastService") -> ComponentHealth:
    """Scheduler loop running, and how the last sweep went."""
    comp = ComponentHealth(name="scheduler")
    start = time.monotonic()
    scheduler = service.scheduler
    last = scheduler.last_report

    comp.details = {
        "running": scheduler.running,
        "enabled": settings.SCHEDULER_ENABLED,
        "last_sweep": last.to_dict() if last else None,
    }
    if settings.SCHEDULER_ENABLED and not scheduler.running:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Scheduler loop not running; scheduled broadcasts will not be released"
    elif last is not None and last.errors:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Last sweep had {last.errors} error(s)"
    else:
        comp.message = "Scheduler idle" if last is None else "Last sweep clean"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_channels(service: "BroadcastService") -> ComponentHealth:
    """Configured provider per channel."""
    comp = ComponentHealth(name="channels")
    start = time.monotonic()
    catalogue = service.channel_catalogue()
    comp.details = {entry["channel"]: entry["provider"] for entry in catalogue}

    simulated = sorted(ch for ch, provider in comp.details.items() if provider == "simulation")
    if not catalogue:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "No channel adapters configured"
    elif simulated and settings.is_production:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Simulated providers in production: {', '.join(simulated)}"
    else:
        comp.message = f"{len(catalogue)} channels configured"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_dispatch(service: "BroadcastService") -> ComponentHealth:
    """Broadcasts whose fan-out has not completed yet."""
    comp = ComponentHealth(name="dispatch")
    start = time.monotonic()
    in_flight = service.dispatcher.in_flight()
    comp.details = {
        "in_flight": len(in_flight),
        "broadcasts": [r.broadcast_id for r in in_flight[:10]],
    }
    comp.message = f"{len(in_flight)} broadcast(s) in flight"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(service: "BroadcastService") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_store(service),
        check_scheduler(service),
        check_channels(service),
        check_dispatch(service),
    ]

    for coro in checks:
        comp = await coro
        report.components.append(comp)

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
