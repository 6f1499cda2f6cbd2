"""Health check utilities for monitoring service health.

This module provides health check capabilities for ticket-bridge:
- Validate configuration and platform credentials format
- Check the ticket datastore responds
- Report adapter availability and queue depth from a running bridge
- Generate health status reports, optionally written to a file
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from ticket_bridge.config.schema import TELEGRAM_TOKEN_PATTERN
from ticket_bridge.utils.logging import LogEventNames
from ticket_bridge.utils.security import mask_config_value

if TYPE_CHECKING:
    from ticket_bridge.config.schema import BridgeConfig
    from ticket_bridge.core.bridge import BridgeManager
    from ticket_bridge.interfaces.repository import TicketRepository

log = structlog.get_logger()


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class CheckResult:
    """Result of a single health check."""

    name: str
    status: HealthStatus
    message: str
    latency_ms: float | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthReport:
    """Overall health report."""

    healthy: bool
    status: HealthStatus
    timestamp: datetime
    checks: list[CheckResult]
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "healthy": self.healthy,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "checks": [
                {
                    "name": c.name,
                    "status": c.status.value,
                    "message": c.message,
                    "latency_ms": c.latency_ms,
                    "details": c.details,
                }
                for c in self.checks
            ],
            "details": self.details,
        }


class HealthChecker:
    """Performs health checks on the bridge and its dependencies.

    Without a repository or bridge (``--health-check`` from the CLI) only
    the static checks run; a running service passes both.

    Example:
        checker = HealthChecker(config, repository=repo, bridge=bridge)
        report = await checker.run_all_checks()
        if not report.healthy:
            print(report.details)
    """

    def __init__(
        self,
        config: BridgeConfig,
        repository: TicketRepository | None = None,
        bridge: BridgeManager | None = None,
    ) -> None:
        self._config = config
        self._repository = repository
        self._bridge = bridge

    async def run_all_checks(self) -> HealthReport:
        """Run all health checks and return a report."""
        log.debug(LogEventNames.HEALTH_CHECK_START)
        start_time = datetime.now(UTC)

        results = await asyncio.gather(
            self._check_config(),
            self._check_telegram_token(),
            self._check_slack_tokens(),
            self._check_database(),
            self._check_bridge(),
            return_exceptions=True,
        )

        checks: list[CheckResult] = []
        for result in results:
            if isinstance(result, BaseException):
                checks.append(
                    CheckResult(
                        name="unknown",
                        status=HealthStatus.UNHEALTHY,
                        message=f"Check failed with exception: {result}",
                    )
                )
            elif result is not None:
                checks.append(result)

        # Determine overall status
        if all(c.status == HealthStatus.HEALTHY for c in checks):
            overall_status = HealthStatus.HEALTHY
            healthy = True
        elif any(c.status == HealthStatus.UNHEALTHY for c in checks):
            overall_status = HealthStatus.UNHEALTHY
            healthy = False
        else:
            overall_status = HealthStatus.DEGRADED
            healthy = True

        report = HealthReport(
            healthy=healthy,
            status=overall_status,
            timestamp=start_time,
            checks=checks,
            details={
                "total_checks": len(checks),
                "healthy_checks": sum(1 for c in checks if c.status == HealthStatus.HEALTHY),
                "degraded_checks": sum(1 for c in checks if c.status == HealthStatus.DEGRADED),
                "unhealthy_checks": sum(1 for c in checks if c.status == HealthStatus.UNHEALTHY),
            },
        )

        log.info(
            LogEventNames.HEALTH_CHECK_COMPLETE,
            healthy=healthy,
            status=overall_status.value,
            checks_run=len(checks),
        )
        return report

    async def _check_config(self) -> CheckResult:
        """Check that categories are configured and consistent."""
        categories = self._config.categories
        if not categories:
            return CheckResult(
                name="config",
                status=HealthStatus.DEGRADED,
                message="No categories configured; tickets cannot be opened",
            )

        default_id = self._config.bridge.default_category_id
        if default_id is not None and default_id not in {c.id for c in categories}:
            return CheckResult(
                name="config",
                status=HealthStatus.UNHEALTHY,
                message=f"Default category {default_id} is not configured",
            )

        return CheckResult(
            name="config",
            status=HealthStatus.HEALTHY,
            message="Configuration valid",
            details={
                "origin_provider": self._config.origin.provider,
                "destination_provider": self._config.destination.provider,
                "categories": len(categories),
            },
        )

    async def _check_telegram_token(self) -> CheckResult:
        """Check Telegram token presence and format (not validity)."""
        telegram = self._config.origin.telegram
        if telegram is None:
            return CheckResult(
                name="telegram_token",
                status=HealthStatus.UNHEALTHY,
                message="Telegram configuration missing",
            )
        if not TELEGRAM_TOKEN_PATTERN.match(telegram.bot_token):
            return CheckResult(
                name="telegram_token",
                status=HealthStatus.UNHEALTHY,
                message="Invalid bot token format",
            )
        return CheckResult(
            name="telegram_token",
            status=HealthStatus.HEALTHY,
            message="Telegram token configured",
            details={"bot_token": mask_config_value("bot_token", telegram.bot_token)},
        )

    async def _check_slack_tokens(self) -> CheckResult:
        """Check Slack token presence and format (not validity)."""
        slack = self._config.destination.slack
        if slack is None:
            return CheckResult(
                name="slack_tokens",
                status=HealthStatus.UNHEALTHY,
                message="Slack configuration missing",
            )

        if not slack.bot_token.startswith("xoxb-"):
            return CheckResult(
                name="slack_tokens",
                status=HealthStatus.UNHEALTHY,
                message="Invalid bot token format",
            )

        if not slack.app_token.startswith("xapp-"):
            return CheckResult(
                name="slack_tokens",
                status=HealthStatus.UNHEALTHY,
                message="Invalid app token format",
            )

        return CheckResult(
            name="slack_tokens",
            status=HealthStatus.HEALTHY,
            message="Slack tokens configured",
            details={
                "bot_token": mask_config_value("bot_token", slack.bot_token),
                "app_token": mask_config_value("app_token", slack.app_token),
            },
        )

    async def _check_database(self) -> CheckResult | None:
        """Check the datastore answers a trivial query."""
        if self._repository is None:
            return None

        start = time.monotonic()
        ok = await self._repository.ping()
        latency = (time.monotonic() - start) * 1000

        if ok:
            return CheckResult(
                name="database",
                status=HealthStatus.HEALTHY,
                message="Datastore reachable",
                latency_ms=latency,
            )
        return CheckResult(
            name="database",
            status=HealthStatus.UNHEALTHY,
            message="Datastore unavailable",
            latency_ms=latency,
        )

    async def _check_bridge(self) -> CheckResult | None:
        """Report adapter availability; one side down is degraded, not unhealthy."""
        if self._bridge is None:
            return None

        snapshot = self._bridge.health_check()
        details = snapshot.to_dict()

        if snapshot.origin_available and snapshot.destination_available:
            return CheckResult(
                name="bridge",
                status=HealthStatus.HEALTHY,
                message="Both platforms connected",
                details=details,
            )

        down = [
            side
            for side, available in (
                ("origin", snapshot.origin_available),
                ("destination", snapshot.destination_available),
            )
            if not available
        ]
        return CheckResult(
            name="bridge",
            status=HealthStatus.DEGRADED,
            message=f"Unavailable: {', '.join(down)}; {snapshot.queue_depth} message(s) queued",
            details=details,
        )


async def write_health_file(report: HealthReport, path: Path) -> None:
    """Write health report to a file for external monitoring.

    Args:
        report: Health report to write
        path: File path to write to
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(report.to_dict(), indent=2))
        log.debug("health_file_written", path=str(path))
    except OSError as e:
        log.error("health_file_write_error", path=str(path), error=str(e))
