"""
Alert system for transcode worker events.

Provides webhook notifications for:
- Jobs that failed (after repeated failures for the same file)
- Worker startup and shutdown

Includes rate limiting to prevent alert flooding.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional

import httpx

import config
from worker.errors import truncate_error

logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    """Types of alerts that can be sent."""

    JOB_FAILED = "job_failed"
    WORKER_STARTUP = "worker_startup"
    WORKER_SHUTDOWN = "worker_shutdown"


@dataclass
class AlertMetrics:
    """Tracks metrics for alerting and monitoring."""

    # Counters
    jobs_completed: int = 0
    jobs_failed: int = 0
    jobs_deduplicated: int = 0
    alerts_sent: int = 0
    alerts_rate_limited: int = 0
    alerts_failed: int = 0

    # Last alert timestamps by type (for rate limiting)
    last_alert_time: Dict[str, float] = field(default_factory=dict)

    # Track failures by file for pattern detection
    file_failure_counts: Dict[str, int] = field(default_factory=dict)

    def increment_completed(self) -> int:
        self.jobs_completed += 1
        return self.jobs_completed

    def increment_deduplicated(self) -> int:
        self.jobs_deduplicated += 1
        return self.jobs_deduplicated

    def increment_failed(self, key: Optional[str] = None) -> int:
        """Increment jobs failed counter and track per-file failures."""
        self.jobs_failed += 1
        if key is not None:
            self.file_failure_counts[key] = self.file_failure_counts.get(key, 0) + 1
        return self.jobs_failed

    def get_file_failure_count(self, key: str) -> int:
        return self.file_failure_counts.get(key, 0)

    def can_send_alert(self, alert_type: str, rate_limit_seconds: int = 300) -> bool:
        """Check if enough time has passed since the last alert of this type."""
        last_time = self.last_alert_time.get(alert_type)
        if last_time is None:
            return True
        return (time.time() - last_time) >= rate_limit_seconds

    def record_alert_sent(self, alert_type: str):
        self.last_alert_time[alert_type] = time.time()
        self.alerts_sent += 1

    def record_alert_rate_limited(self):
        self.alerts_rate_limited += 1

    def record_alert_failed(self):
        self.alerts_failed += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to a dictionary for reporting."""
        return {
            "jobs_completed": self.jobs_completed,
            "jobs_failed": self.jobs_failed,
            "jobs_deduplicated": self.jobs_deduplicated,
            "alerts_sent": self.alerts_sent,
            "alerts_rate_limited": self.alerts_rate_limited,
            "alerts_failed": self.alerts_failed,
            "files_with_failures": len(self.file_failure_counts),
        }


# Global metrics instance
_metrics: Optional[AlertMetrics] = None


def get_metrics() -> AlertMetrics:
    """Get or create the global metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = AlertMetrics()
    return _metrics


def reset_metrics():
    """Reset metrics (for testing)."""
    global _metrics
    _metrics = AlertMetrics()


def send_alert_fire_and_forget(coro: Awaitable[Any]) -> None:
    """
    Schedule an alert coroutine as a fire-and-forget background task.

    Alert failures never reach the worker; they are logged at debug level.
    """

    async def _safe_send():
        try:
            await coro
        except Exception as e:
            logger.debug(f"Failed to send alert (fire-and-forget): {e}")

    try:
        asyncio.get_running_loop()
    except RuntimeError:
        logger.debug("Cannot send alert: no running event loop")
        coro.close()
        return
    asyncio.create_task(_safe_send())


async def send_webhook_alert(
    alert_type: AlertType,
    details: Dict[str, Any],
    force: bool = False,
) -> bool:
    """
    Send an alert to the configured webhook URL.

    Args:
        alert_type: Type of alert being sent
        details: Additional details about the alert
        force: If True, bypass rate limiting

    Returns:
        True if alert was sent successfully, False otherwise
    """
    webhook_url = config.ALERT_WEBHOOK_URL
    webhook_timeout = config.ALERT_WEBHOOK_TIMEOUT
    if not webhook_url:
        return False

    metrics = get_metrics()

    if not force and not metrics.can_send_alert(alert_type.value, config.ALERT_RATE_LIMIT_SECONDS):
        metrics.record_alert_rate_limited()
        logger.debug(f"Alert {alert_type.value} rate limited")
        return False

    payload = {
        "event": alert_type.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "details": details,
        "metrics": metrics.to_dict(),
    }

    try:
        async with httpx.AsyncClient(timeout=webhook_timeout) as client:
            response = await client.post(webhook_url, json=payload)
            response.raise_for_status()

        metrics.record_alert_sent(alert_type.value)
        logger.info(f"Alert sent: {alert_type.value}")
        return True

    except httpx.TimeoutException:
        metrics.record_alert_failed()
        logger.warning(f"Alert webhook timed out after {webhook_timeout}s")
        return False
    except httpx.HTTPStatusError as e:
        metrics.record_alert_failed()
        logger.warning(f"Alert webhook returned error: {e.response.status_code}")
        return False
    except httpx.HTTPError as e:
        metrics.record_alert_failed()
        logger.warning(f"Failed to send alert webhook: {e}")
        return False


async def alert_job_failed(key: str, step: str, error: str, trigger: Optional[str] = None):
    """
    Send alert when a job fails.

    The caller records the failure in the metrics first. Only alerts once the
    same file has failed at least twice, so a single transient failure that
    the next scan fixes stays quiet.
    """
    failure_count = get_metrics().get_file_failure_count(key)

    if failure_count >= 2:
        await send_webhook_alert(
            AlertType.JOB_FAILED,
            {
                "file": key,
                "step": step,
                "trigger": trigger,
                "error": truncate_error(error),
                "file_failure_count": failure_count,
            },
        )


async def alert_worker_startup(worker_id: str, owning_columns: List[str]):
    await send_webhook_alert(
        AlertType.WORKER_STARTUP,
        {"worker_id": worker_id, "owning_columns": owning_columns},
        force=True,
    )


async def alert_worker_shutdown(worker_id: str, jobs_dropped: int = 0):
    await send_webhook_alert(
        AlertType.WORKER_SHUTDOWN,
        {
            "worker_id": worker_id,
            "jobs_dropped": jobs_dropped,
            "final_metrics": get_metrics().to_dict(),
        },
        force=True,
    )
