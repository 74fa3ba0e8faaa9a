#!/usr/bin/env python3
"""
Subsplit Agent Monitoring Module

Per-run monitoring for the subsplit agent: every mirror synchronization and
every split is tracked as an operation.

Features:
- Operation timing and process memory figures
- JSONL performance log
- Webhook alerting on failed or slow operations
- Preflight health check for git and the history tools
"""

import json
import logging
import os
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any

import psutil
import requests


@dataclass
class PerformanceMetrics:
    """Performance metrics for a single operation."""

    operation: str
    start_time: float
    end_time: Optional[float] = None
    duration_seconds: Optional[float] = None
    memory_usage_mb: Optional[float] = None
    success: bool = True
    error_message: Optional[str] = None
    project: Optional[str] = None
    reference: Optional[str] = None


@dataclass
class MonitoringConfig:
    """Configuration for monitoring and alerting."""

    performance_log_file: Optional[str] = None

    # Alerting
    enable_alerting: bool = False
    webhook_url: Optional[str] = None
    alert_timeout_seconds: int = 10

    # Thresholds for alerting
    max_processing_time_minutes: float = 30.0

    collect_system_metrics: bool = True


# Tools checked by the preflight health check, keyed by their config name.
REQUIRED_TOOLS = {
    "git": "git",
    "git-subsplit": "git-subsplit",
    "splitsh-lite": "splitsh-lite",
    "git-filter-repo": "git-filter-repo",
}


class MonitoringAgent:
    """Operation monitoring and alerting for a subsplit run."""

    def __init__(self, config: MonitoringConfig, logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger("subsplit.monitoring")
        self.metrics_history: List[PerformanceMetrics] = []
        self.error_count = 0
        self.operation_count = 0

    def start_operation_monitoring(self, operation: str, **kwargs) -> PerformanceMetrics:
        """Start monitoring an operation."""
        metrics = PerformanceMetrics(
            operation=operation,
            start_time=time.time(),
            **kwargs
        )

        if self.config.collect_system_metrics:
            metrics.memory_usage_mb = self._current_memory_mb()

        self.logger.debug(f"Started monitoring operation: {operation}")
        return metrics

    def end_operation_monitoring(self, metrics: PerformanceMetrics,
                                 success: bool = True,
                                 error_message: Optional[str] = None) -> PerformanceMetrics:
        """End monitoring an operation and calculate final metrics."""
        metrics.end_time = time.time()
        metrics.duration_seconds = metrics.end_time - metrics.start_time
        metrics.success = success
        metrics.error_message = error_message

        if self.config.collect_system_metrics:
            final_memory_mb = self._current_memory_mb()
            if final_memory_mb is not None:
                metrics.memory_usage_mb = max(metrics.memory_usage_mb or 0.0, final_memory_mb)

        self.operation_count += 1
        if not success:
            self.error_count += 1

        self._log_performance_metrics(metrics)
        self.metrics_history.append(metrics)
        self._check_alert_thresholds(metrics)

        self.logger.debug(
            f"Completed monitoring operation: {metrics.operation} "
            f"(Duration: {metrics.duration_seconds:.2f}s, Success: {success})"
        )
        return metrics

    def _current_memory_mb(self) -> Optional[float]:
        try:
            return psutil.Process().memory_info().rss / 1024 / 1024
        except psutil.Error as e:
            self.logger.warning(f"Failed to collect system metrics: {e}")
            return None

    def _log_performance_metrics(self, metrics: PerformanceMetrics):
        """Append the metrics of one operation to the JSONL log."""
        if not self.config.performance_log_file:
            return

        metric_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "operation": metrics.operation,
            "project": metrics.project,
            "reference": metrics.reference,
            "duration_seconds": metrics.duration_seconds,
            "memory_usage_mb": metrics.memory_usage_mb,
            "success": metrics.success,
            "error_message": metrics.error_message,
        }
        try:
            with open(self.config.performance_log_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(metric_data, ensure_ascii=False) + "\n")
        except OSError as e:
            self.logger.error(f"Failed to log performance metrics: {e}")

    def _check_alert_thresholds(self, metrics: PerformanceMetrics):
        """Alert on failures and slow operations."""
        if not self.config.enable_alerting:
            return

        alerts = []
        if not metrics.success:
            alerts.append(f"Operation failed: {metrics.error_message or 'unknown error'}")

        if (metrics.duration_seconds and
                metrics.duration_seconds > self.config.max_processing_time_minutes * 60):
            alerts.append(
                f"Long processing time: {metrics.duration_seconds / 60:.1f}min "
                f"(threshold: {self.config.max_processing_time_minutes}min)"
            )

        if alerts:
            self._send_alerts(metrics, alerts)

    def _send_alerts(self, metrics: PerformanceMetrics, alerts: List[str]):
        """Post alerts to the configured webhook."""
        if not self.config.webhook_url:
            return

        alert_message = f"Subsplit Alert - Operation: {metrics.operation}\n\n" + "\n".join(alerts)
        payload = {
            "text": alert_message,
            "operation": metrics.operation,
            "project": metrics.project,
            "reference": metrics.reference,
            "alerts": alerts,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
        try:
            response = requests.post(
                self.config.webhook_url,
                json=payload,
                timeout=self.config.alert_timeout_seconds
            )
            if response.status_code == 200:
                self.logger.info("✅ Webhook alert sent successfully")
            else:
                self.logger.error(f"❌ Webhook alert failed: {response.status_code}")
        except requests.RequestException as e:
            self.logger.error(f"❌ Webhook alert error: {e}")

    def health_check(self, tools: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Check that git and the history tools can be found."""
        health_status = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "status": "healthy",
            "checks": {}
        }

        for name, binary in (tools or REQUIRED_TOOLS).items():
            location = shutil.which(binary)
            health_status["checks"][name] = {
                "status": "ok" if location else "error",
                "path": location,
            }

        disk = psutil.disk_usage(os.getcwd())
        health_status["checks"]["disk"] = {
            "status": "ok" if disk.percent < 90 else "warning",
            "usage_percent": disk.percent,
            "free_gb": disk.free / 1024 / 1024 / 1024
        }

        failed_checks = [
            name for name, check in health_status["checks"].items()
            if check["status"] == "error"
        ]
        if failed_checks:
            health_status["status"] = "unhealthy"
            health_status["failed_checks"] = failed_checks
        elif any(check["status"] == "warning" for check in health_status["checks"].values()):
            health_status["status"] = "warning"

        return health_status

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of collected metrics."""
        if not self.metrics_history:
            return {"message": "No metrics collected yet"}

        successful_ops = [m for m in self.metrics_history if m.success]
        summary = {
            "total_operations": len(self.metrics_history),
            "successful_operations": len(successful_ops),
            "failed_operations": len(self.metrics_history) - len(successful_ops),
            "success_rate_percent": (len(successful_ops) / len(self.metrics_history)) * 100,
        }

        durations = [m.duration_seconds for m in self.metrics_history if m.duration_seconds is not None]
        if durations:
            summary["total_duration_seconds"] = sum(durations)
            summary["max_duration_seconds"] = max(durations)
        return summary


def load_monitoring_config() -> MonitoringConfig:
    """Load monitoring configuration from environment variables."""
    return MonitoringConfig(
        performance_log_file=os.getenv("MONITOR_PERFORMANCE_LOG") or None,
        enable_alerting=os.getenv("MONITOR_ENABLE_ALERTS", "false").lower() == "true",
        webhook_url=os.getenv("MONITOR_WEBHOOK_URL"),
        alert_timeout_seconds=int(os.getenv("MONITOR_ALERT_TIMEOUT", "10")),
        max_processing_time_minutes=float(os.getenv("MONITOR_MAX_TIME_MIN", "30.0")),
        collect_system_metrics=os.getenv("MONITOR_SYSTEM_METRICS", "true").lower() == "true",
    )
