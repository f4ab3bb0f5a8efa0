from __future__ import annotations

from pathlib import Path
from typing import Any

from prometheus_client import CollectorRegistry, Gauge, write_to_textfile

from redis_es_monitor.service import RunResult


_NUMERIC_FIELDS: tuple[str, ...] = (
    "uptime_in_days",
    "connected_clients",
    "maxclients",
    "connected_slaves",
)


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


class RunMetricsPublisher:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        if registry is None:
            registry = CollectorRegistry()
        self.registry = registry

        self.run_success = Gauge(
            "redis_monitor_run_success",
            "Latest run status (1=success, 0=failure)",
            registry=self.registry,
        )
        self.run_duration_seconds = Gauge(
            "redis_monitor_run_duration_seconds",
            "Duration of the latest monitoring run in seconds",
            registry=self.registry,
        )
        self.run_timestamp_seconds = Gauge(
            "redis_monitor_run_timestamp_seconds",
            "Unix timestamp at which the latest run started",
            registry=self.registry,
        )
        self.targets_configured = Gauge(
            "redis_monitor_targets_configured",
            "Number of redis targets found in the environment",
            registry=self.registry,
        )
        self.documents_indexed = Gauge(
            "redis_monitor_documents_indexed",
            "Snapshot documents indexed by the latest run",
            registry=self.registry,
        )
        self.run_failure = Gauge(
            "redis_monitor_run_failure",
            "Set to 1 for the step that ended the latest run",
            ["step"],
            registry=self.registry,
        )
        self.redis_info = Gauge(
            "redis_monitor_redis_info",
            "Redis build and role information from INFO",
            ["target", "redis_version", "os", "role"],
            registry=self.registry,
        )
        self.status_value = Gauge(
            "redis_monitor_status_value",
            "Latest numeric INFO field value for a redis target",
            ["target", "field"],
            registry=self.registry,
        )

    def apply_run_result(self, result: RunResult) -> None:
        self.run_success.set(1.0 if result.success else 0.0)
        self.run_duration_seconds.set(result.duration_seconds)
        self.run_timestamp_seconds.set(result.started_at)
        self.targets_configured.set(float(result.targets_total))
        self.documents_indexed.set(float(len(result.snapshots)))
        if result.failed_step is not None:
            self.run_failure.labels(step=result.failed_step).set(1.0)

        for snapshot in result.snapshots:
            document = snapshot.document
            self.redis_info.labels(
                target=snapshot.target,
                redis_version=document.get("redis_version", ""),
                os=document.get("os", ""),
                role=document.get("role", ""),
            ).set(1.0)
            for field_name in _NUMERIC_FIELDS:
                value = _as_float(document.get(field_name))
                if value is None:
                    continue
                self.status_value.labels(target=snapshot.target, field=field_name).set(value)

    def write_textfile(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        write_to_textfile(str(path), self.registry)
