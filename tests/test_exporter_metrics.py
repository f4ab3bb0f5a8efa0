from datetime import datetime, timezone

from prometheus_client import CollectorRegistry, generate_latest

from redis_es_monitor.exporter import RunMetricsPublisher
from redis_es_monitor.service import IndexedSnapshot, RunResult


CAPTURED_AT = datetime(2024, 3, 9, 12, 0, tzinfo=timezone.utc)


def _snapshot(target: str, **fields: str) -> IndexedSnapshot:
    document = {
        "redis_version": "",
        "os": "",
        "uptime_in_days": "",
        "connected_clients": "",
        "maxclients": "",
        "role": "",
        "connected_slaves": "",
        "timestamp": CAPTURED_AT,
    }
    document.update(fields)
    return IndexedSnapshot(target=target, index_name="redis_monitoring_2024-03-09", document=document)


def test_metrics_publisher_renders_successful_run() -> None:
    registry = CollectorRegistry()
    publisher = RunMetricsPublisher(registry=registry)

    publisher.apply_run_result(
        RunResult(
            success=True,
            started_at=1710000000.0,
            duration_seconds=0.42,
            targets_total=2,
            snapshots=[
                _snapshot(
                    "cache-a:6379",
                    redis_version="7.2.4",
                    os="Linux",
                    role="master",
                    connected_clients="42",
                    maxclients="10000",
                    connected_slaves="1",
                    uptime_in_days="20",
                ),
                _snapshot("cache-b:6379", redis_version="6.2.14", role="slave", connected_clients="3"),
            ],
        )
    )

    rendered = generate_latest(registry).decode("utf-8")
    assert "redis_monitor_run_success 1.0" in rendered
    assert "redis_monitor_targets_configured 2.0" in rendered
    assert "redis_monitor_documents_indexed 2.0" in rendered
    assert "redis_monitor_run_duration_seconds 0.42" in rendered
    assert 'redis_monitor_status_value{field="connected_clients",target="cache-a:6379"} 42.0' in rendered
    assert 'redis_monitor_status_value{field="maxclients",target="cache-a:6379"} 10000.0' in rendered
    assert 'redis_monitor_status_value{field="connected_clients",target="cache-b:6379"} 3.0' in rendered
    assert 'field="maxclients",target="cache-b:6379"' not in rendered
    assert (
        'redis_monitor_redis_info{os="Linux",redis_version="7.2.4",role="master",target="cache-a:6379"} 1.0'
        in rendered
    )
    assert "redis_monitor_run_failure{" not in rendered


def test_metrics_publisher_records_failed_step_and_partial_progress() -> None:
    registry = CollectorRegistry()
    publisher = RunMetricsPublisher(registry=registry)

    publisher.apply_run_result(
        RunResult(
            success=False,
            started_at=1710000000.0,
            duration_seconds=3.1,
            targets_total=3,
            snapshots=[_snapshot("cache-a:6379", connected_clients="5")],
            error="cache-b:6379: Timeout reading from socket",
            failed_step="status query",
        )
    )

    rendered = generate_latest(registry).decode("utf-8")
    assert "redis_monitor_run_success 0.0" in rendered
    assert "redis_monitor_targets_configured 3.0" in rendered
    assert "redis_monitor_documents_indexed 1.0" in rendered
    assert 'redis_monitor_run_failure{step="status query"} 1.0' in rendered


def test_metrics_publisher_writes_textfile(tmp_path) -> None:
    publisher = RunMetricsPublisher()
    publisher.apply_run_result(
        RunResult(success=True, started_at=1710000000.0, duration_seconds=0.1, targets_total=0)
    )

    path = tmp_path / "textfile" / "redis_monitor.prom"
    publisher.write_textfile(path)

    content = path.read_text(encoding="utf-8")
    assert "redis_monitor_run_success 1.0" in content
    assert "redis_monitor_documents_indexed 0.0" in content
