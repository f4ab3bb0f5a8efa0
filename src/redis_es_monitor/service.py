from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import redis
from elasticsearch import ApiError, Elasticsearch, TransportError
from redis.backoff import ExponentialBackoff
from redis.retry import Retry


LOGGER = logging.getLogger("redis_es_monitor.collector")

INFO_FIELDS: tuple[str, ...] = (
    "redis_version",
    "os",
    "uptime_in_days",
    "connected_clients",
    "maxclients",
    "role",
    "connected_slaves",
)
DEFAULT_INDEX_PREFIX = "redis_monitoring"
DEFAULT_REDIS_PORT = 6379

REDIS_CONNECT_TIMEOUT_SECONDS = 5.0
REDIS_SOCKET_TIMEOUT_SECONDS = 3.0
REDIS_MAX_RETRIES = 3


class MonitorError(RuntimeError):
    """Fatal failure of one step of a monitoring run."""

    def __init__(self, step: str, message: str) -> None:
        super().__init__(message)
        self.step = step


@dataclass(frozen=True)
class RedisTarget:
    address: str
    password: str = ""
    db: int = 0


@dataclass(frozen=True)
class IndexedSnapshot:
    target: str
    index_name: str
    document: dict[str, Any]


@dataclass(frozen=True)
class RunResult:
    success: bool
    started_at: float
    duration_seconds: float
    targets_total: int
    snapshots: list[IndexedSnapshot] = field(default_factory=list)
    error: str | None = None
    failed_step: str | None = None


def load_targets(
    environ: Mapping[str, str],
    url_prefix: str = "Redis_URL",
    password_prefix: str = "Redis_Password",
) -> list[RedisTarget]:
    # Enumeration stops at the first missing or empty address; later
    # numbered entries are never read.
    targets: list[RedisTarget] = []
    index = 1
    while True:
        address = environ.get(f"{url_prefix}_{index}", "")
        if not address:
            break
        password = environ.get(f"{password_prefix}_{index}", "")
        targets.append(RedisTarget(address=address, password=password, db=0))
        index += 1
    return targets


def extract_field_value(info: str, field_name: str) -> str:
    """Return the trimmed value of ``field_name`` in a ``key:value`` blob.

    The first textual occurrence of ``field_name:`` wins, even when it is the
    tail of a longer key. A value without a terminating newline is treated as
    missing.
    """
    marker = f"{field_name}:"
    field_index = info.find(marker)
    if field_index == -1:
        return ""
    line_end = info.find("\n", field_index)
    if line_end == -1:
        return ""
    return info[field_index + len(marker) : line_end].strip()


def build_snapshot_document(info: str, captured_at: datetime) -> dict[str, Any]:
    document: dict[str, Any] = {name: extract_field_value(info, name) for name in INFO_FIELDS}
    document["timestamp"] = captured_at
    return document


def index_name_for(captured_at: datetime, prefix: str = DEFAULT_INDEX_PREFIX) -> str:
    return f"{prefix}_{captured_at.strftime('%Y-%m-%d')}"


def _split_address(address: str) -> tuple[str, int]:
    host, separator, port = address.rpartition(":")
    if not separator or "]" in port:
        host, port = address, ""
    host = host.strip("[]")
    if not port:
        return host, DEFAULT_REDIS_PORT
    return host, int(port)


def _raw_info_response(response: Any, **options: Any) -> str:
    if isinstance(response, bytes):
        return response.decode("utf-8", errors="replace")
    return str(response)


class StatusClient(Protocol):
    def fetch_info(self) -> str: ...

    def close(self) -> None: ...


class RedisStatusClient:
    def __init__(self, client: redis.Redis, address: str) -> None:
        self._client = client
        self._address = address
        # redis-py parses INFO into a dict by default; keep the raw text.
        self._client.set_response_callback("INFO", _raw_info_response)

    @classmethod
    def from_target(cls, target: RedisTarget) -> RedisStatusClient:
        options: dict[str, Any] = {
            "db": target.db,
            "password": target.password or None,
            "socket_connect_timeout": REDIS_CONNECT_TIMEOUT_SECONDS,
            "socket_timeout": REDIS_SOCKET_TIMEOUT_SECONDS,
            "retry": Retry(ExponentialBackoff(), REDIS_MAX_RETRIES),
            "retry_on_error": [redis.ConnectionError, redis.TimeoutError],
        }
        try:
            if target.address.startswith(("redis://", "rediss://", "unix://")):
                client = redis.Redis.from_url(target.address, **options)
            else:
                host, port = _split_address(target.address)
                client = redis.Redis(host=host, port=port, **options)
        except ValueError as error:
            raise MonitorError("redis client", f"{target.address}: {error}") from error
        return cls(client, target.address)

    def fetch_info(self) -> str:
        try:
            return self._client.execute_command("INFO")
        except redis.RedisError as error:
            raise MonitorError("status query", f"{self._address}: {error}") from error

    def close(self) -> None:
        try:
            self._client.close()
        except redis.RedisError as error:
            raise MonitorError("redis close", f"{self._address}: {error}") from error


class SnapshotIndexer:
    def __init__(self, client: Any) -> None:
        self._client = client

    @classmethod
    def from_settings(cls, url: str, username: str = "", password: str = "") -> SnapshotIndexer:
        # Index requests wait without a deadline.
        options: dict[str, Any] = {"request_timeout": None, "retry_on_timeout": False}
        if username:
            options["basic_auth"] = (username, password)
        try:
            client = Elasticsearch(url, **options)
        except (ValueError, TypeError) as error:
            raise MonitorError("elasticsearch client", str(error)) from error
        return cls(client)

    def index(self, document: dict[str, Any], index_name: str) -> str:
        try:
            response = self._client.index(index=index_name, document=document)
        except (ApiError, TransportError) as error:
            raise MonitorError("indexing", f"{index_name}: {error}") from error
        return response["_id"]

    def close(self) -> None:
        self._client.close()


def _log_info_debug_trace(*, target: str, elapsed_seconds: float, info: str) -> None:
    LOGGER.info("INFO timing %s: %.3fs", target, elapsed_seconds)
    LOGGER.info("INFO raw %s:\n%s", target, info if info else "<empty>")


def _collect_target(
    target: RedisTarget,
    *,
    indexer: SnapshotIndexer,
    client_factory: Callable[[RedisTarget], StatusClient],
    captured_at: datetime,
    index_name: str,
    debug_info: bool,
) -> IndexedSnapshot:
    client = client_factory(target)
    try:
        query_started = time.monotonic()
        info = client.fetch_info()
        if debug_info:
            _log_info_debug_trace(
                target=target.address,
                elapsed_seconds=time.monotonic() - query_started,
                info=info,
            )
        document = build_snapshot_document(info, captured_at)
        document_id = indexer.index(document, index_name)
    except BaseException:
        # The first failure names the run's failing step.
        try:
            client.close()
        except MonitorError as close_error:
            LOGGER.debug("close after failed collection of %s: %s", target.address, close_error)
        raise
    client.close()
    LOGGER.info("indexed snapshot for %s into %s (id=%s)", target.address, index_name, document_id)
    return IndexedSnapshot(target=target.address, index_name=index_name, document=document)


def run_once(
    targets: list[RedisTarget],
    indexer: SnapshotIndexer,
    *,
    index_prefix: str = DEFAULT_INDEX_PREFIX,
    client_factory: Callable[[RedisTarget], StatusClient] = RedisStatusClient.from_target,
    captured_at: datetime | None = None,
    debug_info: bool = False,
) -> RunResult:
    """Collect and index one snapshot per target, in order.

    The first failure ends the run: later targets are not contacted and the
    returned result carries the failing step. Snapshots indexed before the
    failure are reported and stay in the index.
    """
    started_at = time.time()
    monotonic_start = time.monotonic()
    if captured_at is None:
        captured_at = datetime.now().astimezone()
    index_name = index_name_for(captured_at, index_prefix)

    snapshots: list[IndexedSnapshot] = []
    for target in targets:
        try:
            snapshot = _collect_target(
                target,
                indexer=indexer,
                client_factory=client_factory,
                captured_at=captured_at,
                index_name=index_name,
                debug_info=debug_info,
            )
        except MonitorError as error:
            return RunResult(
                success=False,
                started_at=started_at,
                duration_seconds=time.monotonic() - monotonic_start,
                targets_total=len(targets),
                snapshots=snapshots,
                error=str(error),
                failed_step=error.step,
            )
        snapshots.append(snapshot)

    return RunResult(
        success=True,
        started_at=started_at,
        duration_seconds=time.monotonic() - monotonic_start,
        targets_total=len(targets),
        snapshots=snapshots,
    )
