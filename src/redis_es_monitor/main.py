from __future__ import annotations

import argparse
import logging
import os
import time
from collections.abc import Mapping
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from redis_es_monitor.exporter import RunMetricsPublisher
from redis_es_monitor.service import (
    DEFAULT_INDEX_PREFIX,
    MonitorError,
    RedisStatusClient,
    RedisTarget,
    RunResult,
    SnapshotIndexer,
    load_targets,
    run_once,
)


LOGGER = logging.getLogger("redis_es_monitor")


@dataclass(frozen=True)
class ElasticsearchSettings:
    url: str
    username: str
    password: str


@dataclass(frozen=True)
class AppConfig:
    elasticsearch: ElasticsearchSettings
    targets: list[RedisTarget]
    index_prefix: str
    debug_info: bool


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Index a snapshot of redis INFO for every configured instance into Elasticsearch",
    )
    parser.add_argument(
        "--env-file",
        default=os.getenv("REDIS_MONITOR_ENV_FILE", ".env"),
        help="settings file loaded into the environment before reading connection settings",
    )
    parser.add_argument(
        "--index-prefix",
        default=os.getenv("REDIS_MONITOR_INDEX_PREFIX", DEFAULT_INDEX_PREFIX),
        help="prefix of the daily index name (<prefix>_YYYY-MM-DD)",
    )
    parser.add_argument(
        "--metrics-textfile",
        default=os.getenv("REDIS_MONITOR_METRICS_TEXTFILE"),
        help="optional path of a prometheus textfile-collector file describing the run",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("REDIS_MONITOR_LOG_LEVEL", "INFO"),
        help="python logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "--debug-info",
        action=argparse.BooleanOptionalAction,
        default=_bool_env("REDIS_MONITOR_DEBUG_INFO", False),
        help="log the raw INFO reply and query timing for each target",
    )
    return parser


def load_env_file(path: str | Path) -> None:
    env_path = Path(path)
    if not env_path.is_file():
        raise MonitorError("settings file", f"{env_path} not found")
    # Variables already present in the process environment take precedence.
    load_dotenv(env_path, override=False)


def load_config(args: argparse.Namespace, environ: Mapping[str, str] | None = None) -> AppConfig:
    load_env_file(args.env_file)
    if environ is None:
        environ = os.environ
    return AppConfig(
        elasticsearch=ElasticsearchSettings(
            url=environ.get("Elasticsearch_URL", ""),
            username=environ.get("Elasticsearch_Username", ""),
            password=environ.get("Elasticsearch_Password", ""),
        ),
        targets=load_targets(environ),
        index_prefix=args.index_prefix,
        debug_info=bool(args.debug_info),
    )


def run(config: AppConfig) -> RunResult:
    indexer = SnapshotIndexer.from_settings(
        config.elasticsearch.url,
        config.elasticsearch.username,
        config.elasticsearch.password,
    )
    LOGGER.info("collecting INFO from %d redis target(s)", len(config.targets))
    with closing(indexer):
        return run_once(
            config.targets,
            indexer,
            index_prefix=config.index_prefix,
            client_factory=RedisStatusClient.from_target,
            debug_info=config.debug_info,
        )


def _startup_failure(error: MonitorError) -> RunResult:
    return RunResult(
        success=False,
        started_at=time.time(),
        duration_seconds=0.0,
        targets_total=0,
        error=str(error),
        failed_step=error.step,
    )


def _publish_metrics(path: Path, result: RunResult) -> None:
    metrics = RunMetricsPublisher()
    metrics.apply_run_result(result)
    metrics.write_textfile(path)
    LOGGER.debug("run metrics written to %s", path)


def main(argv: list[str] | None = None) -> None:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args)
        result = run(config)
    except MonitorError as error:
        result = _startup_failure(error)

    if args.metrics_textfile:
        _publish_metrics(Path(args.metrics_textfile), result)

    if not result.success:
        LOGGER.error("%s failed: %s", result.failed_step, result.error)
        raise SystemExit(1)
    LOGGER.info("monitoring run complete: %d snapshot(s) indexed", len(result.snapshots))


if __name__ == "__main__":
    main()
