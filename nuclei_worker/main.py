from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any

import yaml

from nuclei_worker.broker import MessageConsumer, VulnerabilityPublisher, connect_redis
from nuclei_worker.monitoring import create_app, serve_in_background
from nuclei_worker.scanners import command_exists
from nuclei_worker.scheduler import DEFAULT_CRON, TemplateUpdater, TemplateUpdateScheduler
from nuclei_worker.storage import DatalakeStorage
from nuclei_worker.worker import DEFAULT_SOURCE_TAG, DEFAULT_STORAGE_FIELD, ScanOrchestrator, WorkerStats

LOGGER = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def load_yaml(path: str) -> dict[str, Any]:
    if not Path(path).exists():
        LOGGER.warning("Settings file %s not found, using defaults", path)
        return {}
    with open(path, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def _optional_float(value: Any) -> float | None:
    if value in (None, "", 0, "0"):
        return None
    return float(value)


def resolve_settings(path: str) -> dict[str, Any]:
    settings = load_yaml(path)
    for section in ("paths", "broker", "scanner", "execution", "schedule", "monitoring"):
        settings.setdefault(section, {})
    settings["paths"].setdefault("db_path", os.getenv("WORKER_DB_PATH", "/data/datalake.db"))
    settings["broker"].setdefault("redis_url", os.getenv("REDIS_URL", "redis://localhost:6379/0"))
    settings["broker"].setdefault("inbound_queue", os.getenv("WORKER_INBOUND_QUEUE", "httpServices"))
    settings["broker"].setdefault("vulnerabilities_channel", os.getenv("WORKER_VULNERABILITIES_CHANNEL", "vulnerabilitiesExchange"))
    settings["broker"].setdefault("poll_timeout_seconds", 5)
    settings["broker"].setdefault("reconnect_delay_seconds", 5)
    settings["scanner"].setdefault("binary", os.getenv("NUCLEI_LAUNCHER", "/nucleilauncher"))
    settings["scanner"].setdefault("rule_category", "misconfiguration")
    settings["scanner"].setdefault("source_tag", DEFAULT_SOURCE_TAG)
    settings["scanner"].setdefault("storage_field", DEFAULT_STORAGE_FIELD)
    settings["scanner"].setdefault("timeout_seconds", os.getenv("NUCLEI_TIMEOUT_SECONDS"))
    settings["scanner"]["timeout_seconds"] = _optional_float(settings["scanner"]["timeout_seconds"])
    settings["execution"].setdefault("max_concurrent_messages", int(os.getenv("WORKER_MAX_CONCURRENT_MESSAGES", "2")))
    settings["schedule"].setdefault("enabled", True)
    settings["schedule"].setdefault("template_update_cron", os.getenv("TEMPLATE_UPDATE_CRON", DEFAULT_CRON))
    settings["schedule"].setdefault("timezone", "UTC")
    settings["schedule"].setdefault("update_on_start", False)
    settings["monitoring"].setdefault("enabled", _env_flag("WORKER_MONITORING_ENABLED", "false"))
    settings["monitoring"].setdefault("host", "0.0.0.0")
    settings["monitoring"].setdefault("port", int(os.getenv("WORKER_MONITORING_PORT", "8081")))
    return settings


def build_orchestrator(settings: dict[str, Any], publisher, storage, stats: WorkerStats | None = None) -> ScanOrchestrator:
    scanner = settings["scanner"]
    return ScanOrchestrator(
        publisher=publisher,
        storage=storage,
        binary=scanner["binary"],
        rule_category=scanner["rule_category"],
        source_tag=scanner["source_tag"],
        storage_field=scanner["storage_field"],
        timeout=scanner["timeout_seconds"],
        stats=stats,
    )


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Nuclei misconfiguration scan worker")
    parser.add_argument("--settings", default=os.getenv("WORKER_SETTINGS", "/app/config/settings.yaml"), help="Path to settings YAML")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"), help="Logging level")
    parser.add_argument("--update-templates", action="store_true", help="Refresh nuclei templates once and exit")
    parser.add_argument("--no-scheduler", action="store_true", help="Do not schedule the daily template refresh")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)
    settings = resolve_settings(args.settings)

    updater = TemplateUpdater(settings["scanner"]["binary"], timeout=settings["scanner"]["timeout_seconds"])
    if args.update_templates:
        exit_status = updater.update_templates()
        return 2 if exit_status is None else exit_status

    storage = DatalakeStorage(settings["paths"]["db_path"])
    storage.init()

    broker = settings["broker"]
    client = connect_redis(broker["redis_url"])
    publisher = VulnerabilityPublisher(client, broker["vulnerabilities_channel"])
    stats = WorkerStats()
    orchestrator = build_orchestrator(settings, publisher, storage, stats)
    consumer = MessageConsumer(
        client,
        broker["inbound_queue"],
        max_workers=settings["execution"]["max_concurrent_messages"],
        poll_timeout=int(broker["poll_timeout_seconds"]),
        reconnect_delay=float(broker["reconnect_delay_seconds"]),
    )

    scheduler = None
    if settings["schedule"]["enabled"] and not args.no_scheduler:
        scheduler = TemplateUpdateScheduler(
            updater,
            cron=settings["schedule"]["template_update_cron"],
            timezone=settings["schedule"]["timezone"],
        )
        scheduler.start(run_now=bool(settings["schedule"]["update_on_start"]))

    if settings["monitoring"]["enabled"]:
        app = create_app(
            checks={
                "redis": client.ping,
                "storage": storage.ping,
                "launcher": lambda: command_exists(settings["scanner"]["binary"]),
            },
            metrics_provider=lambda: {**stats.snapshot(), "template_update": updater.status()},
        )
        serve_in_background(app, settings["monitoring"]["host"], int(settings["monitoring"]["port"]))

    def _shutdown(signum, _frame) -> None:
        LOGGER.info("Received signal %s, stopping consumer", signum)
        consumer.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    try:
        consumer.run(orchestrator.handle_message)
    finally:
        if scheduler is not None:
            scheduler.shutdown()
        client.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
