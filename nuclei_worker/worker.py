from __future__ import annotations

import logging
import threading
from collections import Counter
from typing import Any, Protocol

from pydantic import ValidationError

from nuclei_worker.models import Finding, ParseFailure, ScanOutcome, ServiceTarget, Vulnerability
from nuclei_worker.normalizer import build_vulnerability, parse_line
from nuclei_worker.scanners import ProcessLaunchError, ProcessResult, run_nuclei_scan
from nuclei_worker.storage import StorageError

LOGGER = logging.getLogger(__name__)

DEFAULT_SOURCE_TAG = "redscan-nuclei-misconfiguration"
DEFAULT_STORAGE_FIELD = "nucleimisconfiguration"


class Publisher(Protocol):
    def publish(self, vulnerability: Vulnerability) -> bool: ...


class Storage(Protocol):
    def upsert_http_service_field(self, domain: str, port: int, protocol: str, field_name: str, value: Any) -> None: ...


class WorkerStats:
    """Counters exposed on the metrics endpoint."""

    def __init__(self):
        self._lock = threading.Lock()
        self.outcomes: Counter[str] = Counter()
        self.vulnerabilities_published = 0
        self.parse_failures = 0
        self.storage_failures = 0

    def record(self, outcome: ScanOutcome) -> None:
        with self._lock:
            self.outcomes[outcome.status] += 1
            self.vulnerabilities_published += len(outcome.vulnerabilities)
            self.parse_failures += outcome.parse_failures
            if outcome.exit_status == 0 and not outcome.stored:
                self.storage_failures += 1

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "messages_by_status": dict(self.outcomes),
                "messages_total": sum(self.outcomes.values()),
                "vulnerabilities_published": self.vulnerabilities_published,
                "parse_failures": self.parse_failures,
                "storage_failures": self.storage_failures,
            }


class ScanOrchestrator:
    def __init__(
        self,
        publisher: Publisher,
        storage: Storage,
        binary: str = "/nucleilauncher",
        rule_category: str = "misconfiguration",
        source_tag: str = DEFAULT_SOURCE_TAG,
        storage_field: str = DEFAULT_STORAGE_FIELD,
        timeout: float | None = None,
        stats: WorkerStats | None = None,
    ):
        self.publisher = publisher
        self.storage = storage
        self.binary = binary
        self.rule_category = rule_category
        self.source_tag = source_tag
        self.storage_field = storage_field
        self.timeout = timeout
        self.stats = stats

    def run_scan(self, target: ServiceTarget) -> ProcessResult:
        return run_nuclei_scan(self.binary, target.to_url(), self.rule_category, timeout=self.timeout)

    def handle_message(self, message: str | bytes) -> ScanOutcome:
        outcome = self._handle(message)
        LOGGER.info("Scan outcome: %s", outcome.to_dict())
        if self.stats is not None:
            self.stats.record(outcome)
        return outcome

    def _handle(self, message: str | bytes) -> ScanOutcome:
        try:
            target = ServiceTarget.model_validate_json(message)
        except (ValidationError, ValueError) as exc:
            LOGGER.error("Rejected malformed service event %r: %s", message, exc)
            return ScanOutcome(status="REJECTED", error=str(exc))

        LOGGER.info("Check misconfiguration from : %s", target.to_url())
        try:
            result = self.run_scan(target)
        except ProcessLaunchError as exc:
            LOGGER.error("Nuclei launch failed for %s: %s", target.to_url(), exc)
            return ScanOutcome(status="LAUNCH_FAILED", target=target, error=str(exc))

        LOGGER.info("Nuclei exited with status %s", result.exit_status)
        if result.exit_status != 0 or result.timed_out:
            reason = "timed out" if result.timed_out else (result.stderr.strip() or f"exit status {result.exit_status}")
            LOGGER.warning("Nuclei scan of %s failed: %s", target.to_url(), reason)
            return ScanOutcome(status="SCAN_FAILED", target=target, exit_status=result.exit_status, error=reason)

        outcome = ScanOutcome(status="COMPLETED_CLEAN", target=target, exit_status=0)
        self.analyze_lines(target, result.output_lines, outcome)
        if outcome.vulnerabilities:
            outcome.status = "COMPLETED_WITH_FINDINGS"
        self.report(target, outcome)
        return outcome

    def analyze_lines(self, target: ServiceTarget, lines: list[str], outcome: ScanOutcome) -> None:
        for line in lines:
            parsed = parse_line(line)
            if parsed is None:
                continue
            if isinstance(parsed, ParseFailure):
                outcome.parse_failures += 1
                LOGGER.error("Error with json line: %s (%s)", parsed.line, parsed.reason)
                continue
            outcome.vulnerabilities.append(self.raise_vulnerability(target, parsed))

    def raise_vulnerability(self, target: ServiceTarget, finding: Finding) -> Vulnerability:
        LOGGER.info("Misconfiguration [%s] found %s", finding.template_id, finding.matched_url)
        vulnerability = build_vulnerability(target, finding, self.source_tag)
        self.publisher.publish(vulnerability)
        return vulnerability

    def report(self, target: ServiceTarget, outcome: ScanOutcome) -> None:
        results = [vulnerability.to_dict() for vulnerability in outcome.vulnerabilities]
        try:
            self.storage.upsert_http_service_field(
                target.domain, target.port, target.protocol, self.storage_field, results
            )
            outcome.stored = True
        except StorageError as exc:
            LOGGER.error("Datalake Storage Exception : %s", exc)
            outcome.error = str(exc)
