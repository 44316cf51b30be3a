from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


class Severity(IntEnum):
    INFO = 1
    LOW = 2
    MEDIUM = 3
    HIGH = 4
    CRITICAL = 5


class ServiceTarget(BaseModel):
    """HTTP service announced on the inbound queue."""

    model_config = ConfigDict(frozen=True)

    domain: str = Field(min_length=1)
    port: int = Field(ge=1, le=65535)
    protocol: str = Field(min_length=1)

    def to_url(self) -> str:
        return f"{self.protocol}://{self.domain}:{self.port}"


@dataclass(frozen=True)
class Finding:
    template_id: str
    matched_url: str
    name: str
    severity_label: str
    extracted_values: tuple[Any, ...] | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class ParseFailure:
    line: str
    reason: str


@dataclass(frozen=True)
class Vulnerability:
    id: str
    severity: int
    title: str
    description: str
    affected_url: str
    source: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


@dataclass
class ScanOutcome:
    status: str
    target: ServiceTarget | None = None
    exit_status: int | None = None
    vulnerabilities: list[Vulnerability] = field(default_factory=list)
    parse_failures: int = 0
    stored: bool = False
    error: str | None = None

    def severity_counts(self) -> dict[str, int]:
        counts = {severity.name: 0 for severity in Severity}
        for vulnerability in self.vulnerabilities:
            counts[Severity(vulnerability.severity).name] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "target": self.target.to_url() if self.target else None,
            "exit_status": self.exit_status,
            "vulnerability_count": len(self.vulnerabilities),
            "severity_counts": self.severity_counts(),
            "parse_failures": self.parse_failures,
            "stored": self.stored,
            "error": self.error,
        }
