from __future__ import annotations

import hashlib
import json
from typing import Any

from nuclei_worker.models import Finding, ParseFailure, ServiceTarget, Severity, Vulnerability


SEVERITY_MAP = {
    "critical": Severity.CRITICAL,
    "high": Severity.HIGH,
    "medium": Severity.MEDIUM,
    "low": Severity.LOW,
}

# nuclei v2 emitted camel/snake keys, v3 emits kebab-case ones
MATCHED_KEYS = ("matched", "matched-at")
TEMPLATE_KEYS = ("templateID", "template-id")
EXTRACTED_KEYS = ("extracted_results", "extracted-results")


def map_severity(label: str | None) -> Severity:
    """Labels are matched exactly; anything unexpected is informational."""
    if not isinstance(label, str):
        return Severity.INFO
    return SEVERITY_MAP.get(label, Severity.INFO)


def generate_id(*parts: Any) -> str:
    normalized = "|".join("" if part is None else str(part) for part in parts)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def _first_present(item: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if item.get(key) is not None:
            return item[key]
    return None


def parse_line(line: str) -> Finding | ParseFailure | None:
    """Parse one line of nuclei JSONL output.

    Blank lines yield ``None``. Anything that is not a JSON object carrying the
    matched endpoint, the template id and an ``info`` object with ``name`` and
    ``severity`` yields a :class:`ParseFailure`; a partially populated finding
    is never returned.
    """
    if not line or not line.strip():
        return None

    try:
        item = json.loads(line)
    except (ValueError, RecursionError) as exc:
        return ParseFailure(line=line, reason=f"invalid json: {exc}")
    if not isinstance(item, dict):
        return ParseFailure(line=line, reason="expected a json object")

    matched = _first_present(item, MATCHED_KEYS)
    if not isinstance(matched, str):
        return ParseFailure(line=line, reason="missing matched endpoint")
    template_id = _first_present(item, TEMPLATE_KEYS)
    if not isinstance(template_id, str):
        return ParseFailure(line=line, reason="missing template id")

    info = item.get("info")
    if not isinstance(info, dict):
        return ParseFailure(line=line, reason="missing info object")
    name = info.get("name")
    if not isinstance(name, str):
        return ParseFailure(line=line, reason="missing info.name")
    severity = info.get("severity")
    if not isinstance(severity, str):
        return ParseFailure(line=line, reason="missing info.severity")

    extracted = _first_present(item, EXTRACTED_KEYS)
    if extracted is not None:
        if not isinstance(extracted, list):
            return ParseFailure(line=line, reason="extracted results is not an array")
        extracted = tuple(extracted)

    return Finding(
        template_id=template_id,
        matched_url=matched,
        name=name,
        severity_label=severity,
        extracted_values=extracted,
        raw=item,
    )


def render_extracted_values(values: tuple[Any, ...] | None) -> str:
    if values is None:
        return ""
    return f", Extracted values : {json.dumps(list(values), ensure_ascii=False, separators=(',', ':'))}"


def build_vulnerability(target: ServiceTarget, finding: Finding, source: str) -> Vulnerability:
    url = target.to_url()
    return Vulnerability(
        id=generate_id(source, f"{target.domain}{target.port}", finding.template_id),
        severity=int(map_severity(finding.severity_label)),
        title=f"Misconfiguration on {url} : {finding.name}",
        description=f"The service was misconfigured on : {finding.matched_url}{render_extracted_values(finding.extracted_values)}",
        affected_url=url,
        source=source,
    )
