import json

import pytest

from nuclei_worker.models import Finding, ParseFailure, ServiceTarget, Severity
from nuclei_worker.normalizer import (
    build_vulnerability,
    generate_id,
    map_severity,
    parse_line,
    render_extracted_values,
)

TARGET = ServiceTarget(domain="example.com", port=443, protocol="https")
SOURCE = "redscan-nuclei-misconfiguration"


def _line(template_id="exposed-admin", matched="https://example.com/admin", name="Exposed Admin Panel", severity="high", extracted=None):
    item = {"matched": matched, "templateID": template_id, "info": {"name": name, "severity": severity}}
    if extracted is not None:
        item["extracted_results"] = extracted
    return json.dumps(item)


@pytest.mark.parametrize(
    "label,expected",
    [
        ("critical", Severity.CRITICAL),
        ("high", Severity.HIGH),
        ("medium", Severity.MEDIUM),
        ("low", Severity.LOW),
    ],
)
def test_map_severity_known_labels(label, expected):
    assert map_severity(label) == expected


@pytest.mark.parametrize("label", ["", "info", "unknown", "HIGH", "Critical", " low", None])
def test_map_severity_defaults_to_info(label):
    assert map_severity(label) == Severity.INFO


def test_severity_scale_is_ordered():
    assert Severity.INFO < Severity.LOW < Severity.MEDIUM < Severity.HIGH < Severity.CRITICAL


@pytest.mark.parametrize("line", ["", "   ", "\t", " \r "])
def test_parse_blank_line(line):
    assert parse_line(line) is None


@pytest.mark.parametrize("line", ["not-json", "{", "[1, 2]", '"text"', "42"])
def test_parse_invalid_line(line):
    result = parse_line(line)
    assert isinstance(result, ParseFailure)
    assert result.line == line


def test_parse_missing_info_object():
    result = parse_line(json.dumps({"matched": "https://example.com", "templateID": "x"}))
    assert isinstance(result, ParseFailure)
    assert "info" in result.reason


@pytest.mark.parametrize(
    "item,field",
    [
        ({"templateID": "x", "info": {"name": "n", "severity": "low"}}, "matched"),
        ({"matched": "u", "info": {"name": "n", "severity": "low"}}, "template"),
        ({"matched": "u", "templateID": "x", "info": {"severity": "low"}}, "name"),
        ({"matched": "u", "templateID": "x", "info": {"name": "n"}}, "severity"),
        ({"matched": "u", "templateID": "x", "info": "n"}, "info"),
    ],
)
def test_parse_missing_required_fields(item, field):
    result = parse_line(json.dumps(item))
    assert isinstance(result, ParseFailure)
    assert field in result.reason


def test_parse_round_trip():
    line = _line("git-config", "https://example.com/.git/config", "Git Config Exposure", "medium", ["core", "remote"])
    finding = parse_line(line)
    assert finding == Finding(
        template_id="git-config",
        matched_url="https://example.com/.git/config",
        name="Git Config Exposure",
        severity_label="medium",
        extracted_values=("core", "remote"),
    )
    assert finding.raw["templateID"] == "git-config"


def test_parse_without_extracted_results():
    finding = parse_line(_line())
    assert isinstance(finding, Finding)
    assert finding.extracted_values is None


def test_parse_extracted_results_must_be_array():
    item = json.loads(_line())
    item["extracted_results"] = "oops"
    assert isinstance(parse_line(json.dumps(item)), ParseFailure)


def test_parse_accepts_kebab_case_keys():
    line = json.dumps({
        "matched-at": "https://example.com/server-status",
        "template-id": "apache-status",
        "info": {"name": "Apache Status", "severity": "low"},
        "extracted-results": ["Apache/2.4"],
    })
    finding = parse_line(line)
    assert finding.template_id == "apache-status"
    assert finding.matched_url == "https://example.com/server-status"
    assert finding.extracted_values == ("Apache/2.4",)


def test_render_extracted_values():
    assert render_extracted_values(None) == ""
    assert render_extracted_values(("a", "b")) == ', Extracted values : ["a","b"]'
    assert render_extracted_values(()) == ", Extracted values : []"


def test_generate_id_is_deterministic():
    assert generate_id(SOURCE, "example.com443", "exposed-admin") == generate_id(SOURCE, "example.com443", "exposed-admin")
    assert generate_id(SOURCE, "example.com443", "exposed-admin") != generate_id(SOURCE, "example.com8443", "exposed-admin")


def test_build_vulnerability_fields():
    vuln = build_vulnerability(TARGET, parse_line(_line()), SOURCE)
    assert vuln.severity == Severity.HIGH
    assert vuln.title == "Misconfiguration on https://example.com:443 : Exposed Admin Panel"
    assert vuln.description == "The service was misconfigured on : https://example.com/admin"
    assert vuln.affected_url == "https://example.com:443"
    assert vuln.source == SOURCE
    assert vuln.id == generate_id(SOURCE, "example.com443", "exposed-admin")


def test_build_vulnerability_appends_extracted_values():
    vuln = build_vulnerability(TARGET, parse_line(_line(extracted=["admin"])), SOURCE)
    assert vuln.description.endswith(', Extracted values : ["admin"]')


def test_build_vulnerability_id_ignores_matched_url_and_name():
    first = build_vulnerability(TARGET, parse_line(_line(matched="https://example.com/a", name="A")), SOURCE)
    second = build_vulnerability(TARGET, parse_line(_line(matched="https://example.com/b", name="B")), SOURCE)
    assert first.id == second.id


def test_build_vulnerability_unknown_severity_is_info():
    vuln = build_vulnerability(TARGET, parse_line(_line(severity="unknown")), SOURCE)
    assert vuln.severity == Severity.INFO


def test_parse_deeply_nested_line():
    line = "[" * 200000
    result = parse_line(line)
    assert isinstance(result, ParseFailure)
    assert result.line == line


def test_parse_keeps_non_string_extracted_values():
    finding = parse_line(_line(extracted=[{"a": 1}, 2, "x"]))
    assert finding.extracted_values == ({"a": 1}, 2, "x")


def test_render_non_string_extracted_values_once():
    assert render_extracted_values(({"a": 1}, 2, "x")) == ', Extracted values : [{"a":1},2,"x"]'
    vuln = build_vulnerability(TARGET, parse_line(_line(extracted=[{"a": 1}])), SOURCE)
    assert vuln.description.endswith(', Extracted values : [{"a":1}]')
