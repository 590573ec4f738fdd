"""Output rendering."""

from __future__ import annotations

import json
from typing import Any

import click

from codegate.report import GATE_PASS, ComplianceReport
from codegate.rules import Finding
from codegate.rules.base import SEVERITIES

_SEVERITY_COLORS = {"critical": "red", "important": "yellow", "minor": "cyan"}


def render_json(report: ComplianceReport) -> str:
    """Render stable JSON output for CI and automation.

    The payload carries no timestamps, so identical inputs render
    byte-identical output.
    """
    return json.dumps(build_json_payload(report), indent=2, sort_keys=True)


def build_json_payload(report: ComplianceReport) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "summary": {severity: report.summary.get(severity, 0) for severity in SEVERITIES},
        "findings": [_serialize_finding(item) for item in report.findings],
        "gate": report.gate,
        "incomplete": report.incomplete,
    }
    if report.meta is not None:
        payload["meta"] = {
            "version": report.meta.version,
            "ruleset": report.meta.ruleset,
            "ruleset_version": report.meta.ruleset_version,
            "files_checked": report.meta.files_checked,
            "disabled_rules": list(report.meta.disabled_rules),
        }
    return payload


def _serialize_finding(finding: Finding) -> dict[str, Any]:
    return {
        "rule_id": finding.rule_id,
        "severity": finding.severity,
        "category": finding.category,
        "file": finding.path,
        "line_start": finding.line_start,
        "line_end": finding.line_end,
        "message": finding.message,
        "reference": finding.reference,
        "confidence": finding.confidence,
    }


def render_text(report: ComplianceReport) -> str:
    """Render a compact colorized summary grouped by file."""
    lines: list[str] = []
    current_path: str | None = None
    for finding in sorted(report.findings, key=lambda item: (item.path, item.line_start)):
        if finding.path != current_path:
            if current_path is not None:
                lines.append("")
            lines.append(click.style(finding.path, bold=True))
            current_path = finding.path
        label = click.style(f"{finding.severity:<9}", fg=_SEVERITY_COLORS[finding.severity])
        location = f"{finding.line_start}-{finding.line_end}"
        if finding.line_start == finding.line_end:
            location = str(finding.line_start)
        lines.append(f"  {location:>9}  {label} [{finding.rule_id}] {finding.message}")
        lines.append(f"  {'':>9}  {'':<9} see {finding.reference}")

    if lines:
        lines.append("")
    counts = ", ".join(f"{report.summary.get(severity, 0)} {severity}" for severity in SEVERITIES)
    files = f" in {report.meta.files_checked} files" if report.meta is not None else ""
    lines.append(f"Findings{files}: {counts}")
    if report.meta is not None and report.meta.disabled_rules:
        lines.append(
            click.style(
                f"Disabled after errors: {', '.join(report.meta.disabled_rules)}", fg="yellow"
            )
        )
    if report.incomplete:
        lines.append(click.style("Run was cancelled; report is incomplete.", fg="yellow"))
    passed = report.gate == GATE_PASS
    lines.append(
        click.style(
            f"Gate ({report.policy.level}): {report.gate.upper()}",
            fg="green" if passed else "red",
            bold=True,
        )
    )
    return "\n".join(lines)
