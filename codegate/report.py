"""Aggregation of findings into a gated compliance report."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from codegate.rules import Finding
from codegate.rules.base import SEVERITIES, SEVERITY_CRITICAL, SEVERITY_IMPORTANT, SEVERITY_RANK

GATE_PASS = "pass"
GATE_FAIL = "fail"


@dataclass(frozen=True, slots=True)
class GatePolicy:
    """Which severities participate in the gate and how many are tolerated.

    Every severity at or above ``level`` participates. Critical findings are
    never tolerated; ``important_max`` and ``minor_max`` cap the others.
    """

    level: str = SEVERITY_IMPORTANT
    important_max: int = 0
    minor_max: int = 0

    def __post_init__(self) -> None:
        if self.level not in SEVERITY_RANK:
            raise ValueError(f"gate level must be one of: {', '.join(SEVERITIES)}")
        if self.important_max < 0 or self.minor_max < 0:
            raise ValueError("gate thresholds must be >= 0")

    def allowance(self, severity: str) -> int | None:
        """Tolerated count for ``severity``, or None if it does not participate."""
        if SEVERITY_RANK[severity] < SEVERITY_RANK[self.level]:
            return None
        if severity == SEVERITY_CRITICAL:
            return 0
        if severity == SEVERITY_IMPORTANT:
            return self.important_max
        return self.minor_max

    def verdict(self, summary: Mapping[str, int]) -> str:
        for severity in SEVERITIES:
            allowed = self.allowance(severity)
            if allowed is not None and summary.get(severity, 0) > allowed:
                return GATE_FAIL
        return GATE_PASS


@dataclass(frozen=True, slots=True)
class ReportMeta:
    """Run metadata carried alongside the findings."""

    version: str
    ruleset: str
    ruleset_version: str
    files_checked: int
    disabled_rules: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ComplianceReport:
    """Final, ordered, deduplicated result of one run."""

    summary: Mapping[str, int]
    findings: tuple[Finding, ...]
    gate: str
    incomplete: bool
    meta: ReportMeta | None = None
    policy: GatePolicy = field(default_factory=GatePolicy)

    @property
    def passed(self) -> bool:
        return self.gate == GATE_PASS

    def count_at_or_above(self, severity: str) -> int:
        rank = SEVERITY_RANK[severity]
        return sum(count for name, count in self.summary.items() if SEVERITY_RANK[name] >= rank)


def finding_sort_key(finding: Finding) -> tuple[int, str, int, int, str, str]:
    return (
        -SEVERITY_RANK[finding.severity],
        finding.path,
        finding.line_start,
        finding.line_end,
        finding.rule_id,
        finding.message,
    )


def aggregate(
    findings: Iterable[Finding],
    *,
    gate_policy: GatePolicy | None = None,
    incomplete: bool = False,
    meta: ReportMeta | None = None,
) -> ComplianceReport:
    """Deduplicate, sort, count, and gate ``findings``."""
    policy = gate_policy or GatePolicy()
    unique: dict[tuple[str, str, int, int], Finding] = {}
    for finding in sorted(findings, key=finding_sort_key):
        unique.setdefault(finding.key, finding)
    ordered = tuple(unique.values())

    summary = {severity: 0 for severity in SEVERITIES}
    for finding in ordered:
        summary[finding.severity] += 1

    return ComplianceReport(
        summary=MappingProxyType(summary),
        findings=ordered,
        gate=policy.verdict(summary),
        incomplete=incomplete,
        meta=meta,
        policy=policy,
    )


def exit_code_for(report: ComplianceReport, *, fail_on: str | None = None) -> int:
    """0 when the run is clean enough, 1 otherwise."""
    if not report.passed or report.incomplete:
        return 1
    if fail_on is not None and report.count_at_or_above(fail_on) > 0:
        return 1
    return 0
