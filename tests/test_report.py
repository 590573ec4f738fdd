from __future__ import annotations

import pytest

from codegate.report import GATE_FAIL, GATE_PASS, GatePolicy, aggregate, exit_code_for
from codegate.rules import Finding


def _finding(
    rule_id: str = "rule",
    *,
    severity: str = "important",
    path: str = "a.py",
    line: int = 1,
    message: str = "msg",
) -> Finding:
    return Finding(
        rule_id=rule_id,
        severity=severity,
        category="test",
        path=path,
        line_start=line,
        line_end=line,
        message=message,
        reference="guide",
    )


def test_aggregate_orders_by_severity_then_location() -> None:
    report = aggregate(
        [
            _finding("b", severity="minor", path="a.py", line=1),
            _finding("a", severity="important", path="b.py", line=9),
            _finding("c", severity="critical", path="z.py", line=3),
            _finding("a", severity="important", path="b.py", line=2),
        ]
    )

    assert [(f.rule_id, f.path, f.line_start) for f in report.findings] == [
        ("c", "z.py", 3),
        ("a", "b.py", 2),
        ("a", "b.py", 9),
        ("b", "a.py", 1),
    ]


def test_aggregate_collapses_duplicate_locations() -> None:
    report = aggregate(
        [
            _finding("a", message="second"),
            _finding("a", message="first"),
            _finding("b", message="other rule"),
        ]
    )

    assert [(f.rule_id, f.message) for f in report.findings] == [
        ("a", "first"),
        ("b", "other rule"),
    ]
    assert dict(report.summary) == {"critical": 0, "important": 2, "minor": 0}


def test_default_gate_fails_on_any_important_finding() -> None:
    findings = [_finding(line=line) for line in (1, 2, 3)]

    assert aggregate(findings).gate == GATE_FAIL
    assert aggregate(findings, gate_policy=GatePolicy(important_max=3)).gate == GATE_PASS
    assert aggregate(findings, gate_policy=GatePolicy(important_max=2)).gate == GATE_FAIL


def test_gate_ignores_severities_below_level() -> None:
    findings = [_finding(line=1), _finding(line=2, severity="minor")]

    assert aggregate(findings, gate_policy=GatePolicy(level="critical")).gate == GATE_PASS
    assert aggregate([], gate_policy=GatePolicy(level="critical")).gate == GATE_PASS


def test_gate_never_tolerates_critical_findings() -> None:
    policy = GatePolicy(level="minor", important_max=10, minor_max=10)

    assert aggregate([_finding(severity="critical")], gate_policy=policy).gate == GATE_FAIL


def test_minor_gate_honours_minor_threshold() -> None:
    findings = [_finding(line=line, severity="minor") for line in (1, 2)]

    assert aggregate(findings, gate_policy=GatePolicy(level="minor")).gate == GATE_FAIL
    assert (
        aggregate(findings, gate_policy=GatePolicy(level="minor", minor_max=2)).gate == GATE_PASS
    )
    assert aggregate(findings).gate == GATE_PASS


@pytest.mark.parametrize(
    "kwargs",
    [
        {"level": "blocker"},
        {"important_max": -1},
        {"minor_max": -5},
    ],
)
def test_invalid_gate_policy_is_rejected(kwargs: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        GatePolicy(**kwargs)  # type: ignore[arg-type]


def test_exit_code_reflects_gate_and_completeness() -> None:
    clean = aggregate([_finding(severity="minor")])
    failing = aggregate([_finding(severity="important")])
    incomplete = aggregate([], incomplete=True)

    assert exit_code_for(clean) == 0
    assert exit_code_for(failing) == 1
    assert exit_code_for(incomplete) == 1


def test_exit_code_fail_on_counts_findings_at_or_above() -> None:
    report = aggregate([_finding(severity="minor")])

    assert exit_code_for(report, fail_on="minor") == 1
    assert exit_code_for(report, fail_on="important") == 0
    assert exit_code_for(aggregate([]), fail_on="minor") == 0
