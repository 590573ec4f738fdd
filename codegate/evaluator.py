"""Rule evaluation over extracted facts.

Evaluation runs in two passes. The per-file pass applies every file-scoped
rule to one :class:`SourceFile` at a time and is safe to run concurrently.
The project pass runs once after all files are extracted and applies the
cross-file rules, plus any rule that depends on one of them.

A rule predicate that raises disables the rule, and every rule depending on
it, for the rest of the run. Findings already produced by a disabled rule
are dropped by :func:`evaluate` so the final result does not depend on which
file happened to trip the failure first.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence

from codegate.extractor import Deadline
from codegate.facts import SourceFile
from codegate.rules import Finding, RuleDefinition, Violation
from codegate.rules.base import SCOPE_PROJECT, render_message
from codegate.ruleset import RuleSnapshot

logger = logging.getLogger(__name__)


class EvaluationError(Exception):
    """A rule predicate raised while judging extracted facts."""

    def __init__(self, rule_id: str, cause: BaseException) -> None:
        super().__init__(f"rule '{rule_id}' failed: {cause.__class__.__name__}: {cause}")
        self.rule_id = rule_id
        self.cause = cause


class RuleHealth:
    """Thread-safe record of rules disabled during a run."""

    def __init__(self, snapshot: RuleSnapshot) -> None:
        self._snapshot = snapshot
        self._lock = threading.Lock()
        self._disabled: dict[str, str] = {}

    def disable(self, error: EvaluationError) -> None:
        affected = {error.rule_id} | self._snapshot.dependents_of(error.rule_id)
        with self._lock:
            newly = sorted(rule_id for rule_id in affected if rule_id not in self._disabled)
            for rule_id in newly:
                self._disabled[rule_id] = (
                    str(error) if rule_id == error.rule_id else f"depends on '{error.rule_id}'"
                )
        if newly:
            logger.warning("%s; disabled for this run: %s", error, ", ".join(newly))

    def is_disabled(self, rule_id: str) -> bool:
        with self._lock:
            return rule_id in self._disabled

    @property
    def disabled(self) -> dict[str, str]:
        with self._lock:
            return dict(sorted(self._disabled.items()))


def project_pass_rules(snapshot: RuleSnapshot) -> set[str]:
    """Rules that can only run after every file has been extracted."""
    deferred: set[str] = set()
    for rule in snapshot.rules:
        if snapshot.checks[rule.rule_id].scope == SCOPE_PROJECT or any(
            dependency in deferred for dependency in rule.depends_on
        ):
            deferred.add(rule.rule_id)
    return deferred


def evaluate_file(
    source: SourceFile,
    snapshot: RuleSnapshot,
    health: RuleHealth,
    *,
    deadline: Deadline | None = None,
) -> list[Finding]:
    """Apply the per-file rules to one file.

    ``deadline`` is checked between rules; it raises FileTimeoutError when the
    file's budget is exhausted.
    """
    deferred = project_pass_rules(snapshot)
    rules = [rule for rule in snapshot.rules if rule.rule_id not in deferred]
    return _run_rules(rules, [source], snapshot, health, deadline=deadline)


def evaluate_project(
    sources: Sequence[SourceFile],
    snapshot: RuleSnapshot,
    health: RuleHealth,
    *,
    prior: Iterable[Finding] = (),
) -> list[Finding]:
    """Apply cross-file rules to the merged fact set.

    ``prior`` holds the per-file findings so that dependency skipping can see
    prerequisites that ran in the per-file pass.
    """
    deferred = project_pass_rules(snapshot)
    rules = [rule for rule in snapshot.rules if rule.rule_id in deferred]
    if not rules:
        return []
    ordered = sorted(sources, key=lambda item: item.path)
    return _run_rules(rules, ordered, snapshot, health, prior=prior)


def evaluate(
    facts: Sequence[SourceFile],
    snapshot: RuleSnapshot,
    *,
    health: RuleHealth | None = None,
) -> list[Finding]:
    """Evaluate every rule against every applicable fact, sequentially."""
    health = health or RuleHealth(snapshot)
    findings: list[Finding] = []
    for source in sorted(facts, key=lambda item: item.path):
        findings.extend(evaluate_file(source, snapshot, health))
    findings.extend(evaluate_project(facts, snapshot, health, prior=findings))
    return drop_disabled(findings, health)


def drop_disabled(findings: Iterable[Finding], health: RuleHealth) -> list[Finding]:
    disabled = health.disabled
    return [finding for finding in findings if finding.rule_id not in disabled]


def bind(rule: RuleDefinition, violation: Violation) -> Finding:
    """Attach rule metadata and the rendered message to a violation."""
    return Finding(
        rule_id=rule.rule_id,
        severity=rule.severity,
        category=rule.category,
        path=violation.path,
        line_start=violation.line_start,
        line_end=violation.line_end,
        message=render_message(rule.message, violation.context),
        reference=rule.reference,
        confidence=violation.confidence,
    )


def _run_rules(
    rules: Sequence[RuleDefinition],
    sources: Sequence[SourceFile],
    snapshot: RuleSnapshot,
    health: RuleHealth,
    *,
    deadline: Deadline | None = None,
    prior: Iterable[Finding] = (),
) -> list[Finding]:
    # rule id -> paths where that rule produced at least one finding
    hit_paths: dict[str, set[str]] = {}
    for finding in prior:
        hit_paths.setdefault(finding.rule_id, set()).add(finding.path)

    findings: list[Finding] = []
    for rule in rules:
        if health.is_disabled(rule.rule_id):
            continue
        check = snapshot.checks[rule.rule_id]
        applicable = [
            source for source in sources if source.is_parsed or check.applies_to_unparsed
        ]
        blocked = {
            path for dependency in rule.depends_on for path in hit_paths.get(dependency, ())
        }
        if check.scope != SCOPE_PROJECT:
            applicable = [source for source in applicable if source.path not in blocked]
        if not applicable:
            continue
        if deadline is not None:
            deadline.check()

        try:
            violations = check.evaluate(applicable)
        except Exception as exc:  # a faulty predicate must not stop other rules
            health.disable(EvaluationError(rule.rule_id, exc))
            continue

        for violation in violations:
            if violation.path in blocked:
                continue
            findings.append(bind(rule, violation))
            hit_paths.setdefault(rule.rule_id, set()).add(violation.path)
    return findings
