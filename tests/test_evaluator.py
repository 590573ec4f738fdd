"""Tests for rule evaluation, dependency skipping, and rule failures."""

from __future__ import annotations

import logging

import pytest

from codegate.evaluator import (
    EvaluationError,
    RuleHealth,
    evaluate,
    evaluate_file,
    project_pass_rules,
)
from codegate.extractor import extract_source
from codegate.ruleset import parse_ruleset
from tests.helpers_tree import ASYNC_TABLE, parse, rule_block, ruleset_text

BROKEN_CONDITION = '{ fact = "line_count", op = "gt", value = "many" }'


def test_findings_carry_rule_metadata_and_rendered_message() -> None:
    snapshot = parse_ruleset(
        ruleset_text(
            rule_block(
                "missing-async",
                "async_capability",
                severity="critical",
                message="{qualname} calls {async_calls} but is sync ({unknown})",
                params='outcome = "missing-async"',
            ),
            capabilities=ASYNC_TABLE,
        )
    )
    source = parse("import asyncio\n\n\ndef refresh():\n    asyncio.sleep(1)\n")

    (finding,) = evaluate([source], snapshot)

    assert finding.rule_id == "missing-async"
    assert finding.severity == "critical"
    assert finding.category == "test"
    assert (finding.path, finding.line_start, finding.line_end) == ("pkg/mod.py", 4, 5)
    assert finding.message == "refresh calls asyncio.sleep but is sync ({unknown})"
    assert finding.reference == "guide#missing-async"
    assert finding.confidence is None


def test_unparsed_files_only_see_unparseable_rule() -> None:
    snapshot = parse_ruleset(
        ruleset_text(
            rule_block("parse", "unparseable", severity="minor"),
            rule_block("tiny-files", "file_size", params="max_lines = 1"),
        )
    )
    bad = extract_source("def (:\n\n\n", path="bad.py")
    good = parse("a = 1\nb = 2\n", path="good.py")

    findings = evaluate([bad, good], snapshot)

    assert sorted((f.rule_id, f.path) for f in findings) == [
        ("parse", "bad.py"),
        ("tiny-files", "good.py"),
    ]


def test_dependent_rule_is_skipped_where_prerequisite_fired() -> None:
    snapshot = parse_ruleset(
        ruleset_text(
            rule_block("long-file", "file_size", params="max_lines = 2"),
            rule_block(
                "public-surface",
                "public_units",
                params="max_public = 0",
                depends_on=("long-file",),
            ),
        )
    )
    long_file = parse("def g():\n    x = 1\n    return x\n", path="long.py")
    short_file = parse("def f():\n    return 1\n", path="short.py")

    findings = evaluate([long_file, short_file], snapshot)

    assert sorted((f.rule_id, f.path) for f in findings) == [
        ("long-file", "long.py"),
        ("public-surface", "short.py"),
    ]


def test_rules_depending_on_cross_file_rules_run_in_project_pass() -> None:
    snapshot = parse_ruleset(
        ruleset_text(
            rule_block("dupes", "duplicate_identifier"),
            rule_block(
                "class-names",
                "naming",
                params='pattern = "[A-Z][a-z]+", unit_kinds = ["class"]',
                depends_on=("dupes",),
            ),
            rule_block("parse", "unparseable"),
        )
    )
    sources = [
        parse("class HTTPClient:\n    pass\n", path="a.py"),
        parse("class HTTPClient:\n    pass\n", path="b.py"),
        parse("class XMLParser:\n    pass\n", path="c.py"),
    ]

    assert project_pass_rules(snapshot) == {"dupes", "class-names"}
    findings = evaluate(sources, snapshot)

    assert sorted((f.rule_id, f.path) for f in findings) == [
        ("class-names", "c.py"),
        ("dupes", "a.py"),
        ("dupes", "b.py"),
    ]


def test_failing_rule_is_disabled_with_dependents_and_logged(
    caplog: pytest.LogCaptureFixture,
) -> None:
    snapshot = parse_ruleset(
        ruleset_text(
            rule_block(
                "broken",
                "expression",
                params=f"target = \"file\", condition = {BROKEN_CONDITION}",
            ),
            rule_block(
                "after-broken", "file_size", params="max_lines = 1", depends_on=("broken",)
            ),
            rule_block("healthy", "file_size", params="max_lines = 1"),
        )
    )
    sources = [parse("a = 1\nb = 2\n", path=f"m{i}.py") for i in range(3)]
    health = RuleHealth(snapshot)

    with caplog.at_level(logging.WARNING, logger="codegate.evaluator"):
        findings = evaluate(sources, snapshot, health=health)

    assert {f.rule_id for f in findings} == {"healthy"}
    assert len(findings) == 3
    assert sorted(health.disabled) == ["after-broken", "broken"]
    assert "TypeError" in health.disabled["broken"]
    assert health.disabled["after-broken"] == "depends on 'broken'"
    assert "rule 'broken' failed" in caplog.text


def test_findings_of_a_rule_that_fails_later_are_dropped() -> None:
    snapshot = parse_ruleset(
        ruleset_text(
            rule_block(
                "fragile",
                "expression",
                params=(
                    'target = "file", condition = { any = ['
                    '{ fact = "module", op = "eq", value = "a" }, '
                    + BROKEN_CONDITION
                    + "] }"
                ),
            ),
        )
    )
    # a.py matches on the first branch; b.py reaches the broken comparison
    sources = [parse("x = 1\n", path="a.py"), parse("y = 2\n", path="b.py")]
    health = RuleHealth(snapshot)

    first = evaluate_file(sources[0], snapshot, health)
    findings = evaluate(sources, snapshot, health=health)

    assert [f.rule_id for f in first] == ["fragile"]
    assert findings == []
    assert "fragile" in health.disabled


def test_evaluation_error_wraps_cause() -> None:
    error = EvaluationError("some-rule", KeyError("x"))

    assert error.rule_id == "some-rule"
    assert isinstance(error.cause, KeyError)
    assert "some-rule" in str(error)


def test_adding_a_rule_only_adds_its_own_findings() -> None:
    base_rules = [
        rule_block("missing-async", "async_capability", params='outcome = "missing-async"'),
        rule_block("long-units", "unit_size", params="max_lines = 2"),
    ]
    extra = rule_block("no-print", "forbidden_call", params='patterns = ["print"]')
    sources = [
        parse(
            "import asyncio\n\n\ndef refresh():\n    print('x')\n    asyncio.sleep(1)\n",
            path="a.py",
        ),
        parse("def short():\n    print('y')\n", path="b.py"),
    ]

    before = evaluate(sources, parse_ruleset(ruleset_text(*base_rules, capabilities=ASYNC_TABLE)))
    after = evaluate(
        sources, parse_ruleset(ruleset_text(*base_rules, extra, capabilities=ASYNC_TABLE))
    )

    added = set(after) - set(before)
    assert set(before) <= set(after)
    assert {f.rule_id for f in added} == {"no-print"}
    assert len(added) == 2
