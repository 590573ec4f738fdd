"""Tests for rule-set loading and snapshots."""

from __future__ import annotations

import dataclasses
from pathlib import Path

import pytest

from codegate.ruleset import RuleLoadError, load_ruleset, parse_ruleset
from tests.helpers_tree import ASYNC_TABLE, rule_block, ruleset_text


def test_bundled_ruleset_loads() -> None:
    snapshot = load_ruleset()

    assert snapshot.name == "codegate-default"
    ids = set(snapshot.rule_ids)
    assert {
        "unparseable",
        "missing-async",
        "unnecessary-async",
        "mixed-capability",
        "ambiguous-capability",
        "manager-pattern-violation",
        "error-handling-order",
        "test-aaa-order",
        "duplicate-identifier",
        "import-cycle",
    } <= ids
    order = list(snapshot.rule_ids)
    assert order.index("max-file-lines") < order.index("public-units")
    missing_async = snapshot.get("missing-async")
    assert missing_async is not None
    assert missing_async.severity == "critical"
    assert snapshot.capabilities.mixed_supersedes is True


def test_bundled_ruleset_requests_statement_facts() -> None:
    options = load_ruleset().extract_options

    assert options.categorize_guards is True
    assert options.test_pattern == "(?:^test_)"


def test_rules_are_ordered_after_their_prerequisites() -> None:
    text = ruleset_text(
        rule_block("z-first", "file_size", params="max_lines = 10"),
        rule_block("a-second", "file_size", params="max_lines = 20", depends_on=("z-first",)),
        rule_block("m-free", "unparseable"),
    )

    snapshot = parse_ruleset(text)

    assert snapshot.rule_ids == ("m-free", "z-first", "a-second")
    assert snapshot.dependents_of("z-first") == {"a-second"}


def test_snapshot_is_immutable() -> None:
    snapshot = parse_ruleset(ruleset_text(rule_block("parse", "unparseable")))

    with pytest.raises(dataclasses.FrozenInstanceError):
        snapshot.name = "other"  # type: ignore[misc]
    with pytest.raises(TypeError):
        snapshot.checks["parse"] = None  # type: ignore[index]
    with pytest.raises(TypeError):
        snapshot.rules[0].params["x"] = 1  # type: ignore[index]


def test_params_are_frozen_recursively() -> None:
    text = ruleset_text(
        rule_block("forbid", "forbidden_call", params='patterns = ["eval", "exec"]'),
    )

    rule = parse_ruleset(text).rules[0]

    assert rule.params["patterns"] == ("eval", "exec")


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("schema_version = [", "Invalid TOML"),
        (
            'schema_version = 2\nname = "x"\nversion = "1"\n' + rule_block("a", "unparseable"),
            "schema_version must be 1",
        ),
        (ruleset_text(), "rules must be a non-empty list"),
        (
            ruleset_text(rule_block("a", "unparseable"), rule_block("a", "unparseable")),
            "duplicate rule id 'a'",
        ),
        (ruleset_text(rule_block("a", "regex_everything")), "Unknown rule kind"),
        (ruleset_text(rule_block("a", "unparseable", severity="blocker")), "severity must be"),
        (ruleset_text(rule_block("Bad Id", "unparseable")), "must use lowercase"),
        (
            ruleset_text(rule_block("a", "unparseable", depends_on=("ghost",))),
            "depends on unknown rule(s): ghost",
        ),
        (
            ruleset_text(
                rule_block("a", "unparseable", depends_on=("b",)),
                rule_block("b", "unparseable", depends_on=("c",)),
                rule_block("c", "unparseable", depends_on=("a",)),
            ),
            "rule dependency cycle",
        ),
        (ruleset_text(rule_block("a", "unparseable", depends_on=("a",))), "depend on itself"),
        (ruleset_text(rule_block("a", "file_size")), "params.max_lines is required"),
        (ruleset_text(rule_block("a", "guard_order")), "params.min_confidence is required"),
        (
            ruleset_text(rule_block("a", "unparseable"), capabilities="[capabilities]\ntable = 3"),
            "capabilities.table must be a list",
        ),
    ],
)
def test_invalid_rulesets_raise_rule_load_error(text: str, message: str) -> None:
    with pytest.raises(RuleLoadError) as excinfo:
        parse_ruleset(text)

    assert message in str(excinfo.value)


def test_unknown_rule_keys_are_rejected() -> None:
    text = ruleset_text(rule_block("a", "unparseable") + '\npredicate = "lambda: True"')

    with pytest.raises(RuleLoadError, match="unknown key"):
        parse_ruleset(text)


def test_load_ruleset_from_file(tmp_path: Path) -> None:
    path = tmp_path / "rules.toml"
    path.write_text(
        ruleset_text(
            rule_block("missing-async", "async_capability", params='outcome = "missing-async"'),
            capabilities=ASYNC_TABLE,
        ),
        encoding="utf-8",
    )

    snapshot = load_ruleset(path)

    assert snapshot.source == str(path)
    assert [entry.pattern for entry in snapshot.capabilities.entries] == [
        "asyncio.sleep",
        "time.sleep",
    ]
    with pytest.raises(RuleLoadError, match="does not exist"):
        load_ruleset(tmp_path / "missing.toml")
