"""Sandboxed condition language for rules that fit no built-in kind.

A condition is a tree of ``all``/``any``/``not`` nodes whose leaves compare
one named fact against a literal::

    {all = [{fact = "kind", op = "eq", value = "function"},
            {fact = "parameter_count", op = "gt", value = 5}]}

Only the facts listed in :data:`UNIT_FACTS` and :data:`FILE_FACTS` are
visible, and only the operators in :data:`OPERATORS` exist, so conditions
stay pure and cannot reach anything outside the extracted facts.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, ClassVar

from codegate.facts import SourceFile, StructuralUnit
from codegate.rules.base import (
    SCOPE_FILE,
    Violation,
    freeze,
    param_choice,
    unit_violation,
)

OPERATORS = {"eq", "ne", "in", "not_in", "gt", "ge", "lt", "le", "contains", "matches"}

UNIT_FACTS = {
    "kind",
    "identifier",
    "qualname",
    "path",
    "visibility",
    "line_count",
    "is_async",
    "capabilities",
    "calls",
    "call_count",
    "parameters",
    "parameter_count",
    "bases",
    "decorators",
    "child_count",
}
FILE_FACTS = {
    "path",
    "module",
    "line_count",
    "size",
    "unit_count",
    "imports",
    "import_count",
    "calls",
}


def validate_condition(condition: Any, *, facts: set[str]) -> list[str]:
    """Return a list of error strings if the condition tree is malformed."""
    errors: list[str] = []
    _validate_node(condition, errors, path="condition", facts=facts)
    return errors


def _validate_node(node: Any, errors: list[str], path: str, facts: set[str]) -> None:
    if not isinstance(node, dict):
        errors.append(f"{path}: expected table, got {type(node).__name__}")
        return

    for combinator in ("all", "any"):
        if combinator in node:
            children = node[combinator]
            if not isinstance(children, list) or not children:
                errors.append(f"{path}.{combinator}: expected a non-empty list")
                return
            for i, child in enumerate(children):
                _validate_node(child, errors, path=f"{path}.{combinator}[{i}]", facts=facts)
            return
    if "not" in node:
        _validate_node(node["not"], errors, path=f"{path}.not", facts=facts)
        return

    # Leaf node: must have fact, op, value
    for key in ("fact", "op", "value"):
        if key not in node:
            errors.append(f"{path}: missing required key '{key}'")
    if "fact" in node and node["fact"] not in facts:
        errors.append(f"{path}: unknown fact '{node['fact']}'")
    op = node.get("op")
    if op is not None and op not in OPERATORS:
        errors.append(f"{path}: unknown operator '{op}'")
    value = node.get("value")
    if op in {"in", "not_in"} and not isinstance(value, list):
        errors.append(f"{path}: '{op}' operator requires a list value")
    if op == "matches":
        if not isinstance(value, str):
            errors.append(f"{path}: 'matches' operator requires a string value")
        else:
            try:
                re.compile(value)
            except re.error as exc:
                errors.append(f"{path}: invalid regex: {exc}")


def evaluate_condition(condition: Mapping[str, Any], facts: Mapping[str, Any]) -> bool:
    """Evaluate a condition tree against a flat fact map.

    Missing facts cause the leaf condition to evaluate to False.
    """
    if "all" in condition:
        return all(evaluate_condition(c, facts) for c in condition["all"])
    if "any" in condition:
        return any(evaluate_condition(c, facts) for c in condition["any"])
    if "not" in condition:
        return not evaluate_condition(condition["not"], facts)

    fact_key = condition["fact"]
    if fact_key not in facts:
        return False
    actual = facts[fact_key]
    op = condition["op"]
    expected = condition["value"]
    if op in {"eq", "ne"}:
        actual, expected = _comparable(actual), _comparable(expected)

    if op == "eq":
        return actual == expected
    if op == "ne":
        return actual != expected
    if op == "in":
        return actual in expected
    if op == "not_in":
        return actual not in expected
    if op == "gt":
        return actual > expected
    if op == "ge":
        return actual >= expected
    if op == "lt":
        return actual < expected
    if op == "le":
        return actual <= expected
    if op == "contains":
        return expected in actual
    if op == "matches":
        return re.search(expected, str(actual)) is not None

    raise ValueError(f"Unknown operator: {op}")


def _comparable(value: Any) -> Any:
    # list facts and frozen list literals compare as sequences
    if isinstance(value, list):
        return tuple(value)
    return value


def unit_facts(unit: StructuralUnit) -> dict[str, Any]:
    return {
        "kind": unit.kind,
        "identifier": unit.identifier,
        "qualname": unit.qualname,
        "path": unit.path,
        "visibility": unit.visibility,
        "line_count": unit.line_count,
        "is_async": unit.is_async,
        "capabilities": tuple(sorted(unit.capabilities)),
        "calls": tuple(sorted(unit.calls)),
        "call_count": len(unit.calls),
        "parameters": unit.parameters,
        "parameter_count": len(unit.parameters),
        "bases": unit.bases,
        "decorators": unit.decorators,
        "child_count": len(unit.children),
    }


def file_facts(source: SourceFile) -> dict[str, Any]:
    return {
        "path": source.path,
        "module": source.module,
        "line_count": source.line_count,
        "size": source.size,
        "unit_count": sum(1 for _ in source.iter_units()),
        "imports": source.imports,
        "import_count": len(source.imports),
        "calls": tuple(sorted(source.calls)),
    }


@dataclass(frozen=True, slots=True)
class ExpressionCheck:
    """Reports every unit or file for which ``condition`` holds."""

    target: str
    condition: Mapping[str, Any]

    kind: ClassVar[str] = "expression"
    scope: ClassVar[str] = SCOPE_FILE
    applies_to_unparsed: ClassVar[bool] = False

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> ExpressionCheck:
        target = param_choice(params, "target", {"unit", "file"}, default="unit")
        condition = params.get("condition")
        errors = validate_condition(
            condition, facts=UNIT_FACTS if target == "unit" else FILE_FACTS
        )
        if errors:
            raise ValueError("params." + "; params.".join(errors))
        return cls(target=target, condition=freeze(condition))

    def evaluate(self, sources: Sequence[SourceFile]) -> list[Violation]:
        violations: list[Violation] = []
        for source in sources:
            if self.target == "file":
                if evaluate_condition(self.condition, file_facts(source)):
                    violations.append(
                        Violation(
                            path=source.path,
                            line_start=1,
                            line_end=max(1, source.line_count),
                            context=MappingProxyType(file_facts(source)),
                        )
                    )
                continue
            for unit in source.iter_units():
                facts = unit_facts(unit)
                if evaluate_condition(self.condition, facts):
                    violations.append(unit_violation(unit, **facts))
        return violations
