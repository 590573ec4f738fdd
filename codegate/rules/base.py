"""Rule definitions, findings, and the check protocol."""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, ClassVar, Protocol

from codegate.facts import SourceFile, StructuralUnit

SEVERITY_CRITICAL = "critical"
SEVERITY_IMPORTANT = "important"
SEVERITY_MINOR = "minor"
SEVERITY_RANK = {SEVERITY_MINOR: 0, SEVERITY_IMPORTANT: 1, SEVERITY_CRITICAL: 2}
SEVERITIES = (SEVERITY_CRITICAL, SEVERITY_IMPORTANT, SEVERITY_MINOR)

SCOPE_FILE = "file"
SCOPE_PROJECT = "project"

_MISSING: Any = object()


@dataclass(frozen=True, slots=True)
class RuleDefinition:
    """One compiled rule from a rule-set document."""

    rule_id: str
    kind: str
    category: str
    severity: str
    message: str
    reference: str
    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    depends_on: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Violation:
    """A raw predicate hit, before it is bound to a rule definition."""

    path: str
    line_start: int
    line_end: int
    confidence: float | None = None
    context: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True, slots=True)
class Finding:
    """A single rule violation tied to one rule and one location."""

    rule_id: str
    severity: str
    category: str
    path: str
    line_start: int
    line_end: int
    message: str
    reference: str
    confidence: float | None = None

    @property
    def key(self) -> tuple[str, str, int, int]:
        return (self.rule_id, self.path, self.line_start, self.line_end)


class Check(Protocol):
    """Protocol for pure rule predicates.

    ``file`` scoped checks receive one parsed file at a time; ``project``
    scoped checks receive the merged fact set after every file is extracted.
    """

    kind: ClassVar[str]
    scope: ClassVar[str]
    applies_to_unparsed: ClassVar[bool]

    def evaluate(self, sources: Sequence[SourceFile]) -> list[Violation]:
        """Return violations found in ``sources``."""
        ...


class UnitCheck:
    """Base class for checks that judge one structural unit at a time."""

    kind: ClassVar[str] = ""
    scope: ClassVar[str] = SCOPE_FILE
    applies_to_unparsed: ClassVar[bool] = False

    def evaluate(self, sources: Sequence[SourceFile]) -> list[Violation]:
        violations: list[Violation] = []
        for source in sources:
            module_violation = self.check_module(source)
            if module_violation is not None:
                violations.append(module_violation)
            for unit in source.iter_units():
                violation = self.check_unit(unit)
                if violation is not None:
                    violations.append(violation)
        return violations

    def check_unit(self, unit: StructuralUnit) -> Violation | None:
        raise NotImplementedError

    def check_module(self, source: SourceFile) -> Violation | None:
        """Judge top-level code outside every unit; most checks have none."""
        return None


def unit_violation(
    unit: StructuralUnit,
    *,
    confidence: float | None = None,
    **context: Any,
) -> Violation:
    """Build a violation located at ``unit`` with the standard context keys."""
    merged = {
        "identifier": unit.identifier,
        "qualname": unit.qualname,
        "kind": unit.kind,
        "path": unit.path,
        "lines": unit.line_count,
    }
    merged.update(context)
    return Violation(
        path=unit.path,
        line_start=unit.line_start,
        line_end=unit.line_end,
        confidence=confidence,
        context=MappingProxyType(merged),
    )


def module_violation(source: SourceFile, **context: Any) -> Violation:
    """Build a violation spanning a file's top-level code."""
    name = source.module or source.path
    merged = {
        "identifier": name,
        "qualname": name,
        "kind": "module",
        "path": source.path,
        "lines": source.line_count,
    }
    merged.update(context)
    return Violation(
        path=source.path,
        line_start=1,
        line_end=max(1, source.line_count),
        context=MappingProxyType(merged),
    )


def render_message(template: str, context: Mapping[str, Any]) -> str:
    """Format a message template, leaving unknown placeholders verbatim."""
    return template.format_map(_KeepMissing(context))


class _KeepMissing(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def param_int(params: Mapping[str, Any], key: str, default: Any = _MISSING) -> int:
    raw = _param(params, key, default)
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValueError(f"params.{key} must be an integer")
    return raw


def param_float(params: Mapping[str, Any], key: str, default: Any = _MISSING) -> float:
    raw = _param(params, key, default)
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ValueError(f"params.{key} must be a number")
    return float(raw)


def param_confidence(params: Mapping[str, Any], key: str = "min_confidence") -> float:
    value = param_float(params, key)
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"params.{key} must be between 0 and 1")
    return value


def param_bool(params: Mapping[str, Any], key: str, default: Any = _MISSING) -> bool:
    raw = _param(params, key, default)
    if not isinstance(raw, bool):
        raise ValueError(f"params.{key} must be a boolean")
    return raw


def param_str(params: Mapping[str, Any], key: str, default: Any = _MISSING) -> str:
    raw = _param(params, key, default)
    if not isinstance(raw, str):
        raise ValueError(f"params.{key} must be a string")
    return raw


def param_choice(
    params: Mapping[str, Any], key: str, allowed: set[str], default: Any = _MISSING
) -> str:
    value = param_str(params, key, default)
    if value not in allowed:
        choices = ", ".join(sorted(allowed))
        raise ValueError(f"params.{key} must be one of: {choices}")
    return value


def param_str_list(
    params: Mapping[str, Any], key: str, default: Any = _MISSING
) -> tuple[str, ...]:
    raw = _param(params, key, default)
    if not isinstance(raw, (list, tuple)) or not all(isinstance(item, str) for item in raw):
        raise ValueError(f"params.{key} must be a list of strings")
    return tuple(raw)


def param_regex(params: Mapping[str, Any], key: str, default: Any = _MISSING) -> re.Pattern[str]:
    pattern = param_str(params, key, default)
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ValueError(f"params.{key} is not a valid regex: {exc}") from exc


def param_unit_kinds(
    params: Mapping[str, Any],
    key: str = "unit_kinds",
    default: Any = _MISSING,
) -> frozenset[str]:
    kinds = param_str_list(params, key, default)
    unknown = sorted(set(kinds) - {"function", "method", "class"})
    if unknown:
        raise ValueError(f"params.{key} has unknown unit kinds: {', '.join(unknown)}")
    return frozenset(kinds)


def _param(params: Mapping[str, Any], key: str, default: Any) -> Any:
    if key in params:
        return params[key]
    if default is _MISSING:
        raise ValueError(f"params.{key} is required")
    return default


def freeze(value: Any) -> Any:
    """Recursively convert tables to read-only mappings and lists to tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    return value
