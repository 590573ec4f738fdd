"""Design-pattern detectors: Manager classes, guard ordering, and test AAA.

Each detector is a pure function returning a :class:`Detection` with an
explicit confidence. The wrapping checks only report when the confidence
reaches the rule's ``min_confidence``; anything below is an abstention, which
keeps legitimate but unconventional code out of the report.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, ClassVar

from codegate.facts import (
    CATEGORY_ACT,
    CATEGORY_ARRANGE,
    CATEGORY_ASSERT,
    CATEGORY_GUARD,
    CATEGORY_HAPPY_PATH,
    Statement,
    StructuralUnit,
)
from codegate.rules.base import (
    UnitCheck,
    Violation,
    param_confidence,
    param_regex,
    param_str_list,
    unit_violation,
)

_ABSTRACT_BASES = {"Protocol", "ABC", "ABCMeta", "Generic"}
_CONSTRUCTORS = {"__init__", "__post_init__", "__new__"}


@dataclass(frozen=True, slots=True)
class Detection:
    """Outcome of a heuristic detector."""

    violation: bool
    confidence: float
    detail: str = ""


def detect_manager(
    unit: StructuralUnit,
    *,
    required_tags: Sequence[str],
    session_pattern: re.Pattern[str],
) -> Detection:
    """Judge a Manager-convention class.

    The class must carry every required capability tag and must take its
    session-like collaborator at construction time rather than per call.
    """
    missing = sorted(set(required_tags) - unit.capabilities)
    per_call = sorted(
        child.identifier
        for child in unit.children
        if child.kind == "method"
        and child.visibility == "public"
        and child.identifier not in _CONSTRUCTORS
        and any(session_pattern.search(name) for name in _call_parameters(child))
    )

    problems: list[str] = []
    if missing:
        problems.append(f"missing tags: {', '.join(missing)}")
    if per_call:
        problems.append(f"session passed per call to: {', '.join(per_call)}")

    # tags are extracted facts; the session check relies on parameter names
    confidence = 1.0 if missing else 0.7
    if any(base.rsplit(".", 1)[-1] in _ABSTRACT_BASES for base in unit.bases):
        confidence = 0.3
    return Detection(violation=bool(problems), confidence=confidence, detail="; ".join(problems))


def detect_guard_order(statements: Sequence[Statement]) -> Detection:
    """Every guard must precede the first happy-path statement."""
    preceding: list[Statement] = []
    late_guards: list[tuple[int, float]] = []
    for statement in statements:
        if statement.category == CATEGORY_HAPPY_PATH:
            preceding.append(statement)
            continue
        if statement.category != CATEGORY_GUARD or not preceding:
            continue
        bound = {name for item in preceding for name in item.binds}
        loads_then_checks = all(item.binds for item in preceding) and bool(
            bound & set(statement.reads)
        )
        late_guards.append((statement.line, 0.4 if loads_then_checks else 0.8))

    if not late_guards:
        return Detection(violation=False, confidence=1.0)
    lines = ", ".join(str(line) for line, _ in late_guards)
    return Detection(
        violation=True,
        confidence=max(confidence for _, confidence in late_guards),
        detail=f"guard after happy path at line(s) {lines}",
    )


def detect_aaa(statements: Sequence[Statement]) -> Detection:
    """Arrange, then a single act, then assert."""
    acts = [index for index, item in enumerate(statements) if item.category == CATEGORY_ACT]
    if not acts:
        return Detection(violation=False, confidence=0.0, detail="no act statement")

    first_act, last_act = acts[0], acts[-1]
    early_asserts = [
        item.line for item in statements[:first_act] if item.category == CATEGORY_ASSERT
    ]
    late_arranges = [
        item.line for item in statements[last_act + 1 :] if item.category == CATEGORY_ARRANGE
    ]
    problems: list[str] = []
    if early_asserts:
        problems.append(f"assert before act at line(s) {_join(early_asserts)}")
    if late_arranges:
        problems.append(f"arrange after act at line(s) {_join(late_arranges)}")
    return Detection(
        violation=bool(problems),
        confidence=0.9 if len(acts) == 1 else 0.5,
        detail="; ".join(problems),
    )


@dataclass(frozen=True, slots=True)
class ManagerPatternCheck(UnitCheck):
    """Manager classes must be frozen, immutable, and constructor-injected."""

    name_pattern: re.Pattern[str]
    session_pattern: re.Pattern[str]
    required_tags: tuple[str, ...]
    min_confidence: float

    kind: ClassVar[str] = "manager_pattern"

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> ManagerPatternCheck:
        return cls(
            name_pattern=param_regex(params, "name_pattern", default="Manager$"),
            session_pattern=param_regex(params, "session_params", default="session"),
            required_tags=param_str_list(
                params, "required_tags", default=["immutable", "frozen"]
            ),
            min_confidence=param_confidence(params),
        )

    def check_unit(self, unit: StructuralUnit) -> Violation | None:
        if unit.kind != "class" or not self.name_pattern.search(unit.identifier):
            return None
        detection = detect_manager(
            unit,
            required_tags=self.required_tags,
            session_pattern=self.session_pattern,
        )
        return _report(unit, detection, self.min_confidence)


@dataclass(frozen=True, slots=True)
class GuardOrderCheck(UnitCheck):
    """Early-exit guards come before the happy path."""

    min_confidence: float

    kind: ClassVar[str] = "guard_order"

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> GuardOrderCheck:
        return cls(min_confidence=param_confidence(params))

    def check_unit(self, unit: StructuralUnit) -> Violation | None:
        if unit.kind == "class" or not any(
            item.category == CATEGORY_GUARD for item in unit.statements
        ):
            return None
        return _report(unit, detect_guard_order(unit.statements), self.min_confidence)


@dataclass(frozen=True, slots=True)
class TestAaaCheck(UnitCheck):
    """Test functions follow arrange, act, assert."""

    test_pattern: re.Pattern[str]
    min_confidence: float

    kind: ClassVar[str] = "test_aaa"
    __test__: ClassVar[bool] = False

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> TestAaaCheck:
        return cls(
            test_pattern=param_regex(params, "test_pattern", default="^test_"),
            min_confidence=param_confidence(params),
        )

    def check_unit(self, unit: StructuralUnit) -> Violation | None:
        if unit.kind == "class" or not self.test_pattern.search(unit.identifier):
            return None
        return _report(unit, detect_aaa(unit.statements), self.min_confidence)


def _report(
    unit: StructuralUnit, detection: Detection, min_confidence: float
) -> Violation | None:
    if not detection.violation or detection.confidence < min_confidence:
        return None
    return unit_violation(unit, confidence=detection.confidence, detail=detection.detail)


def _call_parameters(unit: StructuralUnit) -> tuple[str, ...]:
    if "staticmethod" in unit.capabilities:
        return unit.parameters
    return unit.parameters[1:]


def _join(lines: list[int]) -> str:
    return ", ".join(str(line) for line in lines)
