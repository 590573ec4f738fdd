"""Visibility and naming rules derived from identifier conventions."""

from __future__ import annotations

import fnmatch
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, ClassVar

from codegate.facts import SourceFile, StructuralUnit, visibility_for
from codegate.rules.base import (
    UnitCheck,
    Violation,
    module_violation,
    param_choice,
    param_regex,
    param_str_list,
    param_unit_kinds,
    unit_violation,
)

_RECEIVERS = {"self", "cls", "super"}


@dataclass(frozen=True, slots=True)
class PrivateAccessCheck(UnitCheck):
    """Flags calls that reach into another object's or module's private members."""

    allow: tuple[str, ...]

    kind: ClassVar[str] = "private_access"

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> PrivateAccessCheck:
        return cls(allow=param_str_list(params, "allow", default=[]))

    def check_unit(self, unit: StructuralUnit) -> Violation | None:
        offending = sorted(call for call in unit.calls if self._is_private_access(call))
        if not offending:
            return None
        return unit_violation(unit, calls=", ".join(offending))

    def check_module(self, source: SourceFile) -> Violation | None:
        offending = sorted(call for call in source.calls if self._is_private_access(call))
        if not offending:
            return None
        return module_violation(source, calls=", ".join(offending))

    def _is_private_access(self, call: str) -> bool:
        segments = call.split(".")
        if len(segments) < 2 or segments[0] in _RECEIVERS:
            return False
        if any(fnmatch.fnmatchcase(call, pattern) for pattern in self.allow):
            return False
        return any(visibility_for(segment) == "private" for segment in segments[1:])


@dataclass(frozen=True, slots=True)
class NamingCheck(UnitCheck):
    """Requires identifiers of the selected units to fully match ``pattern``."""

    pattern: re.Pattern[str]
    unit_kinds: frozenset[str]
    visibility: str

    kind: ClassVar[str] = "naming"

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> NamingCheck:
        return cls(
            pattern=param_regex(params, "pattern"),
            unit_kinds=param_unit_kinds(params),
            visibility=param_choice(
                params, "visibility", {"public", "private", "any"}, default="any"
            ),
        )

    def check_unit(self, unit: StructuralUnit) -> Violation | None:
        if unit.kind not in self.unit_kinds:
            return None
        if self.visibility != "any" and unit.visibility != self.visibility:
            return None
        if self.pattern.fullmatch(unit.identifier):
            return None
        return unit_violation(unit, pattern=self.pattern.pattern)
