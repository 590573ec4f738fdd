"""Framework conventions: model placement and forbidden calls."""

from __future__ import annotations

import fnmatch
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, ClassVar

from codegate.facts import SourceFile, StructuralUnit
from codegate.rules.base import (
    UnitCheck,
    Violation,
    module_violation,
    param_str_list,
    unit_violation,
)
from codegate.rules.capabilities import match_symbol


@dataclass(frozen=True, slots=True)
class PlacementCheck(UnitCheck):
    """Keeps classes derived from the given bases inside the allowed paths.

    This is how model separation is expressed: persistence or schema models
    (``bases``) may only be declared in modules matching ``paths``.
    """

    bases: tuple[str, ...]
    paths: tuple[str, ...]

    kind: ClassVar[str] = "placement"

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> PlacementCheck:
        bases = param_str_list(params, "bases")
        paths = param_str_list(params, "paths")
        if not bases or not paths:
            raise ValueError("params.bases and params.paths must not be empty")
        return cls(bases=bases, paths=paths)

    def check_unit(self, unit: StructuralUnit) -> Violation | None:
        if unit.kind != "class":
            return None
        matched = [base for base in unit.bases if self._base_matches(base)]
        if not matched:
            return None
        if any(fnmatch.fnmatch(unit.path, pattern) for pattern in self.paths):
            return None
        return unit_violation(
            unit,
            bases=", ".join(matched),
            allowed_paths=", ".join(self.paths),
        )

    def _base_matches(self, base: str) -> bool:
        short = base.rsplit(".", 1)[-1]
        return any(
            fnmatch.fnmatchcase(base, pattern) or fnmatch.fnmatchcase(short, pattern)
            for pattern in self.bases
        )


@dataclass(frozen=True, slots=True)
class ForbiddenCallCheck(UnitCheck):
    """Flags functions and methods that invoke forbidden symbols."""

    patterns: tuple[str, ...]
    exempt_paths: tuple[str, ...]

    kind: ClassVar[str] = "forbidden_call"

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> ForbiddenCallCheck:
        patterns = param_str_list(params, "patterns")
        if not patterns:
            raise ValueError("params.patterns must not be empty")
        return cls(
            patterns=patterns,
            exempt_paths=param_str_list(params, "exempt_paths", default=[]),
        )

    def check_unit(self, unit: StructuralUnit) -> Violation | None:
        if self._exempt(unit.path):
            return None
        hits = sorted(call for call in unit.calls if self._forbidden(call))
        if not hits:
            return None
        return unit_violation(unit, calls=", ".join(hits))

    def check_module(self, source: SourceFile) -> Violation | None:
        if self._exempt(source.path):
            return None
        hits = sorted(call for call in source.calls if self._forbidden(call))
        if not hits:
            return None
        return module_violation(source, calls=", ".join(hits))

    def _exempt(self, path: str) -> bool:
        return any(fnmatch.fnmatch(path, pattern) for pattern in self.exempt_paths)

    def _forbidden(self, call: str) -> bool:
        segments = tuple(call.split("."))
        return any(
            match_symbol(tuple(pattern.split(".")), segments, prefix=False)
            for pattern in self.patterns
        )
