"""Structural rules: parse failures, size limits, and public surface."""

from __future__ import annotations

import fnmatch
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, ClassVar

from codegate.facts import SourceFile, StructuralUnit
from codegate.rules.base import (
    SCOPE_FILE,
    UnitCheck,
    Violation,
    param_int,
    param_str_list,
    param_unit_kinds,
    unit_violation,
)


@dataclass(frozen=True, slots=True)
class UnparseableCheck:
    """Reports files that failed to parse or ran out of their time budget."""

    kind: ClassVar[str] = "unparseable"
    scope: ClassVar[str] = SCOPE_FILE
    applies_to_unparsed: ClassVar[bool] = True

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> UnparseableCheck:
        return cls()

    def evaluate(self, sources: Sequence[SourceFile]) -> list[Violation]:
        violations: list[Violation] = []
        for source in sources:
            if source.is_parsed:
                continue
            violations.append(
                Violation(
                    path=source.path,
                    line_start=1,
                    line_end=max(1, source.line_count),
                    context=MappingProxyType(
                        {
                            "path": source.path,
                            "status": source.status,
                            "error": source.error or "unknown error",
                        }
                    ),
                )
            )
        return violations


@dataclass(frozen=True, slots=True)
class FileSizeCheck:
    """Flags files longer than ``max_lines``."""

    max_lines: int

    kind: ClassVar[str] = "file_size"
    scope: ClassVar[str] = SCOPE_FILE
    applies_to_unparsed: ClassVar[bool] = False

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> FileSizeCheck:
        max_lines = param_int(params, "max_lines")
        if max_lines <= 0:
            raise ValueError("params.max_lines must be > 0")
        return cls(max_lines=max_lines)

    def evaluate(self, sources: Sequence[SourceFile]) -> list[Violation]:
        return [
            Violation(
                path=source.path,
                line_start=1,
                line_end=source.line_count,
                context=MappingProxyType(
                    {"path": source.path, "lines": source.line_count, "max_lines": self.max_lines}
                ),
            )
            for source in sources
            if source.line_count > self.max_lines
        ]


@dataclass(frozen=True, slots=True)
class UnitSizeCheck(UnitCheck):
    """Flags functions, methods, or classes longer than ``max_lines``.

    Spans include decorators and any nested closures.
    """

    max_lines: int
    unit_kinds: frozenset[str]

    kind: ClassVar[str] = "unit_size"

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> UnitSizeCheck:
        max_lines = param_int(params, "max_lines")
        if max_lines <= 0:
            raise ValueError("params.max_lines must be > 0")
        return cls(
            max_lines=max_lines,
            unit_kinds=param_unit_kinds(params, default=["function", "method"]),
        )

    def check_unit(self, unit: StructuralUnit) -> Violation | None:
        if unit.kind not in self.unit_kinds or unit.line_count <= self.max_lines:
            return None
        return unit_violation(unit, max_lines=self.max_lines)


@dataclass(frozen=True, slots=True)
class PublicUnitsCheck:
    """Flags files that expose more than ``max_public`` public top-level units."""

    max_public: int
    unit_kinds: frozenset[str]
    exempt_paths: tuple[str, ...]

    kind: ClassVar[str] = "public_units"
    scope: ClassVar[str] = SCOPE_FILE
    applies_to_unparsed: ClassVar[bool] = False

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> PublicUnitsCheck:
        max_public = param_int(params, "max_public")
        if max_public < 0:
            raise ValueError("params.max_public must be >= 0")
        return cls(
            max_public=max_public,
            unit_kinds=param_unit_kinds(params, default=["function", "class"]),
            exempt_paths=param_str_list(params, "exempt_paths", default=[]),
        )

    def evaluate(self, sources: Sequence[SourceFile]) -> list[Violation]:
        violations: list[Violation] = []
        for source in sources:
            if any(fnmatch.fnmatch(source.path, pattern) for pattern in self.exempt_paths):
                continue
            public = [
                unit
                for unit in source.units
                if unit.visibility == "public" and unit.kind in self.unit_kinds
            ]
            if len(public) <= self.max_public:
                continue
            violations.append(
                Violation(
                    path=source.path,
                    line_start=public[0].line_start,
                    line_end=public[-1].line_end,
                    context=MappingProxyType(
                        {
                            "path": source.path,
                            "count": len(public),
                            "max_public": self.max_public,
                            "names": ", ".join(unit.identifier for unit in public),
                        }
                    ),
                )
            )
        return violations
