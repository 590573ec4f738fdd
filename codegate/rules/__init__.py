"""Rule kinds package.

Rules are tagged variants: every rule-set entry names one of the kinds
registered here and supplies structured params for it.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from codegate.facts import ExtractOptions
from codegate.rules.base import Check, Finding, RuleDefinition, Violation
from codegate.rules.capabilities import (
    AsyncCapabilityCheck,
    CapabilityAmbiguityCheck,
    CapabilityTable,
)
from codegate.rules.conventions import ForbiddenCallCheck, PlacementCheck
from codegate.rules.expression import ExpressionCheck
from codegate.rules.patterns import GuardOrderCheck, ManagerPatternCheck, TestAaaCheck
from codegate.rules.project import DuplicateIdentifierCheck, ImportCycleCheck
from codegate.rules.structure import (
    FileSizeCheck,
    PublicUnitsCheck,
    UnitSizeCheck,
    UnparseableCheck,
)
from codegate.rules.visibility import NamingCheck, PrivateAccessCheck

__all__ = [
    "Check",
    "Finding",
    "KindInfo",
    "RuleDefinition",
    "Violation",
    "build_check",
    "extract_options_for",
    "known_kinds",
    "list_kind_info",
]


@dataclass(frozen=True, slots=True)
class KindInfo:
    """Rule kind metadata for listing."""

    kind: str
    name: str
    description: str
    scope: str


@dataclass(frozen=True, slots=True)
class _KindSpec:
    kind: str
    factory: Callable[[Mapping[str, Any], CapabilityTable], Check]
    check_cls: type


def _spec(check_cls: Any) -> _KindSpec:
    return _KindSpec(
        kind=check_cls.kind,
        factory=lambda params, _table: check_cls.from_params(params),
        check_cls=check_cls,
    )


def _table_spec(check_cls: Any) -> _KindSpec:
    return _KindSpec(
        kind=check_cls.kind,
        factory=check_cls.from_params,
        check_cls=check_cls,
    )


_KIND_SPECS: dict[str, _KindSpec] = {
    spec.kind: spec
    for spec in (
        _spec(UnparseableCheck),
        _spec(FileSizeCheck),
        _spec(UnitSizeCheck),
        _spec(PublicUnitsCheck),
        _spec(PrivateAccessCheck),
        _spec(NamingCheck),
        _spec(PlacementCheck),
        _spec(ForbiddenCallCheck),
        _table_spec(AsyncCapabilityCheck),
        _table_spec(CapabilityAmbiguityCheck),
        _spec(ManagerPatternCheck),
        _spec(GuardOrderCheck),
        _spec(TestAaaCheck),
        _spec(DuplicateIdentifierCheck),
        _spec(ImportCycleCheck),
        _spec(ExpressionCheck),
    )
}


def known_kinds() -> list[str]:
    return sorted(_KIND_SPECS)


def build_check(kind: str, params: Mapping[str, Any], table: CapabilityTable) -> Check:
    """Instantiate the check for ``kind``; raises ValueError on bad input."""
    spec = _KIND_SPECS.get(kind)
    if spec is None:
        choices = ", ".join(known_kinds())
        raise ValueError(f"Unknown rule kind '{kind}'. Expected one of: {choices}")
    return spec.factory(params, table)


def list_kind_info() -> list[KindInfo]:
    """Return metadata for every built-in rule kind."""
    return [
        KindInfo(
            kind=spec.kind,
            name=spec.check_cls.__name__,
            description=(spec.check_cls.__doc__ or "").strip().partition("\n")[0],
            scope=spec.check_cls.scope,
        )
        for spec in sorted(_KIND_SPECS.values(), key=lambda item: item.kind)
    ]


def extract_options_for(checks: list[Check]) -> ExtractOptions:
    """Ask the extractor only for the statement facts the active checks read."""
    test_patterns = sorted(
        {check.test_pattern.pattern for check in checks if isinstance(check, TestAaaCheck)}
    )
    return ExtractOptions(
        categorize_guards=any(isinstance(check, GuardOrderCheck) for check in checks),
        test_pattern="|".join(f"(?:{pattern})" for pattern in test_patterns) or None,
    )
