"""Async/sync decision logic driven by a call-site capability table.

Every function or method is classified from the capabilities of the calls it
makes. A call site takes the capabilities of its most specific matching
table entries; entries that tie in specificity are all kept and reported as
ambiguous instead of being silently resolved.

The classification is a pure function of one unit and the table, so each
outcome (``missing-async``, ``unnecessary-async``, ``mixed-capability``) can
be its own rule while still yielding at most one primary outcome per unit.
"""

from __future__ import annotations

import fnmatch
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, ClassVar

from codegate.facts import StructuralUnit
from codegate.rules.base import UnitCheck, Violation, param_choice, unit_violation

OUTCOME_MISSING_ASYNC = "missing-async"
OUTCOME_UNNECESSARY_ASYNC = "unnecessary-async"
OUTCOME_MIXED = "mixed-capability"
OUTCOMES = {OUTCOME_MISSING_ASYNC, OUTCOME_UNNECESSARY_ASYNC, OUTCOME_MIXED}

_WILDCARD_CHARS = set("*?[")


@dataclass(frozen=True, slots=True)
class CapabilityEntry:
    """Maps a call-site symbol pattern to its execution requirement."""

    pattern: str
    requires_async: bool

    @property
    def segments(self) -> tuple[str, ...]:
        return tuple(self.pattern.split("."))

    @property
    def specificity(self) -> tuple[int, int]:
        literal = sum(1 for segment in self.segments if not _WILDCARD_CHARS & set(segment))
        return (literal, len(self.segments))

    def matches(self, call: str) -> bool:
        return match_symbol(self.segments, tuple(call.split(".")))


@dataclass(frozen=True, slots=True)
class CallCapability:
    """Resolved capability entries for one call site."""

    call: str
    entries: tuple[CapabilityEntry, ...]

    @property
    def ambiguous(self) -> bool:
        return len(self.entries) > 1


@dataclass(frozen=True, slots=True)
class CapabilityTable:
    """Configurable call-site capability table."""

    entries: tuple[CapabilityEntry, ...] = ()
    mixed_supersedes: bool = True

    def resolve(self, call: str) -> CallCapability | None:
        """Return the most specific entries matching ``call``, ties included."""
        matched = [entry for entry in self.entries if entry.matches(call)]
        if not matched:
            return None
        best = max(entry.specificity for entry in matched)
        return CallCapability(
            call=call,
            entries=tuple(entry for entry in matched if entry.specificity == best),
        )

    def capability_set(self, unit: StructuralUnit) -> tuple[CallCapability, ...]:
        resolved = (self.resolve(call) for call in sorted(unit.calls))
        return tuple(item for item in resolved if item is not None)


@dataclass(frozen=True, slots=True)
class Classification:
    """Primary async/sync outcome for a unit plus the evidence behind it."""

    outcome: str | None
    async_calls: tuple[str, ...] = ()
    sync_calls: tuple[str, ...] = ()
    ambiguous_calls: tuple[str, ...] = ()


def classify(unit: StructuralUnit, table: CapabilityTable) -> Classification:
    """Classify a unit's declared async-ness against the calls it makes."""
    if unit.kind == "class":
        return Classification(outcome=None)

    capabilities = table.capability_set(unit)
    async_calls = tuple(
        item.call for item in capabilities if any(e.requires_async for e in item.entries)
    )
    sync_calls = tuple(
        item.call for item in capabilities if any(not e.requires_async for e in item.entries)
    )
    ambiguous = tuple(item.call for item in capabilities if item.ambiguous)
    mixed = bool(async_calls) and bool(sync_calls)

    outcome: str | None = None
    if mixed and (table.mixed_supersedes or unit.is_async):
        outcome = OUTCOME_MIXED
    elif unit.is_async:
        if sync_calls and not async_calls:
            outcome = OUTCOME_UNNECESSARY_ASYNC
    elif async_calls:
        outcome = OUTCOME_MISSING_ASYNC

    return Classification(
        outcome=outcome,
        async_calls=async_calls,
        sync_calls=sync_calls,
        ambiguous_calls=ambiguous,
    )


def match_symbol(pattern: Sequence[str], path: Sequence[str], *, prefix: bool = True) -> bool:
    """Match pattern segments against path segments.

    ``*`` (or any glob) matches within one segment; a ``**`` segment matches
    any number of segments. With ``prefix`` the pattern only has to match a
    leading run of the path, so ``requests`` covers ``requests.get``.
    """
    if not pattern:
        return prefix or not path
    head = pattern[0]
    if head == "**":
        return any(
            match_symbol(pattern[1:], path[index:], prefix=prefix)
            for index in range(len(path) + 1)
        )
    if not path or not fnmatch.fnmatchcase(path[0], head):
        return False
    return match_symbol(pattern[1:], path[1:], prefix=prefix)


def parse_capability_table(raw: Any) -> CapabilityTable:
    """Build a table from the rule-set ``[capabilities]`` section."""
    if raw is None:
        return CapabilityTable()
    if not isinstance(raw, dict):
        raise ValueError("capabilities must be a table")

    mixed_supersedes = raw.get("mixed_supersedes", True)
    if not isinstance(mixed_supersedes, bool):
        raise ValueError("capabilities.mixed_supersedes must be a boolean")

    table = raw.get("table", [])
    if not isinstance(table, list):
        raise ValueError("capabilities.table must be a list of tables")

    entries: list[CapabilityEntry] = []
    seen: set[str] = set()
    for index, item in enumerate(table):
        field_name = f"capabilities.table[{index}]"
        if not isinstance(item, dict):
            raise ValueError(f"{field_name} must be a table")
        pattern = item.get("pattern")
        requires_async = item.get("requires_async")
        if not isinstance(pattern, str) or not pattern or "" in pattern.split("."):
            raise ValueError(f"{field_name}.pattern must be a dotted symbol path")
        if not isinstance(requires_async, bool):
            raise ValueError(f"{field_name}.requires_async must be a boolean")
        if pattern in seen:
            raise ValueError(f"{field_name}.pattern '{pattern}' is declared twice")
        seen.add(pattern)
        entries.append(CapabilityEntry(pattern=pattern, requires_async=requires_async))

    return CapabilityTable(entries=tuple(entries), mixed_supersedes=mixed_supersedes)


@dataclass(frozen=True, slots=True)
class AsyncCapabilityCheck(UnitCheck):
    """Reports units whose classification equals ``outcome``."""

    outcome: str
    table: CapabilityTable

    kind: ClassVar[str] = "async_capability"

    @classmethod
    def from_params(
        cls, params: Mapping[str, Any], table: CapabilityTable
    ) -> AsyncCapabilityCheck:
        return cls(outcome=param_choice(params, "outcome", OUTCOMES), table=table)

    def check_unit(self, unit: StructuralUnit) -> Violation | None:
        result = classify(unit, self.table)
        if result.outcome != self.outcome:
            return None
        return unit_violation(
            unit,
            async_calls=", ".join(result.async_calls) or "none",
            sync_calls=", ".join(result.sync_calls) or "none",
        )


@dataclass(frozen=True, slots=True)
class CapabilityAmbiguityCheck(UnitCheck):
    """Reports call sites whose capability matches tie in specificity."""

    table: CapabilityTable

    kind: ClassVar[str] = "capability_ambiguity"

    @classmethod
    def from_params(
        cls, params: Mapping[str, Any], table: CapabilityTable
    ) -> CapabilityAmbiguityCheck:
        return cls(table=table)

    def check_unit(self, unit: StructuralUnit) -> Violation | None:
        if unit.kind == "class":
            return None
        ambiguous = [item for item in self.table.capability_set(unit) if item.ambiguous]
        if not ambiguous:
            return None
        patterns = sorted({entry.pattern for item in ambiguous for entry in item.entries})
        return unit_violation(
            unit,
            calls=", ".join(item.call for item in ambiguous),
            patterns=", ".join(patterns),
        )
