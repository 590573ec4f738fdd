"""Normalized structural facts extracted from source files."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Literal

UnitKind = Literal["function", "method", "class"]
ParseStatus = Literal["ok", "failed", "timeout"]
Visibility = Literal["public", "private"]

STATUS_OK = "ok"
STATUS_FAILED = "failed"
STATUS_TIMEOUT = "timeout"

CATEGORY_GUARD = "guard"
CATEGORY_HAPPY_PATH = "happy-path"
CATEGORY_RETURN = "return"
CATEGORY_ARRANGE = "arrange"
CATEGORY_ACT = "act"
CATEGORY_ASSERT = "assert"


@dataclass(frozen=True, slots=True)
class Statement:
    """One top-level statement of a unit body, reduced to its category."""

    category: str
    line: int
    binds: tuple[str, ...] = ()
    reads: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class StructuralUnit:
    """A function, method, or class extracted from a source file."""

    kind: UnitKind
    identifier: str
    qualname: str
    path: str
    line_start: int
    line_end: int
    visibility: Visibility
    capabilities: frozenset[str] = frozenset()
    calls: frozenset[str] = frozenset()
    parameters: tuple[str, ...] = ()
    bases: tuple[str, ...] = ()
    decorators: tuple[str, ...] = ()
    children: tuple[StructuralUnit, ...] = ()
    statements: tuple[Statement, ...] = ()

    @property
    def line_count(self) -> int:
        return self.line_end - self.line_start + 1

    @property
    def is_async(self) -> bool:
        return "async" in self.capabilities

    def walk(self) -> Iterator[StructuralUnit]:
        """Yield this unit and every nested unit, depth first."""
        yield self
        for child in self.children:
            yield from child.walk()


@dataclass(frozen=True, slots=True)
class SourceFile:
    """Extraction result for one file."""

    path: str
    size: int
    status: ParseStatus
    line_count: int = 0
    module: str = ""
    imports: tuple[str, ...] = ()
    units: tuple[StructuralUnit, ...] = ()
    calls: frozenset[str] = frozenset()
    error: str | None = None

    @property
    def is_parsed(self) -> bool:
        return self.status == STATUS_OK

    def iter_units(self) -> Iterator[StructuralUnit]:
        """Yield every unit in the file, nested ones included."""
        for unit in self.units:
            yield from unit.walk()


@dataclass(frozen=True, slots=True)
class ExtractOptions:
    """Which optional facts the extractor should compute."""

    categorize_guards: bool = False
    test_pattern: str | None = None


def visibility_for(identifier: str) -> Visibility:
    """Derive visibility from the naming convention."""
    if identifier.startswith("__") and identifier.endswith("__"):
        return "public"
    return "private" if identifier.startswith("_") else "public"


def module_name_for(path: str) -> str:
    """Dotted module name for a posix path relative to the scanned root."""
    parts = [part for part in path.split("/") if part]
    if not parts:
        return ""
    last = parts[-1]
    if last.endswith(".py"):
        last = last[: -len(".py")]
    parts[-1] = last
    if parts[-1] == "__init__":
        parts = parts[:-1]
    if parts and parts[0] == "src":
        parts = parts[1:]
    return ".".join(parts)
