"""Cross-file rules evaluated once over the merged fact set."""

from __future__ import annotations

import fnmatch
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, ClassVar

from codegate.facts import SourceFile
from codegate.rules.base import (
    SCOPE_PROJECT,
    Violation,
    param_str_list,
    param_unit_kinds,
)


@dataclass(frozen=True, slots=True)
class DuplicateIdentifierCheck:
    """Public top-level identifiers must be unique across files."""

    unit_kinds: frozenset[str]
    exempt_paths: tuple[str, ...]

    kind: ClassVar[str] = "duplicate_identifier"
    scope: ClassVar[str] = SCOPE_PROJECT
    applies_to_unparsed: ClassVar[bool] = False

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> DuplicateIdentifierCheck:
        return cls(
            unit_kinds=param_unit_kinds(params, default=["class"]),
            exempt_paths=param_str_list(params, "exempt_paths", default=[]),
        )

    def evaluate(self, sources: Sequence[SourceFile]) -> list[Violation]:
        by_name: dict[str, list[tuple[str, int, int]]] = {}
        for source in sources:
            if any(fnmatch.fnmatch(source.path, pattern) for pattern in self.exempt_paths):
                continue
            for unit in source.units:
                if unit.visibility != "public" or unit.kind not in self.unit_kinds:
                    continue
                by_name.setdefault(unit.identifier, []).append(
                    (source.path, unit.line_start, unit.line_end)
                )

        violations: list[Violation] = []
        for name, locations in sorted(by_name.items()):
            paths = sorted({path for path, _, _ in locations})
            if len(paths) < 2:
                continue
            for path, line_start, line_end in sorted(locations):
                others = [other for other in paths if other != path]
                violations.append(
                    Violation(
                        path=path,
                        line_start=line_start,
                        line_end=line_end,
                        context=MappingProxyType(
                            {
                                "identifier": name,
                                "path": path,
                                "others": ", ".join(others),
                                "count": len(paths),
                            }
                        ),
                    )
                )
        return violations


@dataclass(frozen=True, slots=True)
class ImportCycleCheck:
    """Modules in the analyzed tree must not import each other in a cycle."""

    kind: ClassVar[str] = "import_cycle"
    scope: ClassVar[str] = SCOPE_PROJECT
    applies_to_unparsed: ClassVar[bool] = False

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> ImportCycleCheck:
        return cls()

    def evaluate(self, sources: Sequence[SourceFile]) -> list[Violation]:
        modules = {source.module: source for source in sources if source.module}
        graph = {
            module: sorted(
                {
                    target
                    for target in (_resolve_target(name, modules) for name in source.imports)
                    if target is not None and target != module
                }
            )
            for module, source in modules.items()
        }

        violations: list[Violation] = []
        for component in strongly_connected(graph):
            if len(component) < 2:
                continue
            members = sorted(component)
            cycle = " -> ".join([*members, members[0]])
            for module in members:
                path = modules[module].path
                violations.append(
                    Violation(
                        path=path,
                        line_start=1,
                        line_end=1,
                        context=MappingProxyType(
                            {"path": path, "module": module, "cycle": cycle}
                        ),
                    )
                )
        return violations


def strongly_connected(graph: Mapping[str, Sequence[str]]) -> list[list[str]]:
    """Tarjan's algorithm, iterative so deep import chains cannot overflow."""
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    components: list[list[str]] = []
    counter = 0

    for start in sorted(graph):
        if start in index_of:
            continue
        work: list[tuple[str, int]] = [(start, 0)]
        while work:
            node, edge_index = work.pop()
            if edge_index == 0:
                index_of[node] = lowlink[node] = counter
                counter += 1
                stack.append(node)
                on_stack.add(node)
            edges = graph.get(node, ())
            if edge_index < len(edges):
                work.append((node, edge_index + 1))
                target = edges[edge_index]
                if target not in index_of:
                    work.append((target, 0))
                elif target in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[target])
                continue
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == index_of[node]:
                component: list[str] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(component)
    return components


def _resolve_target(name: str, modules: Mapping[str, SourceFile]) -> str | None:
    parts = name.split(".")
    while parts:
        candidate = ".".join(parts)
        if candidate in modules:
            return candidate
        parts.pop()
    return None
