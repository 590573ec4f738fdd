"""Rule-set loading and per-run snapshots."""

from __future__ import annotations

import logging
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from importlib import resources
from pathlib import Path
from types import MappingProxyType
from typing import Any

from codegate.facts import ExtractOptions
from codegate.rules import Check, RuleDefinition, build_check, extract_options_for
from codegate.rules.base import SEVERITIES, freeze
from codegate.rules.capabilities import CapabilityTable, parse_capability_table

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
DEFAULT_RULESET = "default.toml"
_RULE_ID_CHARS = set("abcdefghijklmnopqrstuvwxyz0123456789-_.")
_REQUIRED_RULE_KEYS = ("id", "kind", "category", "severity", "message", "reference")
_ALLOWED_RULE_KEYS = {*_REQUIRED_RULE_KEYS, "depends_on", "params"}


class RuleLoadError(Exception):
    """Raised when a rule-set cannot be compiled into a snapshot."""


@dataclass(frozen=True, slots=True)
class RuleSnapshot:
    """Immutable rule set for one run.

    ``rules`` is in dependency order: every rule appears after all of its
    prerequisites, and ties are broken by rule id.
    """

    name: str
    version: str
    source: str
    rules: tuple[RuleDefinition, ...]
    checks: Mapping[str, Check] = field(default_factory=lambda: MappingProxyType({}))
    capabilities: CapabilityTable = field(default_factory=CapabilityTable)

    @property
    def rule_ids(self) -> tuple[str, ...]:
        return tuple(rule.rule_id for rule in self.rules)

    @property
    def extract_options(self) -> ExtractOptions:
        return extract_options_for([self.checks[rule.rule_id] for rule in self.rules])

    def get(self, rule_id: str) -> RuleDefinition | None:
        for rule in self.rules:
            if rule.rule_id == rule_id:
                return rule
        return None

    def dependents_of(self, rule_id: str) -> set[str]:
        """Return every rule that depends on ``rule_id``, directly or not."""
        found: set[str] = set()
        frontier = [rule_id]
        while frontier:
            current = frontier.pop()
            for rule in self.rules:
                if current in rule.depends_on and rule.rule_id not in found:
                    found.add(rule.rule_id)
                    frontier.append(rule.rule_id)
        return found


def load_ruleset(source: Path | str | None = None) -> RuleSnapshot:
    """Load and validate a rule-set; ``None`` loads the bundled default."""
    if source is None:
        text = resources.files("codegate.rulesets").joinpath(DEFAULT_RULESET).read_text(
            encoding="utf-8"
        )
        return parse_ruleset(text, source=f"<bundled:{DEFAULT_RULESET}>")

    path = Path(source)
    if not path.is_file():
        raise RuleLoadError(f"Rule-set file does not exist: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise RuleLoadError(f"Cannot read rule-set {path}: {exc}") from exc
    return parse_ruleset(text, source=str(path))


def parse_ruleset(text: str, *, source: str = "<string>") -> RuleSnapshot:
    """Compile rule-set TOML text into a snapshot."""
    try:
        document = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise RuleLoadError(f"Invalid TOML in {source}: {exc}") from exc

    schema_version = document.get("schema_version")
    if schema_version != SCHEMA_VERSION:
        raise RuleLoadError(
            f"{source}: schema_version must be {SCHEMA_VERSION}, got {schema_version!r}"
        )
    name = _as_str(document.get("name"), "name", source)
    version = _as_str(document.get("version"), "version", source)

    try:
        table = parse_capability_table(document.get("capabilities"))
    except ValueError as exc:
        raise RuleLoadError(f"{source}: {exc}") from exc

    raw_rules = document.get("rules")
    if not isinstance(raw_rules, list) or not raw_rules:
        raise RuleLoadError(f"{source}: rules must be a non-empty list of tables")

    definitions: dict[str, RuleDefinition] = {}
    checks: dict[str, Check] = {}
    for index, raw in enumerate(raw_rules):
        definition, check = _compile_rule(raw, f"{source}: rules[{index}]", table)
        if definition.rule_id in definitions:
            raise RuleLoadError(f"{source}: duplicate rule id '{definition.rule_id}'")
        definitions[definition.rule_id] = definition
        checks[definition.rule_id] = check

    ordered = _dependency_order(definitions, source)
    logger.debug("loaded rule-set %s %s with %d rules", name, version, len(ordered))
    return RuleSnapshot(
        name=name,
        version=version,
        source=source,
        rules=tuple(definitions[rule_id] for rule_id in ordered),
        checks=MappingProxyType(checks),
        capabilities=table,
    )


def _compile_rule(
    raw: Any, field_name: str, table: CapabilityTable
) -> tuple[RuleDefinition, Check]:
    if not isinstance(raw, dict):
        raise RuleLoadError(f"{field_name} must be a table")
    missing = [key for key in _REQUIRED_RULE_KEYS if key not in raw]
    if missing:
        raise RuleLoadError(f"{field_name} is missing required key(s): {', '.join(missing)}")
    unknown = sorted(set(raw) - _ALLOWED_RULE_KEYS)
    if unknown:
        raise RuleLoadError(f"{field_name} has unknown key(s): {', '.join(unknown)}")

    rule_id = _as_str(raw["id"], "id", field_name)
    if not rule_id or not set(rule_id) <= _RULE_ID_CHARS:
        raise RuleLoadError(
            f"{field_name}.id '{rule_id}' must use lowercase letters, digits, '-', '_' or '.'"
        )
    field_name = f"{field_name} ('{rule_id}')"

    severity = _as_str(raw["severity"], "severity", field_name).lower()
    if severity not in SEVERITIES:
        raise RuleLoadError(f"{field_name}.severity must be one of: {', '.join(SEVERITIES)}")

    depends_on = raw.get("depends_on", [])
    if not isinstance(depends_on, list) or not all(isinstance(item, str) for item in depends_on):
        raise RuleLoadError(f"{field_name}.depends_on must be a list of rule ids")
    if rule_id in depends_on:
        raise RuleLoadError(f"{field_name} cannot depend on itself")

    params = raw.get("params", {})
    if not isinstance(params, dict):
        raise RuleLoadError(f"{field_name}.params must be a table")

    kind = _as_str(raw["kind"], "kind", field_name)
    try:
        check = build_check(kind, params, table)
    except ValueError as exc:
        raise RuleLoadError(f"{field_name}: {exc}") from exc

    definition = RuleDefinition(
        rule_id=rule_id,
        kind=kind,
        category=_as_str(raw["category"], "category", field_name),
        severity=severity,
        message=_as_str(raw["message"], "message", field_name),
        reference=_as_str(raw["reference"], "reference", field_name),
        params=freeze(params),
        depends_on=tuple(sorted(set(depends_on))),
    )
    return definition, check


def _dependency_order(definitions: Mapping[str, RuleDefinition], source: str) -> list[str]:
    for definition in definitions.values():
        unknown = [item for item in definition.depends_on if item not in definitions]
        if unknown:
            raise RuleLoadError(
                f"{source}: rule '{definition.rule_id}' depends on unknown rule(s): "
                + ", ".join(unknown)
            )

    sorter: TopologicalSorter[str] = TopologicalSorter()
    for rule_id in sorted(definitions):
        sorter.add(rule_id, *definitions[rule_id].depends_on)
    try:
        sorter.prepare()
    except CycleError as exc:
        cycle = " -> ".join(exc.args[1])
        raise RuleLoadError(f"{source}: rule dependency cycle: {cycle}") from exc

    ordered: list[str] = []
    while sorter.is_active():
        ready = sorted(sorter.get_ready())
        ordered.extend(ready)
        sorter.done(*ready)
    return ordered


def _as_str(value: Any, key: str, field_name: str) -> str:
    if not isinstance(value, str):
        raise RuleLoadError(f"{field_name}.{key} must be a string")
    return value
