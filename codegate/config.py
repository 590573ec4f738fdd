"""Configuration loading for codegate."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from codegate.rules.base import SEVERITIES

CONFIG_FILENAMES = (".codegate.toml", "codegate.toml")
PYPROJECT_FILENAME = "pyproject.toml"
PYPROJECT_TOOL_KEYS = ("codegate",)
OUTPUT_FORMATS = {"text", "json"}


@dataclass(slots=True)
class GateConfig:
    """Gate tolerances per severity."""

    important_max: int = 0
    minor_max: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"important_max": self.important_max, "minor_max": self.minor_max}


@dataclass(slots=True)
class EngineConfig:
    """Worker pool and time budget settings."""

    workers: int = 4
    file_budget_seconds: float = 10.0
    grace_seconds: float = 5.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "workers": self.workers,
            "file_budget_seconds": self.file_budget_seconds,
            "grace_seconds": self.grace_seconds,
        }


@dataclass(slots=True)
class AppConfig:
    """Runtime configuration values resolved from project files."""

    format: str = "text"
    rules: str | None = None
    severity_gate: str = "important"
    fail_on: str | None = None
    include: list[str] = field(default_factory=list)
    exclude: list[str] = field(default_factory=list)
    gate: GateConfig = field(default_factory=GateConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "format": self.format,
            "rules": self.rules,
            "severity_gate": self.severity_gate,
            "fail_on": self.fail_on,
            "include": list(self.include),
            "exclude": list(self.exclude),
            "gate": self.gate.to_dict(),
            "engine": self.engine.to_dict(),
            "source": self.source,
        }

    def rules_path(self) -> Path | None:
        """Rule-set path, relative paths resolved against the config file."""
        if self.rules is None:
            return None
        path = Path(self.rules)
        if path.is_absolute() or self.source is None:
            return path
        return Path(self.source).parent / path


def load_app_config(root: Path, config_path: Path | None = None) -> AppConfig:
    """Load config from explicit path or project-local files with precedence."""
    root = root.resolve()
    if root.is_file():
        root = root.parent
    if config_path is not None:
        resolved = config_path if config_path.is_absolute() else (root / config_path)
        if not resolved.exists():
            raise ValueError(f"Config file does not exist: {resolved}")
        mapping = _extract_config_mapping(_load_toml(resolved), source_path=resolved)
        return _from_mapping(mapping, source=str(resolved))

    for filename in CONFIG_FILENAMES:
        resolved = root / filename
        if resolved.exists():
            mapping = _extract_config_mapping(_load_toml(resolved), source_path=resolved)
            return _from_mapping(mapping, source=str(resolved))

    pyproject_path = root / PYPROJECT_FILENAME
    if pyproject_path.exists():
        mapping = _extract_config_mapping(_load_toml(pyproject_path), source_path=pyproject_path)
        if mapping:
            return _from_mapping(mapping, source=str(pyproject_path))

    return AppConfig()


def default_config_template() -> str:
    """Return a starter config template users can customize."""
    return "\n".join(
        [
            'format = "text"',
            '# rules = "codegate-rules.toml"',
            'severity_gate = "important"',
            '# fail_on = "minor"',
            '# include = ["src/**"]',
            '# exclude = ["**/migrations/**"]',
            "",
            "[gate]",
            "important_max = 0",
            "minor_max = 0",
            "",
            "[engine]",
            "workers = 4",
            "file_budget_seconds = 10.0",
            "grace_seconds = 5.0",
            "",
        ]
    )


def _load_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as file_obj:
            loaded = tomllib.load(file_obj)
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"Invalid TOML in {path}: {exc}") from exc
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _extract_config_mapping(loaded: dict[str, Any], *, source_path: Path) -> dict[str, Any]:
    if source_path.name == PYPROJECT_FILENAME:
        section = _find_pyproject_tool_section(loaded)
        return section if section is not None else {}

    tool_section = _find_pyproject_tool_section(loaded)
    if tool_section is not None:
        return tool_section
    return loaded


def _find_pyproject_tool_section(loaded: dict[str, Any]) -> dict[str, Any] | None:
    tool = loaded.get("tool")
    if not isinstance(tool, dict):
        return None
    for key in PYPROJECT_TOOL_KEYS:
        section = tool.get(key)
        if isinstance(section, dict):
            return section
    return None


def _from_mapping(mapping: dict[str, Any], *, source: str) -> AppConfig:
    gate_mapping = _as_table(mapping.get("gate"), "gate")
    engine_mapping = _as_table(mapping.get("engine"), "engine")

    raw_rules = mapping.get("rules")
    rules = None if raw_rules is None else _as_str(raw_rules, "rules")
    raw_fail_on = mapping.get("fail_on")
    fail_on = None if raw_fail_on is None else _as_choice(raw_fail_on, set(SEVERITIES), "fail_on")

    return AppConfig(
        format=_as_choice(mapping.get("format", "text"), OUTPUT_FORMATS, "format"),
        rules=rules,
        severity_gate=_as_choice(
            mapping.get("severity_gate", "important"), set(SEVERITIES), "severity_gate"
        ),
        fail_on=fail_on,
        include=_as_str_list(mapping.get("include"), "include"),
        exclude=_as_str_list(mapping.get("exclude"), "exclude"),
        gate=_parse_gate_config(gate_mapping),
        engine=_parse_engine_config(engine_mapping),
        source=source,
    )


def _parse_gate_config(value: dict[str, Any]) -> GateConfig:
    important_max = _as_int(value.get("important_max", 0), "gate.important_max")
    minor_max = _as_int(value.get("minor_max", 0), "gate.minor_max")
    if important_max < 0 or minor_max < 0:
        raise ValueError("gate thresholds must be >= 0")
    return GateConfig(important_max=important_max, minor_max=minor_max)


def _parse_engine_config(value: dict[str, Any]) -> EngineConfig:
    workers = _as_int(value.get("workers", 4), "engine.workers")
    if workers <= 0:
        raise ValueError("engine.workers must be > 0")
    budget = _as_float(value.get("file_budget_seconds", 10.0), "engine.file_budget_seconds")
    if budget <= 0:
        raise ValueError("engine.file_budget_seconds must be > 0")
    grace = _as_float(value.get("grace_seconds", 5.0), "engine.grace_seconds")
    if grace < 0:
        raise ValueError("engine.grace_seconds must be >= 0")
    return EngineConfig(workers=workers, file_budget_seconds=budget, grace_seconds=grace)


def _as_table(value: Any, field_name: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{field_name} must be a table/object")
    return value


def _as_str_list(value: Any, field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"{field_name} must be a list of strings")
    return list(value)


def _as_str(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string")
    return value


def _as_choice(raw: Any, allowed: set[str], field_name: str) -> str:
    value = str(raw).lower()
    if value not in allowed:
        choices = ", ".join(sorted(allowed))
        raise ValueError(f"{field_name} must be one of: {choices}")
    return value


def _as_int(raw: Any, field_name: str) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValueError(f"{field_name} must be an integer")
    return raw


def _as_float(raw: Any, field_name: str) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ValueError(f"{field_name} must be a number")
    return float(raw)
