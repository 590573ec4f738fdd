"""Helpers for building source trees and rule-sets in tests."""

from __future__ import annotations

import textwrap
from pathlib import Path

from codegate.extractor import extract_source
from codegate.facts import ExtractOptions, SourceFile


def write_tree(root: Path, files: dict[str, str]) -> None:
    """Write dedented sources under ``root``."""
    for rel_path, content in files.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content).lstrip("\n"), encoding="utf-8")


def parse(
    content: str,
    *,
    path: str = "pkg/mod.py",
    options: ExtractOptions | None = None,
) -> SourceFile:
    """Extract facts from a dedented snippet."""
    return extract_source(textwrap.dedent(content).lstrip("\n"), path=path, options=options)


def rule_block(
    rule_id: str,
    kind: str,
    *,
    params: str = "",
    severity: str = "important",
    message: str = "{path}",
    depends_on: tuple[str, ...] = (),
) -> str:
    """Render one ``[[rules]]`` entry; ``params`` is an inline TOML table body."""
    lines = [
        "[[rules]]",
        f'id = "{rule_id}"',
        f'kind = "{kind}"',
        'category = "test"',
        f'severity = "{severity}"',
        f"message = '{message}'",
        f'reference = "guide#{rule_id}"',
    ]
    if depends_on:
        lines.append("depends_on = [" + ", ".join(f'"{item}"' for item in depends_on) + "]")
    if params:
        lines.append(f"params = {{ {params} }}")
    return "\n".join(lines)


def ruleset_text(*rules: str, capabilities: str = "") -> str:
    """Render a complete rule-set document."""
    header = "\n".join(['schema_version = 1', 'name = "test-rules"', 'version = "1.0"', ""])
    return "\n\n".join([header, capabilities, *rules]) + "\n"


ASYNC_TABLE = "\n".join(
    [
        "[capabilities]",
        "mixed_supersedes = true",
        "",
        "[[capabilities.table]]",
        'pattern = "asyncio.sleep"',
        "requires_async = true",
        "",
        "[[capabilities.table]]",
        'pattern = "time.sleep"',
        "requires_async = false",
    ]
)
