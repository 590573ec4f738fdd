"""Tests for discovery, the worker pool, cancellation, and time budgets."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from codegate import engine
from codegate.engine import EngineOptions, discover_files, run_check
from codegate.evaluator import evaluate
from codegate.extractor import extract
from codegate.ruleset import parse_ruleset
from tests.helpers_tree import ASYNC_TABLE, rule_block, ruleset_text, write_tree

RULES = parse_ruleset(
    ruleset_text(
        rule_block("unparseable", "unparseable", severity="minor", message="{path}: {error}"),
        rule_block("no-print", "forbidden_call", params='patterns = ["print"]'),
        rule_block(
            "missing-async",
            "async_capability",
            severity="critical",
            params='outcome = "missing-async"',
        ),
        rule_block("dupes", "duplicate_identifier", severity="minor"),
        capabilities=ASYNC_TABLE,
    )
)


def _write_project(root: Path, count: int = 5) -> None:
    write_tree(
        root,
        {
            f"pkg/mod{i}.py": f"""
            def handler_{i}():
                print("hello")
            """
            for i in range(count)
        },
    )


def test_discover_files_skips_tooling_directories(tmp_path: Path) -> None:
    write_tree(
        tmp_path,
        {
            "app/main.py": "x = 1\n",
            "app/notes.txt": "not python\n",
            ".git/hooks/pre.py": "x = 1\n",
            ".venv/lib/site.py": "x = 1\n",
            "app/__pycache__/main.py": "x = 1\n",
            "codegate.egg-info/setup.py": "x = 1\n",
            "tests/test_main.py": "x = 1\n",
        },
    )

    found = [path.relative_to(tmp_path).as_posix() for path in discover_files(tmp_path)]

    assert found == ["app/main.py", "tests/test_main.py"]


def test_discover_files_applies_include_and_exclude(tmp_path: Path) -> None:
    write_tree(
        tmp_path,
        {"app/a.py": "", "app/b.py": "", "app/gen/c.py": "", "scripts/d.py": ""},
    )

    found = discover_files(tmp_path, include=["app/*"], exclude=["app/gen/*"])

    assert [path.relative_to(tmp_path).as_posix() for path in found] == ["app/a.py", "app/b.py"]


def test_single_file_root_is_checked_alone(tmp_path: Path) -> None:
    _write_project(tmp_path, count=2)
    target = tmp_path / "pkg" / "mod1.py"

    result = run_check(target, RULES)

    assert [source.path for source in result.sources] == ["mod1.py"]
    assert [(f.rule_id, f.path) for f in result.findings] == [("no-print", "mod1.py")]


def test_parallel_run_matches_sequential_evaluation(tmp_path: Path) -> None:
    _write_project(tmp_path, count=6)
    write_tree(
        tmp_path,
        {
            "pkg/models.py": "class Cache:\n    pass\n",
            "pkg/legacy.py": "class Cache:\n    pass\n",
            "pkg/broken.py": "def broken(:\n",
        },
    )
    sources = [extract(path, root=tmp_path) for path in discover_files(tmp_path)]
    expected = sorted(evaluate(sources, RULES), key=lambda f: f.key)

    for workers in (1, 4):
        result = run_check(tmp_path, RULES, EngineOptions(workers=workers))
        assert sorted(result.findings, key=lambda f: f.key) == expected
        assert result.incomplete is False
        assert result.files_checked == 9


def test_exhausted_budget_reports_timeout_only(tmp_path: Path) -> None:
    _write_project(tmp_path, count=3)

    result = run_check(tmp_path, RULES, EngineOptions(file_budget_seconds=-1.0))

    assert {source.status for source in result.sources} == {"timeout"}
    assert [f.rule_id for f in result.findings] == ["unparseable"] * 3
    assert result.incomplete is False


def test_cancel_before_start_reports_incomplete(tmp_path: Path) -> None:
    _write_project(tmp_path)
    cancel = threading.Event()
    cancel.set()

    result = run_check(tmp_path, RULES, cancel=cancel)

    assert result.incomplete is True
    assert result.sources == ()
    assert result.findings == ()


def test_cancel_mid_run_keeps_finished_files(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write_project(tmp_path, count=6)
    cancel = threading.Event()

    def cancelling_extract(*args, **kwargs):
        cancel.set()
        return extract(*args, **kwargs)

    monkeypatch.setattr(engine, "extract", cancelling_extract)

    result = run_check(tmp_path, RULES, EngineOptions(workers=1), cancel=cancel)

    assert result.incomplete is True
    assert 1 <= result.files_checked < 6
    assert {f.path for f in result.findings} <= {source.path for source in result.sources}


def test_stuck_file_is_abandoned_after_hard_limit(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write_project(tmp_path, count=2)
    write_tree(tmp_path, {"pkg/stuck.py": "x = 1\n"})
    release = threading.Event()

    def blocking_extract(path: Path, **kwargs):
        if path.name == "stuck.py":
            release.wait(timeout=10)
        return extract(path, **kwargs)

    monkeypatch.setattr(engine, "extract", blocking_extract)

    try:
        result = run_check(
            tmp_path,
            RULES,
            EngineOptions(workers=2, file_budget_seconds=0.5, grace_seconds=0.1),
        )
    finally:
        release.set()

    stuck = next(source for source in result.sources if source.path == "pkg/stuck.py")
    assert stuck.status == "timeout"
    assert result.incomplete is False
    assert result.files_checked == 3
    (timeout,) = [f for f in result.findings if f.rule_id == "unparseable"]
    assert timeout.path == "pkg/stuck.py"
    assert "abandoned" in timeout.message


def test_rejects_non_positive_worker_count(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="workers"):
        run_check(tmp_path, RULES, EngineOptions(workers=0))


def test_deeply_nested_source_does_not_abort_the_run(tmp_path: Path) -> None:
    _write_project(tmp_path, count=1)
    (tmp_path / "pkg" / "deep.py").write_text(
        "def total():\n    return " + " + ".join(["1"] * 1500) + "\n", encoding="utf-8"
    )

    result = run_check(tmp_path, RULES)

    assert result.incomplete is False
    assert {source.path: source.status for source in result.sources} == {
        "pkg/deep.py": "ok",
        "pkg/mod0.py": "ok",
    }
    assert [(f.rule_id, f.path) for f in result.findings] == [("no-print", "pkg/mod0.py")]
