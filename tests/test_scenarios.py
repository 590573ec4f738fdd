"""End-to-end scenarios against the bundled rule-set."""

from __future__ import annotations

from pathlib import Path

from codegate.engine import EngineOptions, run_check
from codegate.output import render_json
from codegate.report import ComplianceReport, aggregate
from codegate.ruleset import load_ruleset
from tests.helpers_tree import write_tree

BUNDLED = load_ruleset()


def _check(root: Path, *, workers: int = 4) -> ComplianceReport:
    result = run_check(root, BUNDLED, EngineOptions(workers=workers))
    return aggregate(result.findings, incomplete=result.incomplete)


def test_sync_function_calling_async_api_is_flagged(tmp_path: Path) -> None:
    write_tree(
        tmp_path,
        {
            "svc/cache.py": """
            import asyncio


            def refresh():
                asyncio.sleep(1)
            """,
        },
    )

    report = _check(tmp_path)

    assert [(f.rule_id, f.severity, f.path, f.line_start) for f in report.findings] == [
        ("missing-async", "critical", "svc/cache.py", 4)
    ]
    assert "asyncio.sleep" in report.findings[0].message
    assert report.gate == "fail"


def test_mutable_manager_class_is_flagged(tmp_path: Path) -> None:
    write_tree(
        tmp_path,
        {
            "svc/managers.py": """
            class CacheManager:
                def __init__(self, session):
                    self.session = session
                    self.cache = {}

                def put(self, key, value):
                    self.cache = {key: value}
            """,
        },
    )

    report = _check(tmp_path)

    assert [f.rule_id for f in report.findings] == ["manager-pattern-violation"]
    (finding,) = report.findings
    assert finding.confidence == 1.0
    assert "missing tags: frozen, immutable" in finding.message


def test_frozen_manager_class_passes(tmp_path: Path) -> None:
    write_tree(
        tmp_path,
        {
            "svc/managers.py": """
            from dataclasses import dataclass


            @dataclass(frozen=True, slots=True)
            class CacheManager:
                session: object

                def lookup(self, key):
                    return key
            """,
        },
    )

    assert _check(tmp_path).findings == ()


def test_assert_before_act_in_test_is_flagged(tmp_path: Path) -> None:
    write_tree(
        tmp_path,
        {
            "calc.py": """
            def add(left, right):
                return left + right
            """,
            "tests/test_calc.py": """
            from calc import add


            def test_add_out_of_order():
                assert add(1, 2) == 3
                result = add(2, 2)
                assert result == 4


            def test_add_in_order():
                left = 2
                result = add(left, 2)
                assert result == 4
            """,
        },
    )

    report = _check(tmp_path)

    assert [(f.rule_id, f.line_start) for f in report.findings] == [("test-aaa-order", 4)]
    assert "assert before act at line(s) 5" in report.findings[0].message


def test_clean_tree_passes_the_gate(tmp_path: Path) -> None:
    write_tree(
        tmp_path,
        {
            "svc/__init__.py": "",
            "svc/service.py": """
            import asyncio
            import logging

            logger = logging.getLogger(__name__)


            async def refresh(delay):
                if delay < 0:
                    raise ValueError("delay must be >= 0")
                await asyncio.sleep(delay)
                logger.info("refreshed")
            """,
        },
    )

    report = _check(tmp_path)

    assert report.findings == ()
    assert report.gate == "pass"
    assert report.incomplete is False


def test_one_broken_file_does_not_hide_the_others(tmp_path: Path) -> None:
    files = {
        f"pkg/mod{i}.py": f"""
        import asyncio


        def refresh_{i}():
            asyncio.sleep(1)
        """
        for i in range(9)
    }
    files["pkg/broken.py"] = "def broken(:\n    pass\n"
    write_tree(tmp_path, files)

    report = _check(tmp_path)

    by_rule: dict[str, int] = {}
    for finding in report.findings:
        by_rule[finding.rule_id] = by_rule.get(finding.rule_id, 0) + 1
    assert by_rule == {"missing-async": 9, "unparseable": 1}
    assert report.incomplete is False


def test_repeated_runs_render_identical_json(tmp_path: Path) -> None:
    write_tree(
        tmp_path,
        {
            "app/models.py": "class User:\n    pass\n",
            "app/legacy.py": "class User:\n    pass\n",
            "app/a.py": "import app.b\n",
            "app/b.py": "import app.a\n",
            "app/debug.py": "def trace():\n    breakpoint()\n    print('x')\n",
        },
    )

    first = render_json(_check(tmp_path, workers=1))
    second = render_json(_check(tmp_path, workers=4))

    assert first == second
    assert '"duplicate-identifier"' in first
    assert '"import-cycle"' in first
