"""Run orchestration: file discovery, the worker pool, and cancellation.

Files are extracted and evaluated on a thread pool. Workers share nothing
but the append-only :class:`FindingSink` and the rule-health record. Once
every dispatched file is done, cross-file rules run in a single pass over
the merged facts.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import threading
import time
from collections import deque
from collections.abc import Mapping, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType

from codegate.evaluator import RuleHealth, drop_disabled, evaluate_file, evaluate_project
from codegate.extractor import Deadline, FileTimeoutError, extract
from codegate.facts import STATUS_TIMEOUT, SourceFile
from codegate.rules import Finding
from codegate.ruleset import RuleSnapshot

logger = logging.getLogger(__name__)

SKIP_DIRS = frozenset(
    {
        ".git",
        ".hg",
        "__pycache__",
        ".venv",
        "venv",
        "node_modules",
        ".tox",
        ".nox",
        ".mypy_cache",
        ".pytest_cache",
        ".ruff_cache",
        "build",
        "dist",
    }
)
SOURCE_SUFFIX = ".py"
_POLL_SECONDS = 0.05


@dataclass(frozen=True, slots=True)
class EngineOptions:
    """Tuning knobs for one run."""

    workers: int = 4
    file_budget_seconds: float | None = 10.0
    grace_seconds: float = 5.0
    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class RunResult:
    """Everything the reporter needs from a finished run."""

    findings: tuple[Finding, ...]
    sources: tuple[SourceFile, ...]
    incomplete: bool
    disabled_rules: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def files_checked(self) -> int:
        return len(self.sources)


class FindingSink:
    """Append-only, thread-safe accumulator of per-file results.

    The first result recorded for a path wins; a late result from a worker
    the orchestrator already gave up on is ignored.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sources: dict[str, SourceFile] = {}
        self._findings: list[Finding] = []

    def add(self, source: SourceFile, findings: Sequence[Finding]) -> bool:
        with self._lock:
            if source.path in self._sources:
                return False
            self._sources[source.path] = source
            self._findings.extend(findings)
            return True

    def sources(self) -> list[SourceFile]:
        with self._lock:
            return [self._sources[path] for path in sorted(self._sources)]

    def findings(self) -> list[Finding]:
        with self._lock:
            return list(self._findings)


@dataclass(slots=True)
class _Task:
    path: Path
    rel_path: str
    started_at: float | None = None


def discover_files(
    root: Path,
    *,
    include: Sequence[str] = (),
    exclude: Sequence[str] = (),
) -> list[Path]:
    """Return source files under ``root`` in a stable order.

    ``root`` may also be a single file. Include/exclude globs match the
    posix path relative to the scanned directory.
    """
    if root.is_file():
        return [root]
    found: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            name for name in dirnames if name not in SKIP_DIRS and not name.endswith(".egg-info")
        )
        for filename in sorted(filenames):
            if not filename.endswith(SOURCE_SUFFIX):
                continue
            full = Path(dirpath) / filename
            rel = full.relative_to(root).as_posix()
            if include and not any(fnmatch.fnmatch(rel, pattern) for pattern in include):
                continue
            if exclude and any(fnmatch.fnmatch(rel, pattern) for pattern in exclude):
                continue
            found.append(full)
    return found


def run_check(
    root: Path,
    snapshot: RuleSnapshot,
    options: EngineOptions | None = None,
    cancel: threading.Event | None = None,
) -> RunResult:
    """Check every source file under ``root`` against ``snapshot``."""
    options = options or EngineOptions()
    cancel = cancel or threading.Event()
    if options.workers < 1:
        raise ValueError("workers must be >= 1")

    base = root if root.is_dir() else root.parent
    queue = deque(
        _Task(path=path, rel_path=path.relative_to(base).as_posix())
        for path in discover_files(root, include=options.include, exclude=options.exclude)
    )
    logger.info("checking %d files with %d workers", len(queue), options.workers)

    health = RuleHealth(snapshot)
    sink = FindingSink()
    worker = _FileWorker(base=base, snapshot=snapshot, health=health, sink=sink, options=options)
    pending: dict[Future[None], _Task] = {}
    abandoned = 0
    executor = ThreadPoolExecutor(max_workers=options.workers, thread_name_prefix="codegate")
    try:
        try:
            while queue or pending:
                while queue and len(pending) < options.workers * 2 and not cancel.is_set():
                    task = queue.popleft()
                    pending[executor.submit(worker.run, task)] = task
                if cancel.is_set():
                    break
                done, _ = wait(pending, timeout=_POLL_SECONDS, return_when=FIRST_COMPLETED)
                for future in done:
                    pending.pop(future)
                    future.result()
                abandoned += _expire_overdue(pending, worker, options)
        except KeyboardInterrupt:
            logger.warning("interrupted; stopping dispatch")
            cancel.set()

        if cancel.is_set():
            logger.warning(
                "cancelled with %d in flight and %d not dispatched; waiting up to %gs",
                len(pending),
                len(queue),
                options.grace_seconds,
            )
            done, _ = wait(pending, timeout=options.grace_seconds)
            for future in done:
                pending.pop(future)
                future.result()
    finally:
        # abandoned threads cannot be stopped; interpreter exit still joins them
        executor.shutdown(wait=not (pending or abandoned), cancel_futures=True)

    incomplete = bool(queue) or bool(pending)
    findings = sink.findings()
    sources = sink.sources()
    if incomplete:
        logger.warning("skipping cross-file rules for an incomplete run")
    else:
        findings.extend(evaluate_project(sources, snapshot, health, prior=findings))

    return RunResult(
        findings=tuple(drop_disabled(findings, health)),
        sources=tuple(sources),
        incomplete=incomplete,
        disabled_rules=MappingProxyType(health.disabled),
    )


class _FileWorker:
    def __init__(
        self,
        *,
        base: Path,
        snapshot: RuleSnapshot,
        health: RuleHealth,
        sink: FindingSink,
        options: EngineOptions,
    ) -> None:
        self._base = base
        self._snapshot = snapshot
        self._health = health
        self._sink = sink
        self._budget = options.file_budget_seconds
        self._extract_options = snapshot.extract_options

    def run(self, task: _Task) -> None:
        task.started_at = time.monotonic()
        deadline = Deadline(self._budget)
        source = extract(
            task.path, root=self._base, options=self._extract_options, deadline=deadline
        )
        try:
            findings = evaluate_file(
                source,
                self._snapshot,
                self._health,
                deadline=deadline if source.is_parsed else None,
            )
        except FileTimeoutError as exc:
            logger.warning("evaluation of %s timed out: %s", source.path, exc)
            source = replace(
                source,
                status=STATUS_TIMEOUT,
                imports=(),
                units=(),
                calls=frozenset(),
                error=str(exc),
            )
            findings = evaluate_file(source, self._snapshot, self._health)
        self._sink.add(source, findings)

    def give_up(self, task: _Task, elapsed: float) -> None:
        source = SourceFile(
            path=task.rel_path,
            size=0,
            status=STATUS_TIMEOUT,
            error=f"abandoned after {elapsed:.1f}s",
        )
        if self._sink.add(source, evaluate_file(source, self._snapshot, self._health)):
            logger.warning("gave up on %s after %.1fs", task.rel_path, elapsed)


def _expire_overdue(
    pending: dict[Future[None], _Task], worker: _FileWorker, options: EngineOptions
) -> int:
    # hard limit for workers stuck outside the cooperative deadline checks
    if options.file_budget_seconds is None:
        return 0
    limit = options.file_budget_seconds + options.grace_seconds
    now = time.monotonic()
    expired = 0
    for future, task in list(pending.items()):
        if task.started_at is None or now - task.started_at <= limit:
            continue
        worker.give_up(task, now - task.started_at)
        del pending[future]
        expired += 1
    return expired
