"""Source fact extraction for Python files.

The extractor is the only component that sees raw syntax. It turns one file
into a :class:`~codegate.facts.SourceFile` whose units carry the normalized
facts every rule works from: spans, visibility, capability tags, resolved
call paths, and (when a pattern rule asks for them) statement categories.
"""

from __future__ import annotations

import ast
import io
import logging
import re
import time
import tokenize
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from codegate.facts import (
    CATEGORY_ACT,
    CATEGORY_ARRANGE,
    CATEGORY_ASSERT,
    CATEGORY_GUARD,
    CATEGORY_HAPPY_PATH,
    CATEGORY_RETURN,
    STATUS_FAILED,
    STATUS_OK,
    STATUS_TIMEOUT,
    ExtractOptions,
    SourceFile,
    Statement,
    StructuralUnit,
    module_name_for,
    visibility_for,
)

logger = logging.getLogger(__name__)

_DEF_NODES = (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)
_FUNCTION_NODES = (ast.FunctionDef, ast.AsyncFunctionDef)
_CONSTRUCTORS = {"__init__", "__post_init__", "__new__", "__init_subclass__"}
_EXIT_NODES = (ast.Return, ast.Raise, ast.Continue, ast.Break)
_ARRANGE_CALLS = {
    "write_text",
    "write_bytes",
    "mkdir",
    "touch",
    "setattr",
    "setenv",
    "delenv",
    "chdir",
    "patch",
    "Mock",
    "MagicMock",
}
_ACT_CONTEXTS = {"raises", "warns", "assertRaises", "assertRaisesRegex", "assertWarns"}


class ExtractionError(Exception):
    """Base class for per-file extraction failures."""


class ParseError(ExtractionError):
    """Raised when a file cannot be decoded or parsed."""


class FileTimeoutError(ExtractionError):
    """Raised when a file exceeds its extraction time budget."""


class Deadline:
    """Cooperative time budget checked while walking a file."""

    def __init__(self, budget_seconds: float | None) -> None:
        self._budget = budget_seconds
        self._expires = None if budget_seconds is None else time.perf_counter() + budget_seconds

    def check(self) -> None:
        if self._expires is not None and time.perf_counter() > self._expires:
            raise FileTimeoutError(f"exceeded {self._budget:g}s budget")


def extract(
    path: Path,
    *,
    root: Path,
    options: ExtractOptions | None = None,
    deadline: Deadline | None = None,
) -> SourceFile:
    """Extract facts from one file on disk.

    Parse failures and budget overruns are isolated: they come back as a
    ``failed``/``timeout`` SourceFile with no units instead of raising.
    """
    rel_path = path.relative_to(root).as_posix()
    try:
        raw = path.read_bytes()
    except OSError as exc:
        logger.warning("cannot read %s: %s", rel_path, exc)
        return SourceFile(path=rel_path, size=0, status=STATUS_FAILED, error=str(exc))

    try:
        encoding, _ = tokenize.detect_encoding(io.BytesIO(raw).readline)
        text = raw.decode(encoding)
    except (SyntaxError, LookupError, UnicodeDecodeError) as exc:
        logger.warning("cannot decode %s: %s", rel_path, exc)
        return SourceFile(path=rel_path, size=len(raw), status=STATUS_FAILED, error=str(exc))

    return extract_source(
        text,
        path=rel_path,
        size=len(raw),
        options=options,
        deadline=deadline,
    )


def extract_source(
    text: str,
    *,
    path: str,
    size: int | None = None,
    options: ExtractOptions | None = None,
    deadline: Deadline | None = None,
) -> SourceFile:
    """Extract facts from already-decoded source text."""
    resolved_size = size if size is not None else len(text.encode("utf-8"))
    line_count = len(text.splitlines())
    module = module_name_for(path)
    try:
        units, imports, module_calls = _build(
            text,
            path=path,
            module=module,
            options=options or ExtractOptions(),
            deadline=deadline or Deadline(None),
        )
    except ParseError as exc:
        logger.warning("cannot parse %s: %s", path, exc)
        return SourceFile(
            path=path,
            size=resolved_size,
            status=STATUS_FAILED,
            line_count=line_count,
            module=module,
            error=str(exc),
        )
    except FileTimeoutError as exc:
        logger.warning("extraction of %s timed out: %s", path, exc)
        return SourceFile(
            path=path,
            size=resolved_size,
            status=STATUS_TIMEOUT,
            line_count=line_count,
            module=module,
            error=str(exc),
        )

    return SourceFile(
        path=path,
        size=resolved_size,
        status=STATUS_OK,
        line_count=line_count,
        module=module,
        imports=imports,
        units=units,
        calls=module_calls,
    )


def _build(
    text: str,
    *,
    path: str,
    module: str,
    options: ExtractOptions,
    deadline: Deadline,
) -> tuple[tuple[StructuralUnit, ...], tuple[str, ...], frozenset[str]]:
    try:
        tree = ast.parse(text, filename=path)
    except (SyntaxError, ValueError, RecursionError) as exc:
        raise ParseError(f"{exc.__class__.__name__}: {exc}") from exc
    deadline.check()

    is_package = path.endswith("__init__.py")
    aliases, imports = _collect_imports(tree, module=module, is_package=is_package)
    builder = _UnitBuilder(
        path=path,
        aliases=aliases,
        options=options,
        deadline=deadline,
    )
    try:
        units = tuple(builder.build(node, parent=None) for node in _direct_definitions(tree))
        module_calls = builder.module_calls(tree)
    except RecursionError as exc:
        raise ParseError(f"RecursionError: {exc}") from exc
    return units, imports, module_calls


class _UnitBuilder:
    def __init__(
        self,
        *,
        path: str,
        aliases: dict[str, str],
        options: ExtractOptions,
        deadline: Deadline,
    ) -> None:
        self._path = path
        self._aliases = aliases
        self._options = options
        self._deadline = deadline
        self._test_re = re.compile(options.test_pattern) if options.test_pattern else None

    def build(
        self,
        node: ast.FunctionDef | ast.AsyncFunctionDef | ast.ClassDef,
        *,
        parent: ast.AST | None,
        prefix: str = "",
    ) -> StructuralUnit:
        self._deadline.check()
        qualname = f"{prefix}.{node.name}" if prefix else node.name
        children = tuple(
            self.build(child, parent=node, prefix=qualname) for child in _direct_definitions(node)
        )
        line_start = min([node.lineno] + [dec.lineno for dec in node.decorator_list])
        resolved_decorators = (self._resolve(_decorator_target(dec)) for dec in node.decorator_list)
        decorators = tuple(path for path in resolved_decorators if path)

        if isinstance(node, ast.ClassDef):
            return StructuralUnit(
                kind="class",
                identifier=node.name,
                qualname=qualname,
                path=self._path,
                line_start=line_start,
                line_end=node.end_lineno or node.lineno,
                visibility=visibility_for(node.name),
                capabilities=_class_capabilities(node, decorators),
                calls=self._calls(node),
                parameters=_class_parameters(node),
                bases=tuple(
                    path for path in (self._resolve(_dotted(base)) for base in node.bases) if path
                ),
                decorators=decorators,
                children=children,
            )

        kind = "method" if isinstance(parent, ast.ClassDef) else "function"
        capabilities = {_last_segment(dec).lower() for dec in decorators}
        if isinstance(node, ast.AsyncFunctionDef):
            capabilities.add("async")
        return StructuralUnit(
            kind=kind,
            identifier=node.name,
            qualname=qualname,
            path=self._path,
            line_start=line_start,
            line_end=node.end_lineno or node.lineno,
            visibility=visibility_for(node.name),
            capabilities=frozenset(capabilities),
            calls=self._calls(node),
            parameters=_function_parameters(node.args),
            decorators=decorators,
            children=children,
            statements=self._statements(node),
        )

    def _calls(self, node: ast.AST) -> frozenset[str]:
        calls: set[str] = set()
        for stmt in node.body:
            for call in _iter_own_nodes(stmt, ast.Call):
                resolved = self._resolve(_dotted(call.func))
                if resolved:
                    calls.add(resolved)
        return frozenset(calls)

    def module_calls(self, tree: ast.Module) -> frozenset[str]:
        """Calls made at module level, outside every function and class."""
        return self._calls(tree)

    def _resolve(self, dotted: str | None) -> str | None:
        if not dotted:
            return None
        head, sep, rest = dotted.partition(".")
        target = self._aliases.get(head)
        if target is None:
            return dotted
        return f"{target}{sep}{rest}" if sep else target

    def _statements(self, node: ast.FunctionDef | ast.AsyncFunctionDef) -> tuple[Statement, ...]:
        body = _strip_docstring(node.body)
        if self._test_re is not None and self._test_re.search(node.name):
            return tuple(self._aaa_statement(stmt) for stmt in body)
        if self._options.categorize_guards:
            return tuple(_guard_statement(stmt) for stmt in body)
        return ()

    def _aaa_statement(self, stmt: ast.stmt) -> Statement:
        return Statement(category=self._aaa_category(stmt), line=stmt.lineno)

    def _aaa_category(self, stmt: ast.stmt) -> str:
        if isinstance(stmt, ast.Assert):
            return CATEGORY_ASSERT
        if isinstance(stmt, ast.Expr) and isinstance(stmt.value, ast.Call):
            callee = _last_segment(_dotted(stmt.value.func) or "")
            if callee.startswith("assert") or callee == "fail":
                return CATEGORY_ASSERT
            return CATEGORY_ARRANGE if _is_arrange_call(callee) else CATEGORY_ACT
        if isinstance(stmt, (ast.With, ast.AsyncWith)):
            for item in stmt.items:
                expr = item.context_expr
                if not isinstance(expr, ast.Call):
                    continue
                if _last_segment(_dotted(expr.func) or "") in _ACT_CONTEXTS:
                    return CATEGORY_ACT
            return CATEGORY_ARRANGE
        if isinstance(stmt, (ast.Assign, ast.AnnAssign, ast.AugAssign)):
            value = stmt.value
            if value is None:
                return CATEGORY_ARRANGE
            if isinstance(value, ast.Await):
                value = value.value
            if not isinstance(value, ast.Call):
                return CATEGORY_ACT if _contains(value, ast.Call) else CATEGORY_ARRANGE
            callee = _last_segment(_dotted(value.func) or "")
            if callee[:1].isupper() or callee.startswith("_") or _is_arrange_call(callee):
                return CATEGORY_ARRANGE
            return CATEGORY_ACT
        if _contains(stmt, ast.Assert):
            return CATEGORY_ASSERT
        if _contains(stmt, ast.Call):
            return CATEGORY_ACT
        return CATEGORY_ARRANGE


def _guard_statement(stmt: ast.stmt) -> Statement:
    if isinstance(stmt, ast.If) and not stmt.orelse and isinstance(stmt.body[-1], _EXIT_NODES):
        return Statement(category=CATEGORY_GUARD, line=stmt.lineno, reads=_names(stmt.test))
    if isinstance(stmt, (ast.Return, ast.Raise)):
        return Statement(category=CATEGORY_RETURN, line=stmt.lineno)
    binds: tuple[str, ...] = ()
    if isinstance(stmt, ast.Assign):
        binds = tuple(name for target in stmt.targets for name in _names(target))
    elif isinstance(stmt, ast.AnnAssign) and stmt.value is not None:
        binds = _names(stmt.target)
    return Statement(category=CATEGORY_HAPPY_PATH, line=stmt.lineno, binds=binds)


def _collect_imports(
    tree: ast.Module, *, module: str, is_package: bool
) -> tuple[dict[str, str], tuple[str, ...]]:
    aliases: dict[str, str] = {}
    imports: list[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                imports.append(alias.name)
                if alias.asname:
                    aliases[alias.asname] = alias.name
                else:
                    head = alias.name.split(".")[0]
                    aliases.setdefault(head, head)
        elif isinstance(node, ast.ImportFrom):
            base = _resolve_relative(node.module, node.level, module=module, is_package=is_package)
            if not base:
                continue
            for alias in node.names:
                if alias.name == "*":
                    imports.append(base)
                    continue
                imports.append(f"{base}.{alias.name}")
                aliases[alias.asname or alias.name] = f"{base}.{alias.name}"
    return aliases, tuple(dict.fromkeys(imports))


def _resolve_relative(name: str | None, level: int, *, module: str, is_package: bool) -> str:
    if level == 0:
        return name or ""
    parts = module.split(".") if module else []
    if not is_package:
        parts = parts[:-1]
    if level > 1:
        parts = parts[: len(parts) - (level - 1)] if len(parts) >= level - 1 else []
    if name:
        parts.append(name)
    return ".".join(parts)


def _direct_definitions(node: ast.AST) -> list[Any]:
    """Definitions nested under ``node`` without crossing another definition."""
    found: list[ast.AST] = []
    stack = list(reversed(list(ast.iter_child_nodes(node))))
    while stack:
        child = stack.pop()
        if isinstance(child, _DEF_NODES):
            found.append(child)
        elif not isinstance(child, ast.expr):
            stack.extend(reversed(list(ast.iter_child_nodes(child))))
    return found


def _iter_own_nodes(node: ast.AST, node_type: type[ast.AST]) -> Iterator[Any]:
    """Walk ``node`` in source order without entering nested named definitions.

    The walk keeps its own stack; deeply nested expressions are valid Python
    and must not exhaust the interpreter stack.
    """
    stack = [node]
    while stack:
        current = stack.pop()
        if isinstance(current, _DEF_NODES):
            continue
        if isinstance(current, node_type):
            yield current
        stack.extend(reversed(list(ast.iter_child_nodes(current))))


def _class_capabilities(node: ast.ClassDef, decorators: tuple[str, ...]) -> frozenset[str]:
    tags = {_last_segment(dec).lower() for dec in decorators}
    for dec in node.decorator_list:
        if isinstance(dec, ast.Call) and _last_segment(_dotted(dec.func) or "") == "dataclass":
            for keyword in dec.keywords:
                if keyword.arg in {"frozen", "slots"} and _is_true(keyword.value):
                    tags.add(keyword.arg)
    for stmt in node.body:
        if isinstance(stmt, (ast.Assign, ast.AnnAssign)):
            targets = stmt.targets if isinstance(stmt, ast.Assign) else [stmt.target]
            if any(isinstance(t, ast.Name) and t.id == "__slots__" for t in targets):
                tags.add("slots")
    if not _mutates_self(node):
        tags.add("immutable")
    return frozenset(tags)


def _mutates_self(node: ast.ClassDef) -> bool:
    for stmt in node.body:
        if not isinstance(stmt, _FUNCTION_NODES):
            continue
        if stmt.name == "__setattr__":
            return True
        if stmt.name in _CONSTRUCTORS or any(
            _last_segment(_dotted(dec) or "") == "staticmethod" for dec in stmt.decorator_list
        ):
            continue
        params = _function_parameters(stmt.args)
        if not params:
            continue
        receiver = params[0]
        for target in _assignment_targets(stmt):
            if (
                isinstance(target, ast.Attribute)
                and isinstance(target.value, ast.Name)
                and target.value.id == receiver
            ):
                return True
    return False


def _assignment_targets(node: ast.FunctionDef | ast.AsyncFunctionDef) -> Iterator[ast.expr]:
    for child in _iter_own_nodes_body(node):
        if isinstance(child, ast.Assign):
            yield from child.targets
        elif isinstance(child, (ast.AugAssign, ast.AnnAssign)):
            yield child.target


def _iter_own_nodes_body(node: ast.FunctionDef | ast.AsyncFunctionDef) -> Iterator[ast.stmt]:
    for stmt in node.body:
        yield from _iter_own_nodes(stmt, ast.stmt)


def _class_parameters(node: ast.ClassDef) -> tuple[str, ...]:
    """Constructor inputs: ``__init__`` parameters or annotated class fields."""
    for stmt in node.body:
        if isinstance(stmt, _FUNCTION_NODES) and stmt.name == "__init__":
            return _function_parameters(stmt.args)[1:]
    return tuple(
        stmt.target.id
        for stmt in node.body
        if isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name)
    )


def _function_parameters(args: ast.arguments) -> tuple[str, ...]:
    names = [arg.arg for arg in (*args.posonlyargs, *args.args, *args.kwonlyargs)]
    if args.vararg is not None:
        names.append(args.vararg.arg)
    if args.kwarg is not None:
        names.append(args.kwarg.arg)
    return tuple(names)


def _decorator_target(node: ast.expr) -> str | None:
    if isinstance(node, ast.Call):
        return _dotted(node.func)
    return _dotted(node)


def _dotted(node: ast.AST) -> str | None:
    attrs: list[str] = []
    while True:
        if isinstance(node, ast.Name):
            return ".".join([node.id, *reversed(attrs)])
        if isinstance(node, ast.Attribute):
            attrs.append(node.attr)
            node = node.value
        elif isinstance(node, ast.Subscript):
            node = node.value
        else:
            return None


def _names(node: ast.AST) -> tuple[str, ...]:
    return tuple(dict.fromkeys(n.id for n in ast.walk(node) if isinstance(n, ast.Name)))


def _contains(node: ast.AST, node_type: type[ast.AST]) -> bool:
    return any(True for _ in _iter_own_nodes(node, node_type))


def _strip_docstring(body: list[ast.stmt]) -> list[ast.stmt]:
    if (
        body
        and isinstance(body[0], ast.Expr)
        and isinstance(body[0].value, ast.Constant)
        and isinstance(body[0].value.value, str)
    ):
        return body[1:]
    return body


def _is_arrange_call(callee: str) -> bool:
    return callee in _ARRANGE_CALLS


def _is_true(node: ast.expr) -> bool:
    return isinstance(node, ast.Constant) and node.value is True


def _last_segment(dotted: str) -> str:
    return dotted.rsplit(".", 1)[-1]
