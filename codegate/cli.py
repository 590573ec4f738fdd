"""CLI entrypoint for codegate."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated

import typer

from codegate import __version__
from codegate.config import AppConfig, default_config_template, load_app_config
from codegate.engine import EngineOptions, run_check
from codegate.output import render_json, render_text
from codegate.report import GatePolicy, ReportMeta, aggregate, exit_code_for
from codegate.rules import list_kind_info
from codegate.rules.base import SEVERITIES
from codegate.ruleset import RuleLoadError, RuleSnapshot, load_ruleset

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"

app = typer.Typer(
    name="codegate",
    no_args_is_help=True,
    help="Check a source tree against a declarative rule-set and gate on the result.",
)


def version_callback(value: bool) -> None:
    """Print version and exit when --version is provided."""
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option("--version", help="Show version and exit.", callback=version_callback),
    ] = False,
) -> None:
    """Root command callback."""
    _ = version


@app.command("check")
def check_command(
    path: Annotated[Path, typer.Argument(help="File or directory to check.")] = Path("."),
    rules: Annotated[
        Path | None, typer.Option("--rules", help="Rule-set TOML file (default: bundled).")
    ] = None,
    severity_gate: Annotated[
        str | None,
        typer.Option(help="Lowest severity that counts toward the gate.", show_default="important"),
    ] = None,
    format: Annotated[
        str | None, typer.Option(help="Output format: text|json.", show_default="text")
    ] = None,
    fail_on: Annotated[
        str | None,
        typer.Option(help="Also exit nonzero if any finding is at or above this severity."),
    ] = None,
    include: Annotated[list[str] | None, typer.Option(help="Include glob pattern.")] = None,
    exclude: Annotated[list[str] | None, typer.Option(help="Exclude glob pattern.")] = None,
    workers: Annotated[int | None, typer.Option(help="Number of worker threads.")] = None,
    config_file: Annotated[
        Path | None,
        typer.Option("--config", help="Path to config TOML file."),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log progress.")] = False,
) -> None:
    """Check a source tree and print a compliance report."""
    _configure_logging(verbose)
    if not path.exists():
        raise typer.BadParameter(f"Path does not exist: {path}", param_hint="path")

    app_config = _load_config_or_raise(path, config_file)
    output_format = _choice_or_default(
        value=format, default=app_config.format, allowed={"text", "json"}, field_name="--format"
    )
    gate_level = _choice_or_default(
        value=severity_gate,
        default=app_config.severity_gate,
        allowed=set(SEVERITIES),
        field_name="--severity-gate",
    )
    fail_level = fail_on or app_config.fail_on
    if fail_level is not None:
        fail_level = _choice_or_default(
            value=fail_level, default=fail_level, allowed=set(SEVERITIES), field_name="--fail-on"
        )
    resolved_workers = workers if workers is not None else app_config.engine.workers
    if resolved_workers < 1:
        raise typer.BadParameter("workers must be >= 1", param_hint="--workers")

    snapshot = _load_ruleset_or_exit(rules or app_config.rules_path())
    options = EngineOptions(
        workers=resolved_workers,
        file_budget_seconds=app_config.engine.file_budget_seconds,
        grace_seconds=app_config.engine.grace_seconds,
        include=tuple(include or app_config.include),
        exclude=tuple(exclude or app_config.exclude),
    )
    try:
        result = run_check(path.resolve(), snapshot, options)
    except Exception as exc:
        logger.exception("check failed")
        typer.echo(f"error: internal failure: {exc}", err=True)
        raise typer.Exit(code=2) from exc

    report = aggregate(
        result.findings,
        gate_policy=GatePolicy(
            level=gate_level,
            important_max=app_config.gate.important_max,
            minor_max=app_config.gate.minor_max,
        ),
        incomplete=result.incomplete,
        meta=ReportMeta(
            version=__version__,
            ruleset=snapshot.name,
            ruleset_version=snapshot.version,
            files_checked=result.files_checked,
            disabled_rules=tuple(result.disabled_rules),
        ),
    )

    if output_format == "json":
        typer.echo(render_json(report))
    else:
        typer.echo(render_text(report))

    code = exit_code_for(report, fail_on=fail_level)
    if code:
        raise typer.Exit(code=code)


@app.command("rules")
def rules_command(
    rules: Annotated[
        Path | None, typer.Option("--rules", help="Rule-set TOML file (default: bundled).")
    ] = None,
    kinds: Annotated[
        bool, typer.Option("--kinds", help="List built-in rule kinds instead.")
    ] = False,
    format: Annotated[str, typer.Option(help="Output format: text|json.")] = "text",
) -> None:
    """List the rules of a rule-set or the available rule kinds."""
    output_format = _choice_or_default(
        value=format, default="text", allowed={"text", "json"}, field_name="--format"
    )

    if kinds:
        kind_info = list_kind_info()
        if output_format == "json":
            payload = {
                "kinds": [
                    {
                        "kind": item.kind,
                        "name": item.name,
                        "description": item.description,
                        "scope": item.scope,
                    }
                    for item in kind_info
                ]
            }
            typer.echo(json.dumps(payload, sort_keys=True))
            return
        lines = ["Rule kinds:"]
        lines.extend(f"- {item.kind} [{item.scope}] - {item.description}" for item in kind_info)
        typer.echo("\n".join(lines))
        return

    snapshot = _load_ruleset_or_exit(rules)
    if output_format == "json":
        payload = {
            "rules": [
                {
                    "rule_id": rule.rule_id,
                    "kind": rule.kind,
                    "category": rule.category,
                    "severity": rule.severity,
                    "reference": rule.reference,
                    "depends_on": list(rule.depends_on),
                }
                for rule in snapshot.rules
            ],
            "meta": {
                "ruleset": snapshot.name,
                "ruleset_version": snapshot.version,
                "source": snapshot.source,
            },
        }
        typer.echo(json.dumps(payload, sort_keys=True))
        return

    lines = [f"Rule-set {snapshot.name} {snapshot.version} ({snapshot.source}):"]
    for rule in snapshot.rules:
        suffix = f" (after {', '.join(rule.depends_on)})" if rule.depends_on else ""
        lines.append(f"- {rule.rule_id} [{rule.severity}, {rule.kind}]{suffix}")
    typer.echo("\n".join(lines))


@app.command("config")
def config_command(
    path: Annotated[Path, typer.Argument(help="Project directory.")] = Path("."),
    format: Annotated[str, typer.Option(help="Output format: text|json.")] = "text",
    config_file: Annotated[
        Path | None,
        typer.Option("--config", help="Path to config TOML file."),
    ] = None,
) -> None:
    """Show resolved configuration."""
    output_format = _choice_or_default(
        value=format, default="text", allowed={"text", "json"}, field_name="--format"
    )

    app_config = _load_config_or_raise(path, config_file)
    snapshot = _load_ruleset_or_exit(app_config.rules_path())
    payload = app_config.to_dict()
    payload["ruleset"] = {"name": snapshot.name, "version": snapshot.version}
    payload["active_rule_ids"] = list(snapshot.rule_ids)

    if output_format == "json":
        typer.echo(json.dumps(payload, sort_keys=True))
        return

    lines = [
        "Resolved configuration:",
        f"- source: {payload['source'] or 'defaults'}",
        f"- format: {payload['format']}",
        f"- rules: {payload['rules'] or 'bundled'}",
        f"- severity_gate: {payload['severity_gate']}",
        f"- fail_on: {payload['fail_on']}",
        f"- include: {payload['include']}",
        f"- exclude: {payload['exclude']}",
        f"- gate: {payload['gate']}",
        f"- engine: {payload['engine']}",
        f"- active_rule_ids: {payload['active_rule_ids']}",
    ]
    typer.echo("\n".join(lines))


@app.command("config-init")
def config_init_command(
    out: Annotated[Path, typer.Option(help="Output path for starter config TOML.")] = Path(
        ".codegate.toml"
    ),
    force: Annotated[
        bool,
        typer.Option("--force", help="Overwrite if file already exists."),
    ] = False,
) -> None:
    """Create a starter project config file."""
    out_path = out.resolve()
    if out_path.exists() and not force:
        raise typer.BadParameter(
            f"Refusing to overwrite existing file: {out_path}. Use --force to overwrite."
        )
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(default_config_template(), encoding="utf-8")
    typer.echo(f"Wrote starter config: {out_path}")


def main() -> None:
    """Console script entrypoint."""
    app()


def _configure_logging(verbose: bool) -> None:
    if not verbose:
        return
    logging.basicConfig(level=logging.DEBUG, format=_LOG_FORMAT)
    logging.getLogger("codegate").setLevel(logging.DEBUG)


def _load_config_or_raise(path: Path, config_file: Path | None = None) -> AppConfig:
    try:
        return load_app_config(path, config_path=config_file)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="config") from exc


def _load_ruleset_or_exit(source: Path | None) -> RuleSnapshot:
    try:
        return load_ruleset(source)
    except RuleLoadError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2) from exc


def _choice_or_default(
    *,
    value: str | None,
    default: str,
    allowed: set[str],
    field_name: str,
) -> str:
    resolved = (value or default).lower()
    if resolved not in allowed:
        choices = ", ".join(sorted(allowed))
        raise typer.BadParameter(f"{field_name} must be one of: {choices}", param_hint=field_name)
    return resolved
