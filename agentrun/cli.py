from __future__ import annotations

"""Developer-facing CLI for inspecting tool catalogs, budgets and oversight data."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from pydantic import ValidationError

from agentrun.src.core.budget import Allowance, Budget, BudgetFloor, BudgetGuard, TimeAllowance
from agentrun.src.core.config import RuntimeSettings
from agentrun.src.core.errors import BudgetExceededError, CheckpointError, ConfigurationError
from agentrun.src.core.tools.registry import ToolRegistry
from agentrun.src.oversight.store import OversightStore


app = typer.Typer(help="Utility commands for the agent episode runtime.")
tools_app = typer.Typer(help="Inspect and validate tool catalogs.")
budget_app = typer.Typer(help="Explore budget allocation.")
checkpoint_app = typer.Typer(help="Inspect stored checkpoints.")
audit_app = typer.Typer(help="Read the audit log.")
app.add_typer(tools_app, name="tools")
app.add_typer(budget_app, name="budget")
app.add_typer(checkpoint_app, name="checkpoint")
app.add_typer(audit_app, name="audit")


_state: Dict[str, Any] = {}


def _settings() -> RuntimeSettings:
    if "settings" not in _state:
        _state["settings"] = RuntimeSettings()
    return _state["settings"]


@app.callback()
def main_callback(
    settings_file: Optional[Path] = typer.Option(
        None, "--settings", exists=True, resolve_path=True, help="JSON settings file"
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override the configured log level"),
) -> None:
    """Load settings and configure logging.

    Values from ``--settings`` win over ``AGENTRUN_*`` environment variables,
    which win over the defaults.
    """

    try:
        settings = RuntimeSettings.from_file(settings_file) if settings_file else RuntimeSettings.from_env()
        if log_level:
            settings.log_level = log_level
    except (ValidationError, ValueError) as exc:
        typer.secho(f"Invalid settings: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=2) from exc
    logging.basicConfig(level=getattr(logging, settings.log_level))
    _state["settings"] = settings


def _load_catalog(path: Path) -> ToolRegistry:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        typer.secho(f"Failed to read catalog: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON in {path}: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    if isinstance(payload, dict):
        payload = payload.get("tools", [])
    if not isinstance(payload, list):
        typer.secho("Catalog must be a list of tools or an object with a 'tools' list", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        return ToolRegistry(payload)
    except (ConfigurationError, TypeError) as exc:
        typer.secho(f"Catalog rejected: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc


def _open_store(db: Optional[Path]) -> OversightStore:
    db_path = db or _settings().database_path
    if db_path is None:
        typer.secho("No database configured; pass --db or set AGENTRUN_DATABASE_PATH", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not Path(db_path).exists():
        typer.secho(f"Database not found: {db_path}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return OversightStore(db_path=Path(db_path))


@tools_app.command("list")
def tools_list(
    path: Path = typer.Argument(..., exists=True, resolve_path=True, help="Path to a JSON tool catalog"),
    risk: Optional[List[str]] = typer.Option(None, "--risk", "-r", help="Optional risk-level filter (e.g. read)."),
) -> None:
    """List the tools in a catalog."""

    registry = _load_catalog(path)
    levels = {value.lower() for value in risk or [] if value}
    payload: List[Dict[str, Any]] = []
    for definition in registry.list():
        if levels and definition.risk_level not in levels:
            continue
        payload.append(
            {
                "id": definition.id,
                "name": definition.display_name,
                "category": definition.category,
                "risk_level": definition.risk_level,
                "permissions": list(definition.permissions),
                "retries": definition.retry_policy.max_retries if definition.retry_policy else 0,
                "deprecated": definition.deprecated,
            }
        )
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=True))


@tools_app.command("check")
def tools_check(
    path: Path = typer.Argument(..., exists=True, resolve_path=True, help="Path to a JSON tool catalog"),
) -> None:
    """Validate a catalog: unique ids, known categories and well-formed schemas."""

    registry = _load_catalog(path)
    deprecated = [definition.id for definition in registry if definition.deprecated]
    typer.secho(f"Catalog OK: {len(registry)} tool(s)", fg=typer.colors.GREEN)
    for tool_id in deprecated:
        typer.secho(f"warning: {tool_id} is deprecated", fg=typer.colors.YELLOW)


@budget_app.command("split")
def budget_split(
    fraction: float = typer.Option(0.25, help="Requested share of the remaining budget"),
    max_tokens: Optional[int] = typer.Option(None, "--max-tokens"),
    used_tokens: int = typer.Option(0, "--used-tokens"),
    max_time_ms: Optional[float] = typer.Option(None, "--max-time-ms"),
    elapsed_ms: float = typer.Option(0.0, "--elapsed-ms"),
    max_tool_calls: Optional[int] = typer.Option(None, "--max-tool-calls"),
    used_tool_calls: int = typer.Option(0, "--used-tool-calls"),
    max_subcalls: Optional[int] = typer.Option(None, "--max-subcalls"),
    used_subcalls: int = typer.Option(0, "--used-subcalls"),
) -> None:
    """Show the child budget a parent with the given ledger would hand out."""

    settings = _settings()
    try:
        parent = Budget(
            tokens=Allowance(used=used_tokens, max=max_tokens),
            time=TimeAllowance(max_ms=max_time_ms, elapsed_ms=elapsed_ms),
            tool_calls=Allowance(used=used_tool_calls, max=max_tool_calls),
            subcalls=Allowance(used=used_subcalls, max=max_subcalls),
        )
        guard = BudgetGuard(parent, warning_threshold=settings.warning_threshold)
        child = guard.allocate_subcall_budget(
            fraction,
            floor=BudgetFloor(
                tokens=settings.min_child_tokens,
                time_ms=settings.min_child_time_ms,
                tool_calls=settings.min_child_tool_calls,
            ),
            max_fraction=settings.max_child_fraction,
        )
    except BudgetExceededError as exc:
        typer.secho(f"Refused: {exc}", err=True, fg=typer.colors.RED)
        typer.echo(json.dumps(exc.details, indent=2, default=str))
        raise typer.Exit(code=1) from exc
    except ValueError as exc:
        typer.secho(f"Invalid budget: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=2) from exc
    typer.echo(json.dumps({"parent": parent.to_dict(), "child": child.to_dict()}, indent=2))


@checkpoint_app.command("list")
def checkpoint_list(
    db: Optional[Path] = typer.Option(None, help="Path to the oversight database"),
    episode: Optional[str] = typer.Option(None, help="Only show checkpoints of this episode"),
) -> None:
    """List stored checkpoints, oldest first."""

    store = _open_store(db)
    try:
        payload = [
            {
                "id": item.id,
                "episode_id": item.episode_id,
                "phase": item.phase,
                "status": item.status,
                "trigger": item.trigger,
                "created_at": item.created_at,
            }
            for item in store.list_checkpoints(episode)
        ]
    finally:
        store.close()
    typer.echo(json.dumps(payload, indent=2))


@checkpoint_app.command("show")
def checkpoint_show(
    checkpoint_id: str = typer.Argument(..., help="Checkpoint id"),
    db: Optional[Path] = typer.Option(None, help="Path to the oversight database"),
) -> None:
    """Print a stored checkpoint as JSON."""

    store = _open_store(db)
    try:
        snapshot = store.load(checkpoint_id)
    except CheckpointError as exc:
        typer.secho(str(exc), err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    finally:
        store.close()
    typer.echo(snapshot.model_dump_json(indent=2))


@audit_app.command("tail")
def audit_tail(
    db: Optional[Path] = typer.Option(None, help="Path to the oversight database"),
    limit: int = typer.Option(20, help="Number of records to show"),
    episode: Optional[str] = typer.Option(None, help="Only show records of this episode"),
) -> None:
    """Show the most recent audit records."""

    store = _open_store(db)
    try:
        records = store.audit_events(episode_id=episode, limit=limit)
    finally:
        store.close()
    typer.echo(json.dumps([record.to_dict() for record in records], indent=2, default=str))


def main() -> None:
    """Entrypoint for ``python -m agentrun.cli``."""

    app()


if __name__ == "__main__":  # pragma: no cover
    main()
