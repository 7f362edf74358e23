"""Typer CLI for the case transition engine.

Commands:
    caseflow init                      Write default config and an empty store
    caseflow add-user <name> --role    Register a user
    caseflow open-case <title> ...     Open a case in intake
    caseflow status <case-id>          Phase, status, progress and next steps
    caseflow transition <case-id> <phase> --as <user-id>
    caseflow approve <approval-id> --as <user-id>
    caseflow reject <approval-id> --as <user-id> --reason
    caseflow history <case-id>         Executed transitions, newest first
    caseflow pending --as <user-id>    Pending approval requests
    caseflow notifications --as <user-id>
    caseflow read <notification-id>    Mark a notification read
    caseflow requirements <phase> --type <case-type>
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .case_type_validator import CaseTypeValidator
from .config import CONFIG_PATH, CaseflowConfig, ensure_config, load_config
from .exceptions import CaseflowError, CaseNotFoundError
from .lifecycle import LifecycleService, phase_requirements
from .schemas import (
    CaseRecord,
    CaseStatus,
    CaseType,
    Phase,
    TransitionRequest,
    TransitionResult,
    User,
    UserRole,
)
from .side_effects import SideEffectRunner
from .store import JsonFileStore
from .transitions import TransitionService

app = typer.Typer(
    name="caseflow",
    help="Case transition engine: move legal cases through their lifecycle.",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

_state: dict[str, Any] = {"config_path": None}


def _load_config() -> CaseflowConfig:
    path = _state["config_path"] or CONFIG_PATH
    try:
        return load_config(path) or CaseflowConfig()
    except CaseflowError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(1)


def _get_service() -> TransitionService:
    """Build the services over the configured JSON store."""
    config = _load_config()
    try:
        store = JsonFileStore(config.data_path)
    except CaseflowError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(1)
    runner = SideEffectRunner(config.side_effect_attempts, config.side_effect_wait_seconds)
    lifecycle = LifecycleService(store, runner=runner)
    return TransitionService(store, lifecycle, approver_roles=config.approver_roles)


def _get_user(service: TransitionService, user_id: str) -> User:
    user = service.store.get_user(user_id)
    if user is None:
        console.print(f"[red]Unknown user {user_id!r}.[/red] Add it with [bold]caseflow add-user[/bold].")
        raise typer.Exit(1)
    return user


def _parse_enum(enum_cls: type, value: str, label: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        valid = ", ".join(m.value for m in enum_cls)
        console.print(f"[red]Invalid {label} '{value}'.[/red] Valid: {valid}")
        raise typer.Exit(1)


def _parse_metadata(pairs: list[str] | None) -> dict[str, Any]:
    """Turn ``key=value`` pairs into a dict; values are read as JSON when possible."""
    metadata: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            console.print(f"[red]Invalid metadata '{pair}'.[/red] Use key=value.")
            raise typer.Exit(1)
        try:
            metadata[key] = json.loads(raw)
        except json.JSONDecodeError:
            metadata[key] = raw
    return metadata


def _print_result(result: TransitionResult) -> None:
    if result.success:
        title = "[bold yellow]Approval Required[/bold yellow]" if result.approval_required else "[bold green]Done[/bold green]"
        body = result.message
        if result.transition_id:
            body += f"\n[bold]ID:[/bold] {result.transition_id}"
        console.print(Panel(body, title=title))
    else:
        console.print(f"[red]{result.message}[/red]")
        for error in result.errors:
            console.print(f"  [red]•[/red] {escape(error)}")
    for warning in result.warnings:
        console.print(f"  [yellow]![/yellow] {warning}")
    for recommendation in result.recommendations:
        console.print(f"  [cyan]→[/cyan] {recommendation}")
    if not result.success:
        raise typer.Exit(1)


MetadataOption = Annotated[
    Optional[list[str]],
    typer.Option("--set", "-s", help="Metadata as key=value (repeatable)"),
]
ActorOption = Annotated[str, typer.Option("--as", help="ID of the acting user")]


# ---------------------------------------------------------------------------
# caseflow init
# ---------------------------------------------------------------------------

@app.command()
def init() -> None:
    """Write the default configuration and an empty store (idempotent)."""
    path = _state["config_path"] or CONFIG_PATH
    existed = path.exists()
    try:
        config = ensure_config(path)
    except CaseflowError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(1)
    console.print(f"[dim]{path} already exists, skipping.[/dim]" if existed else f"[green]Created {path}[/green]")

    if not config.data_path.exists():
        JsonFileStore(config.data_path).save()
        console.print(f"[green]Created {config.data_path}[/green]")
    else:
        console.print(f"[dim]{config.data_path} already exists, skipping.[/dim]")


# ---------------------------------------------------------------------------
# Users and cases
# ---------------------------------------------------------------------------

@app.command("add-user")
def add_user(
    name: Annotated[str, typer.Argument(help="Display name")],
    role: Annotated[str, typer.Option("--role", "-r", help="User role")],
) -> None:
    """Register a user who can act on cases."""
    service = _get_service()
    user = service.store.add_user(User(name=name, role=_parse_enum(UserRole, role, "role")))
    console.print(f"[green]Added {user.role.value} {user.name}:[/green] {user.id}")


@app.command("open-case")
def open_case(
    title: Annotated[str, typer.Argument(help="Case title")],
    case_type: Annotated[str, typer.Option("--type", "-t", help="Case type")],
    attorney: Annotated[str, typer.Option("--attorney", help="Attorney user ID")],
    client: Annotated[str, typer.Option("--client", help="Client user ID")],
    metadata: MetadataOption = None,
) -> None:
    """Open a new case in intake and create its intake tasks."""
    service = _get_service()
    kind = _parse_enum(CaseType, case_type, "case type")
    _get_user(service, attorney)
    _get_user(service, client)
    data = _parse_metadata(metadata)

    check = CaseTypeValidator().validate_case_type_initialization(kind, data)
    case = service.store.add_case(CaseRecord(
        title=title,
        case_type=kind,
        attorney_id=attorney,
        client_id=client,
        metadata=data,
        phase_entered_at=service.now(),
        created_at=service.now(),
    ))
    service.lifecycle.initialize_case_lifecycle(case.id, attorney)

    console.print(f"[green]Opened case {case.title}:[/green] {case.id}")
    for item in check.errors + check.warnings:
        console.print(f"  [yellow]![/yellow] {item}")


@app.command()
def status(
    case_id: Annotated[str, typer.Argument(help="Case ID")],
    role: Annotated[str, typer.Option("--role", "-r", help="Role to list transitions for")] = "attorney",
) -> None:
    """Show a case's phase, status, progress and available transitions."""
    service = _get_service()
    try:
        case = service.store.get_case(case_id)
        progress = service.lifecycle.get_case_progress(case_id)
    except CaseNotFoundError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(1)

    targets = service.get_available_transitions(case_id, _parse_enum(UserRole, role, "role"))
    console.print(Panel(
        f"[bold]Type:[/bold] {case.case_type.value}\n"
        f"[bold]Phase:[/bold] {progress.current_phase.value}\n"
        f"[bold]Status:[/bold] {progress.current_status.value}\n"
        f"[bold]Progress:[/bold] {progress.progress_percentage}%\n"
        f"[bold]Valid Transitions:[/bold] {', '.join(t.value for t in targets) or '-'}\n"
        f"[bold]Estimated Completion:[/bold] {progress.estimated_completion:%Y-%m-%d}",
        title=f"[bold cyan]{case.title}[/bold cyan]",
    ))

    if progress.upcoming_milestones:
        console.print("\n[bold]Upcoming:[/bold]")
        for title in progress.upcoming_milestones:
            console.print(f"  {title}")
    if progress.overdue_tasks:
        console.print(f"\n[yellow]Overdue:[/yellow] {', '.join(progress.overdue_tasks)}")


# ---------------------------------------------------------------------------
# Transitions and approvals
# ---------------------------------------------------------------------------

@app.command()
def transition(
    case_id: Annotated[str, typer.Argument(help="Case ID")],
    phase: Annotated[str, typer.Argument(help="Target phase")],
    actor: ActorOption,
    target_status: Annotated[
        Optional[str],
        typer.Option("--status", help="Status to set after the phase change"),
    ] = None,
    reason: Annotated[Optional[str], typer.Option("--reason", help="Reason for the change")] = None,
    metadata: MetadataOption = None,
) -> None:
    """Request a phase transition for a case."""
    service = _get_service()
    user = _get_user(service, actor)
    request = TransitionRequest(
        case_id=case_id,
        target_phase=_parse_enum(Phase, phase, "phase"),
        target_status=_parse_enum(CaseStatus, target_status, "status") if target_status else None,
        actor_id=user.id,
        actor_role=user.role,
        reason=reason,
        metadata=_parse_metadata(metadata),
    )
    _print_result(service.request_transition(request))


@app.command()
def approve(
    approval_id: Annotated[str, typer.Argument(help="Approval request ID")],
    actor: ActorOption,
    reason: Annotated[Optional[str], typer.Option("--reason", help="Decision note")] = None,
) -> None:
    """Approve a pending transition and execute it."""
    service = _get_service()
    user = _get_user(service, actor)
    _print_result(service.approve_transition(approval_id, user.id, user.role, reason))


@app.command()
def reject(
    approval_id: Annotated[str, typer.Argument(help="Approval request ID")],
    actor: ActorOption,
    reason: Annotated[str, typer.Option("--reason", help="Why the request is rejected")],
) -> None:
    """Reject a pending transition."""
    service = _get_service()
    user = _get_user(service, actor)
    _print_result(service.reject_transition(approval_id, user.id, user.role, reason))


@app.command()
def history(case_id: Annotated[str, typer.Argument(help="Case ID")]) -> None:
    """Show executed transitions of a case, newest first."""
    service = _get_service()
    entries = service.get_transition_history(case_id)
    if not entries:
        console.print("[dim]No transitions recorded.[/dim]")
        return

    table = Table(title="Transition History")
    table.add_column("When", style="bold")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Status")
    table.add_column("By")
    table.add_column("Reason")
    for entry in entries:
        table.add_row(
            f"{entry.timestamp:%Y-%m-%d %H:%M}",
            entry.from_phase.value,
            entry.to_phase.value,
            f"{entry.from_status.value} -> {entry.to_status.value}",
            f"{entry.user_id} ({entry.user_role.value})",
            entry.reason or "-",
        )
    console.print(table)


@app.command()
def pending(actor: ActorOption) -> None:
    """List pending approval requests visible to a user."""
    service = _get_service()
    user = _get_user(service, actor)
    approvals = service.get_pending_approvals(user.id, user.role)
    if not approvals:
        console.print("[dim]No pending approvals.[/dim]")
        return

    table = Table(title="Pending Approvals")
    table.add_column("ID", style="bold")
    table.add_column("Case")
    table.add_column("Target")
    table.add_column("Requested By")
    table.add_column("Reason")
    for approval in approvals:
        table.add_row(
            approval.id,
            approval.case_id,
            approval.target_phase.value,
            f"{approval.requested_by} ({approval.requested_by_role.value})",
            approval.reason or "-",
        )
    console.print(table)


@app.command()
def notifications(actor: ActorOption) -> None:
    """List a user's notifications, newest first."""
    service = _get_service()
    user = _get_user(service, actor)
    items = service.get_notifications(user.id, user.role)
    if not items:
        console.print("[dim]No notifications.[/dim]")
        return

    for item in items:
        marker = "[dim]read[/dim]" if item.is_read else "[bold]new[/bold]"
        console.print(f"  {marker} [{item.type.value}] {item.message} [dim]({item.id})[/dim]")


@app.command()
def read(notification_id: Annotated[str, typer.Argument(help="Notification ID")]) -> None:
    """Mark a notification as read."""
    service = _get_service()
    try:
        service.mark_notification_as_read(notification_id)
    except CaseflowError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(1)
    console.print("[green]Marked as read.[/green]")


@app.command()
def requirements(
    phase: Annotated[str, typer.Argument(help="Phase")],
    case_type: Annotated[str, typer.Option("--type", "-t", help="Case type")],
) -> None:
    """Show what a phase asks for, for one case type."""
    target = _parse_enum(Phase, phase, "phase")
    kind = _parse_enum(CaseType, case_type, "case type")
    details = phase_requirements(target, kind)
    validator = CaseTypeValidator()

    console.print(Panel(
        f"[bold]Estimated Duration:[/bold] {details.estimated_duration} days\n"
        f"[bold]Requirements:[/bold] {', '.join(details.requirements)}\n"
        f"[bold]Critical Tasks:[/bold] {', '.join(details.critical_tasks)}\n"
        f"[bold]Deliverables:[/bold] {', '.join(details.deliverables)}\n"
        f"[bold]Case Type Fields:[/bold] "
        f"{', '.join(validator.get_case_type_requirements(kind, target)) or '-'}",
        title=f"[bold cyan]{target.value}[/bold cyan] ({kind.value})",
    ))

    documents = validator.get_document_requirements(kind, target)
    if documents:
        table = Table(title="Documents")
        table.add_column("Type", style="bold")
        table.add_column("Required")
        table.add_column("Description")
        for doc in documents:
            table.add_row(doc.document_type, "yes" if doc.required else "no", doc.description)
        console.print(table)


# ---------------------------------------------------------------------------
# Version and logging callback
# ---------------------------------------------------------------------------

def _version_callback(value: bool) -> None:
    if value:
        console.print(f"caseflow v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    config_path: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to config.json"),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", help="Log at DEBUG level")] = False,
    version: Annotated[
        Optional[bool],
        typer.Option("--version", "-v", callback=_version_callback, is_eager=True),
    ] = None,
) -> None:
    """Case transition engine: move legal cases through their lifecycle."""
    _state["config_path"] = config_path
    level = "DEBUG" if verbose else _load_config().log_level
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )
