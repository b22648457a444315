"""CLI for Universal Escrow - run an escrow desk from the terminal."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from universal_escrow.core.errors import EscrowError

app = typer.Typer(
    name="universal-escrow",
    help="Conditional escrow for earnest money, deposits, milestones, purchases and trades.",
    no_args_is_help=True,
)
console = Console()

_selected_profile: str = "default"

T = TypeVar("T")

STATUS_COLORS = {
    "created": "white",
    "funded": "cyan",
    "pending_release": "yellow",
    "released": "green",
    "refunded": "blue",
    "disputed": "red",
    "cancelled": "dim",
}

CONDITION_COLORS = {
    "pending": "yellow",
    "satisfied": "green",
    "waived": "cyan",
    "failed": "red",
}


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        console.print(f"universal-escrow {version('universal-escrow')}")
        raise typer.Exit()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback()
def main(
    profile: str = typer.Option(
        "default",
        "--profile",
        "-P",
        help="Escrow desk profile to operate on",
        envvar="UNIVERSAL_ESCROW_PROFILE",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """Conditional escrow for earnest money, deposits, milestones, purchases and trades."""
    from universal_escrow.config import get_profile_dir, load_or_default

    global _selected_profile
    _selected_profile = profile
    config = load_or_default(get_profile_dir(profile, create=False))
    _setup_logging(config.logging.level)


def _run(coro):
    """Run an async function synchronously."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    import concurrent.futures
    with concurrent.futures.ThreadPoolExecutor() as pool:
        return pool.submit(asyncio.run, coro).result()


def _profile_dir() -> Path:
    from universal_escrow.config import get_profile_dir

    profile_dir = get_profile_dir(_selected_profile, create=False)
    if not (profile_dir / "config.yaml").exists():
        console.print(
            f"[yellow]No escrow desk '{_selected_profile}' here.[/yellow] "
            f"Run 'universal-escrow init' first."
        )
        raise typer.Exit(1)
    return profile_dir


def _with_manager(fn: Callable[..., Awaitable[T]]) -> T:
    """Open the profile's manager, run ``fn(manager)`` and close it again.

    Engine errors become a red message and exit code 1.
    """
    from universal_escrow.core.manager import EscrowManager

    profile_dir = _profile_dir()

    async def _go():
        manager = await EscrowManager.open(profile_dir)
        try:
            return await fn(manager)
        finally:
            await manager.close()

    try:
        return _run(_go())
    except EscrowError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)


# ------------------------------------------------------------------
# Parsing helpers
# ------------------------------------------------------------------


def _parse_party(raw: str) -> dict:
    """``role:name[:address]`` -> party dict."""
    parts = [p.strip() for p in raw.split(":", 2)]
    if len(parts) < 2 or not parts[0] or not parts[1]:
        console.print(f"[red]Bad --party '{raw}'. Use role:name or role:name:address.[/red]")
        raise typer.Exit(1)
    party = {"role": parts[0], "name": parts[1]}
    if len(parts) == 3 and parts[2]:
        party["address"] = parts[2]
    return party


def _parse_condition(raw: str) -> dict:
    """``type:description`` -> condition dict."""
    kind, sep, description = raw.partition(":")
    if not sep or not description.strip():
        console.print(f"[red]Bad --condition '{raw}'. Use type:description.[/red]")
        raise typer.Exit(1)
    return {"type": kind.strip(), "description": description.strip()}


def _parse_milestone(raw: str):
    """``Description:30%`` or ``Description:500`` -> milestone condition."""
    from universal_escrow.core.builder import ConditionBuilder

    description, sep, share = raw.rpartition(":")
    if not sep or not description.strip() or not share.strip():
        console.print(f"[red]Bad --milestone '{raw}'. Use 'Description:30%' or 'Description:500'.[/red]")
        raise typer.Exit(1)
    share = share.strip()
    try:
        if share.endswith("%"):
            return ConditionBuilder.milestone(description.strip(), percentage=share[:-1])
        return ConditionBuilder.milestone(description.strip(), amount=share)
    except EscrowError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)


# ------------------------------------------------------------------
# Output helpers
# ------------------------------------------------------------------


def _status(value: str) -> str:
    color = STATUS_COLORS.get(value, "white")
    return f"[{color}]{value}[/{color}]"


def _print_escrow(escrow, currency: str = "USDC") -> None:
    """Summary panel plus conditions, approvals and tranches tables."""
    from universal_escrow.chains import tx_url
    from universal_escrow.core.approvals import quorum_progress

    lines = [
        f"[bold]{escrow.id}[/bold]  {_status(escrow.status.value)}",
        "",
        f"Kind:      {escrow.kind.value}" + (f" (template {escrow.template})" if escrow.template else ""),
        f"Amount:    [bold]{escrow.amount} {currency}[/bold] on {escrow.chain}",
        f"Custody:   {escrow.escrow_address}",
        f"Policy:    {escrow.release_requires.value}",
        f"Parties:   " + ", ".join(
            f"{p.role}={p.name}" + (f" ({p.address})" if p.address else "")
            for p in escrow.parties
        ),
    ]
    if escrow.required_approvals:
        done, waiting = quorum_progress(escrow)
        lines.append(
            f"Approvals: {len(done)}/{len(escrow.required_approvals)}"
            + (f" (waiting on {', '.join(waiting)})" if waiting else "")
        )
    if escrow.funding_ref:
        lines.append(f"Funded:    ref {escrow.funding_ref}")
        lines.append(f"           [dim]{tx_url(escrow.chain, escrow.funding_ref)}[/dim]")
    elif escrow.funding_deadline:
        lines.append(f"Fund by:   {escrow.funding_deadline:%Y-%m-%d %H:%M} UTC")
    if escrow.tranches:
        lines.append(f"Settled:   {escrow.settled_amount} / {escrow.amount}")
    if escrow.settlement:
        lines.append(f"Settlement: {escrow.settlement.destination} (ref {escrow.settlement.reference})")
        lines.append(f"           [dim]{tx_url(escrow.chain, escrow.settlement.reference)}[/dim]")
    if escrow.release_to_role and not escrow.status.is_terminal:
        lines.append(f"[red]Refund pending to {escrow.release_to_role}[/red]")
    if escrow.dispute:
        d = escrow.dispute
        lines.append(f"[red]Dispute:[/red]   {d.raised_by}: {d.reason}")
        if d.outcome:
            lines.append(f"Resolved:  {d.outcome.value}: {d.resolution}")
    if escrow.notes:
        lines.append(f"Notes:     {escrow.notes}")
    console.print(Panel("\n".join(lines), title="Escrow"))

    if escrow.conditions:
        table = Table(title="Conditions")
        table.add_column("ID", style="dim")
        table.add_column("Type", style="cyan")
        table.add_column("Description")
        table.add_column("Release", justify="right")
        table.add_column("Status")
        table.add_column("Deadline", style="dim")
        for c in escrow.conditions:
            if c.release_percentage is not None:
                release = f"{c.release_percentage}%"
            elif c.release_amount is not None:
                release = str(c.release_amount)
            else:
                release = "-"
            color = CONDITION_COLORS.get(c.status.value, "white")
            table.add_row(
                c.id,
                c.type.value,
                c.description,
                release,
                f"[{color}]{c.status.value}[/{color}]",
                f"{c.deadline:%Y-%m-%d}" if c.deadline else "-",
            )
        console.print(table)

    if escrow.tranches:
        table = Table(title="Tranches")
        table.add_column("Condition", style="dim")
        table.add_column("Amount", justify="right")
        table.add_column("Destination")
        table.add_column("Reference", style="cyan")
        for t in escrow.tranches:
            table.add_row(
                t.condition_id or "(balance)",
                str(t.amount),
                t.destination,
                f"[link={tx_url(escrow.chain, t.reference)}]{t.reference}[/link]",
            )
        console.print(table)

    if escrow.documents:
        for doc in escrow.documents:
            console.print(f"  [dim]doc[/dim] {doc.name}: {doc.url}")


def _done(message: str, escrow) -> None:
    console.print(f"[bold green]{message}[/bold green] {escrow.id} is now {_status(escrow.status.value)}")


# ------------------------------------------------------------------
# init / templates
# ------------------------------------------------------------------


@app.command()
def init(
    name: str = typer.Option("Escrow Desk", "--name", "-n", help="Desk name"),
    chain: str = typer.Option("base", "--chain", "-c", help="Default settlement chain"),
    currency: str = typer.Option("USDC", "--currency", help="Currency label for amounts"),
):
    """Initialize an escrow desk profile in the current directory."""
    from universal_escrow.chains import get_chain
    from universal_escrow.config import EscrowConfig, get_profile_dir, save_config
    from universal_escrow.storage.database import get_database

    try:
        get_chain(chain)
    except KeyError as e:
        console.print(f"[red]{e.args[0]}[/red]")
        raise typer.Exit(1)

    profile_dir = get_profile_dir(_selected_profile)
    config_path = profile_dir / "config.yaml"
    if config_path.exists():
        console.print(f"[yellow]Profile '{_selected_profile}' already initialized at {profile_dir}.[/yellow]")
        raise typer.Exit(1)

    config = EscrowConfig(name=name)
    config.defaults.chain = chain
    config.defaults.currency = currency
    save_config(config, config_path)

    async def _init():
        db = get_database(profile_dir, config.storage.db_filename, config.storage.busy_timeout_ms)
        await db.connect()
        await db.close()

    _run(_init())

    console.print(Panel(
        f"[bold green]Escrow desk '{name}' initialized![/bold green]\n\n"
        f"Directory: {profile_dir}\n"
        f"Config: {config_path}\n"
        f"Defaults: {currency} on [cyan]{chain}[/cyan]\n\n"
        f"Next steps:\n"
        f"  universal-escrow templates\n"
        f"  universal-escrow create project_milestone 1000 --party client:Alice --party freelancer:Bob",
        title="Universal Escrow",
    ))


@app.command()
def templates():
    """List the available escrow templates."""
    from universal_escrow.config import load_or_default
    from universal_escrow.core.templates import TemplateRegistry

    config = load_or_default(_profile_dir())
    try:
        registry = TemplateRegistry.from_config(config.templates)
    except EscrowError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)

    table = Table(title="Escrow Templates")
    table.add_column("Name", style="bold")
    table.add_column("Vertical", style="cyan")
    table.add_column("Kind")
    table.add_column("Policy")
    table.add_column("Conditions", justify="right")
    table.add_column("Auto-release", justify="right")
    table.add_column("Description", style="dim")
    for t in registry.all():
        table.add_row(
            t.name,
            t.vertical,
            t.kind.value,
            t.release_requires.value,
            str(len(t.conditions)),
            f"{t.auto_release_days}d" if t.auto_release_days else "-",
            t.description,
        )
    console.print(table)


# ------------------------------------------------------------------
# create
# ------------------------------------------------------------------


@app.command()
def create(
    template: str = typer.Argument(help="Template name (see 'templates')"),
    amount: str = typer.Argument(help="Amount to hold, e.g. 1000 or 250.50"),
    party: list[str] = typer.Option(..., "--party", "-p", help="role:name[:address], repeatable"),
    chain: Optional[str] = typer.Option(None, "--chain", "-c", help="Settlement chain"),
    condition: list[str] = typer.Option([], "--condition", help="Extra condition type:description, repeatable"),
    auto_release_days: Optional[int] = typer.Option(None, "--auto-release-days", help="Add an auto-release deadline"),
):
    """Create an escrow from a template."""
    parties = [_parse_party(p) for p in party]
    extra = [_parse_condition(c) for c in condition]

    async def _create(manager):
        return await manager.create_from_template(
            template,
            amount,
            parties,
            chain=chain,
            custom_conditions=extra,
            auto_release_days=auto_release_days,
        ), manager.defaults.currency

    escrow, currency = _with_manager(_create)
    console.print(f"[bold green]Escrow created:[/bold green] {escrow.id}")
    _print_escrow(escrow, currency)


@app.command("create-custom")
def create_custom(
    amount: str = typer.Argument(help="Amount to hold"),
    party: list[str] = typer.Option(..., "--party", "-p", help="role:name[:address], repeatable"),
    milestone: list[str] = typer.Option([], "--milestone", "-m", help="'Description:30%' or 'Description:500', repeatable"),
    condition: list[str] = typer.Option([], "--condition", help="type:description, repeatable"),
    policy: str = typer.Option("all_conditions", "--policy", help="all_conditions, majority_approval, any_party or condition_based"),
    approver: Optional[list[str]] = typer.Option(None, "--approver", "-a", help="Role whose approval is required, repeatable"),
    kind: str = typer.Option("general", "--kind", "-k", help="Escrow kind"),
    chain: Optional[str] = typer.Option(None, "--chain", "-c", help="Settlement chain"),
    auto_release_days: Optional[int] = typer.Option(None, "--auto-release-days", help="Add an auto-release deadline"),
    notes: Optional[str] = typer.Option(None, "--notes", help="Free-text notes"),
):
    """Create an escrow from explicit conditions and a release policy."""
    from universal_escrow.storage.models import EscrowKind, ReleasePolicy

    try:
        release_requires = ReleasePolicy(policy)
        escrow_kind = EscrowKind(kind)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    parties = [_parse_party(p) for p in party]
    conditions = [_parse_milestone(m) for m in milestone] + [_parse_condition(c) for c in condition]

    async def _create(manager):
        return await manager.create_custom(
            amount,
            parties,
            conditions,
            chain=chain,
            release_requires=release_requires,
            required_approvals=approver or None,
            kind=escrow_kind,
            auto_release_days=auto_release_days,
            notes=notes,
        ), manager.defaults.currency

    escrow, currency = _with_manager(_create)
    console.print(f"[bold green]Escrow created:[/bold green] {escrow.id}")
    _print_escrow(escrow, currency)


# ------------------------------------------------------------------
# show / list
# ------------------------------------------------------------------


@app.command()
def show(escrow_id: str = typer.Argument(help="Escrow ID")):
    """Show one escrow with its conditions and settlement."""

    async def _show(manager):
        return await manager.get(escrow_id), manager.defaults.currency

    escrow, currency = _with_manager(_show)
    _print_escrow(escrow, currency)


@app.command("list")
def list_escrows(
    kind: Optional[str] = typer.Option(None, "--kind", "-k", help="Filter by kind"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
    party: Optional[str] = typer.Option(None, "--party", help="Filter by party settlement address"),
    property_address: Optional[str] = typer.Option(
        None, "--property", help="Filter by property address (substring)"
    ),
):
    """List escrows, newest first."""

    async def _list(manager):
        escrows = await manager.list(
            kind=kind, status=status, party_address=party, property_address=property_address
        )
        return escrows, manager.defaults.currency

    escrows, currency = _with_manager(_list)

    if not escrows:
        console.print("[dim]No escrows found.[/dim]")
        return

    table = Table(title=f"Escrows ({len(escrows)})")
    table.add_column("ID", style="bold")
    table.add_column("Kind", style="cyan")
    table.add_column("Amount", justify="right")
    table.add_column("Chain")
    table.add_column("Status")
    table.add_column("Conditions", justify="right")
    table.add_column("Created", style="dim")
    for e in escrows:
        resolved = sum(1 for c in e.conditions if c.is_resolved)
        table.add_row(
            e.id,
            e.kind.value,
            f"{e.amount} {currency}",
            e.chain,
            _status(e.status.value),
            f"{resolved}/{len(e.conditions)}",
            f"{e.created_at:%Y-%m-%d %H:%M}",
        )
    console.print(table)


# ------------------------------------------------------------------
# funding and conditions
# ------------------------------------------------------------------


@app.command()
def fund(
    escrow_id: str = typer.Argument(help="Escrow ID"),
    ref: str = typer.Option(..., "--ref", "-r", help="Funding transfer reference"),
):
    """Record the deposit that funds an escrow."""
    escrow = _with_manager(lambda m: m.fund(escrow_id, ref))
    _done("Funded.", escrow)


@app.command()
def satisfy(
    escrow_id: str = typer.Argument(help="Escrow ID"),
    condition_id: str = typer.Argument(help="Condition ID"),
    by: str = typer.Option(..., "--by", help="Who satisfied it"),
    evidence: Optional[str] = typer.Option(None, "--evidence", "-e", help="Evidence link or note"),
):
    """Mark a condition satisfied."""
    escrow = _with_manager(lambda m: m.satisfy_condition(escrow_id, condition_id, by, evidence))
    _done(f"Condition {condition_id} satisfied.", escrow)


@app.command()
def waive(
    escrow_id: str = typer.Argument(help="Escrow ID"),
    condition_id: str = typer.Argument(help="Condition ID"),
    by: str = typer.Option(..., "--by", help="Who waived it"),
):
    """Waive a condition."""
    escrow = _with_manager(lambda m: m.waive_condition(escrow_id, condition_id, by))
    _done(f"Condition {condition_id} waived.", escrow)


@app.command()
def fail(
    escrow_id: str = typer.Argument(help="Escrow ID"),
    condition_id: str = typer.Argument(help="Condition ID"),
    reason: str = typer.Option(..., "--reason", help="Why the condition failed"),
):
    """Mark a condition failed."""
    escrow = _with_manager(lambda m: m.fail_condition(escrow_id, condition_id, reason))
    _done(f"Condition {condition_id} failed.", escrow)
    if escrow.release_to_role and not escrow.status.is_terminal:
        console.print(f"[yellow]Refund to {escrow.release_to_role} is pending; run 'refund' once returned.[/yellow]")


@app.command()
def approve(
    escrow_id: str = typer.Argument(help="Escrow ID"),
    role: str = typer.Argument(help="Approving party role"),
    note: Optional[str] = typer.Option(None, "--note", help="Approval note"),
):
    """Record a party's approval."""
    escrow = _with_manager(lambda m: m.approve(escrow_id, role, note))
    _done(f"Approved by {role}.", escrow)


# ------------------------------------------------------------------
# settlement
# ------------------------------------------------------------------


@app.command()
def release(
    escrow_id: str = typer.Argument(help="Escrow ID"),
    to: str = typer.Option(..., "--to", "-t", help="Destination address"),
    ref: str = typer.Option(..., "--ref", "-r", help="Settlement transfer reference"),
):
    """Record the release of the remaining balance."""
    escrow = _with_manager(lambda m: m.release(escrow_id, to, ref))
    _done("Released.", escrow)


@app.command("release-partial")
def release_partial(
    escrow_id: str = typer.Argument(help="Escrow ID"),
    condition_id: str = typer.Argument(help="Satisfied milestone condition ID"),
    to: str = typer.Option(..., "--to", "-t", help="Destination address"),
    ref: str = typer.Option(..., "--ref", "-r", help="Settlement transfer reference"),
):
    """Record the payout of one satisfied milestone."""
    escrow = _with_manager(lambda m: m.release_partial(escrow_id, condition_id, to, ref))
    tranche = escrow.tranches[-1]
    console.print(
        f"Milestone {condition_id}: [bold]{tranche.amount}[/bold] to {tranche.destination} "
        f"(settled {escrow.settled_amount} / {escrow.amount})"
    )
    _done("Recorded.", escrow)


@app.command()
def refund(
    escrow_id: str = typer.Argument(help="Escrow ID"),
    ref: str = typer.Option(..., "--ref", "-r", help="Refund transfer reference"),
):
    """Record a refund to the payer."""
    escrow = _with_manager(lambda m: m.refund(escrow_id, ref))
    _done(f"Refunded to {escrow.settlement.destination}.", escrow)


# ------------------------------------------------------------------
# disputes / cancel / documents
# ------------------------------------------------------------------


@app.command()
def dispute(
    escrow_id: str = typer.Argument(help="Escrow ID"),
    by: str = typer.Option(..., "--by", help="Party raising the dispute"),
    reason: str = typer.Option(..., "--reason", help="What is disputed"),
):
    """Raise a dispute on a funded escrow."""
    escrow = _with_manager(lambda m: m.raise_dispute(escrow_id, by, reason))
    _done("Dispute raised.", escrow)


@app.command()
def resolve(
    escrow_id: str = typer.Argument(help="Escrow ID"),
    outcome: str = typer.Option(..., "--outcome", "-o", help="release or refund"),
    resolution: str = typer.Option(..., "--resolution", help="How the dispute was settled"),
    ref: str = typer.Option(..., "--ref", "-r", help="Settlement transfer reference"),
    to: Optional[str] = typer.Option(None, "--to", "-t", help="Destination (required for release)"),
):
    """Resolve a dispute as a release or a refund."""
    escrow = _with_manager(
        lambda m: m.resolve_dispute(escrow_id, resolution, outcome, ref, destination=to)
    )
    _done("Dispute resolved.", escrow)


@app.command()
def cancel(escrow_id: str = typer.Argument(help="Escrow ID")):
    """Cancel an escrow that was never funded."""
    escrow = _with_manager(lambda m: m.cancel(escrow_id))
    _done("Cancelled.", escrow)


@app.command()
def doc(
    escrow_id: str = typer.Argument(help="Escrow ID"),
    name: str = typer.Argument(help="Document name"),
    url: str = typer.Argument(help="Document URL"),
):
    """Attach a document link to an escrow."""
    escrow = _with_manager(lambda m: m.add_document(escrow_id, name, url))
    console.print(f"[bold]Attached '{name}' to {escrow.id}[/bold] ({len(escrow.documents)} documents)")


# ------------------------------------------------------------------
# dashboard
# ------------------------------------------------------------------


@app.command()
def dashboard(
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to serve on"),
    host: Optional[str] = typer.Option(None, "--host", help="Host to bind to"),
):
    """Launch the JSON API server."""
    from universal_escrow.config import load_or_default
    from universal_escrow.dashboard.server import run_dashboard

    profile_dir = _profile_dir()
    config = load_or_default(profile_dir)
    host = host or config.dashboard.host
    port = port or config.dashboard.port

    console.print(f"[bold green]Starting escrow API at http://{host}:{port}[/bold green]")
    run_dashboard(host=host, port=port, profile_dir=profile_dir)


if __name__ == "__main__":
    app()
