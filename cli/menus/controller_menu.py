import questionary
from rich.console import Console
from rich.table import Table

from cli.banner import render_banner
from cli.menus import get_rotation_config, pause

console = Console()


def controller_menu(controller):
    config, controller = get_rotation_config(controller)
    if config is None:
        return

    while True:
        render_banner()
        choice = questionary.select(
            f"Controller: {controller.name}",
            choices=[
                questionary.Choice("Rotate Certificate Now", value="rotate"),
                questionary.Choice("Force Reinstall Certificate", value="force"),
                questionary.Choice("Certificate Status", value="status"),
                questionary.Separator(),
                questionary.Choice("Keystore Backups", value="backups"),
                questionary.Choice("Restore Keystore Backup", value="restore"),
                questionary.Choice("Rotation History", value="history"),
                questionary.Choice("← Back", value="back"),
            ],
            use_indicator=True,
        ).ask()

        if choice == "rotate":
            _rotate(config)
        elif choice == "force":
            _rotate(config, force=True)
        elif choice == "status":
            _status(config)
        elif choice == "backups":
            _list_backups(config)
        elif choice == "restore":
            _restore_backup(config)
        elif choice == "history":
            rotation_history(controller)
        elif choice in ("back", None):
            break


# ------------------------------------------------------------------
# Rotation
# ------------------------------------------------------------------

def _rotate(config, force=False):
    from cli.narration import console_progress, print_summary
    from services.rotation_service import RotationService

    title = "Force Reinstall Certificate" if force else "Rotate Certificate"
    console.print(f"\n[bold]{title}[/bold]")
    if force:
        console.print(
            "[dim]The fingerprint check is skipped: the keystore is rewritten and the "
            f"'{config.service_name}' service restarted even if nothing changed.[/dim]\n"
        )
    else:
        console.print(
            "[dim]Requests the current certificate from tailscaled. The controller is only "
            "restarted if the certificate changed.[/dim]\n"
        )
    if config.strict:
        console.print("[dim]Strict mode: tool failures abort and roll back the keystore.[/dim]\n")

    if not questionary.confirm(f"Proceed for '{config.hostname}'?", default=True).ask():
        return

    try:
        result = RotationService(config).run(force=force, progress_callback=console_progress(console))
    except Exception as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        pause()
        return

    print_summary(console, result)
    pause()


# ------------------------------------------------------------------
# Status
# ------------------------------------------------------------------

def _status(config):
    from services.rotation_service import certificate_status

    with console.status("Inspecting certificate..."):
        status = certificate_status(config)

    def _yn(flag):
        return "[green]yes[/green]" if flag else "[red]no[/red]"

    table = Table(title=f"Certificate Status — {config.hostname}", show_header=False, show_lines=False)
    table.add_column("Field", style="bold cyan")
    table.add_column("Value")
    table.add_row("Certificate", f"{status['cert_path']}  ({_yn(status['cert_exists'])})")
    table.add_row("Private key", f"{status['key_path']}  ({_yn(status['key_exists'])})")
    table.add_row("md5", status.get("md5") or "[dim]—[/dim]")
    table.add_row("Matches manifest", _yn(status["manifest_matches"]))
    table.add_row("Keystore", f"{config.keystore_path}  ({_yn(status['keystore_exists'])})")
    table.add_row("Next backup", f".{status['next_backup']}")

    cert = status["certificate"]
    if cert:
        days = cert["days_remaining"]
        days_style = "green" if days > 14 else ("yellow" if days > 3 else "red")
        table.add_row("Subject", cert["subject_cn"] or "[dim]—[/dim]")
        table.add_row("Issuer", cert["issuer_cn"] or "[dim]—[/dim]")
        table.add_row("Valid until", f"{cert['not_after']}  [{days_style}]({days} days)[/{days_style}]")
        table.add_row("SHA-256", cert["sha256"])
    elif status.get("certificate_error"):
        table.add_row("Parse error", f"[red]{status['certificate_error']}[/red]")

    console.print(table)
    pause()


# ------------------------------------------------------------------
# Keystore backups
# ------------------------------------------------------------------

def _list_backups(config):
    from services.rotation_service import list_backups

    backups = list_backups(config)
    if not backups:
        console.print("[yellow]No keystore backups yet.[/yellow]")
        pause()
        return

    table = Table(title=f"Keystore Backups — {config.keystore_path}", show_lines=False)
    table.add_column("Kind", style="cyan")
    table.add_column("Path")
    table.add_column("Size", justify="right")
    table.add_column("Modified", style="dim")
    for b in backups:
        table.add_row(
            "original" if b["kind"].value == "orig" else "rolling",
            b["path"],
            f"{b['size']:,}",
            b["modified_at"].strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)
    pause()


def _restore_backup(config):
    from services.rotation_service import list_backups, restore_backup

    backups = [b for b in list_backups(config) if b["size"] > 0]
    if not backups:
        console.print("[yellow]No usable keystore backups found.[/yellow]")
        pause()
        return

    backup = questionary.select(
        "Restore which backup?",
        choices=[
            questionary.Choice(
                f"{b['path']}  ({b['modified_at']:%Y-%m-%d %H:%M})", value=b
            )
            for b in backups
        ],
    ).ask()
    if not backup:
        return

    confirmed = questionary.confirm(
        f"Overwrite {config.keystore_path} and restart '{config.service_name}'?", default=False
    ).ask()
    if not confirmed:
        return

    with console.status("Restoring keystore..."):
        try:
            warnings = restore_backup(config, backup["kind"])
        except Exception as e:
            console.print(f"[red]✗ Error: {e}[/red]")
            pause()
            return

    if warnings:
        for w in warnings:
            console.print(f"[yellow]⚠ {w}[/yellow]")
    console.print(f"[green]✓ Keystore restored from {backup['path']}[/green]")
    console.print(
        "[dim]The certificate manifest is unchanged; run Force Reinstall to put the "
        "current certificate back.[/dim]"
    )
    pause()


# ------------------------------------------------------------------
# History
# ------------------------------------------------------------------

def rotation_history(controller=None):
    from datetime import timezone as _tz

    from services.rotation_service import get_history

    with console.status("Loading rotation history..."):
        runs = get_history(controller_id=controller.id if controller else None, limit=200)

    if not runs:
        console.print("[yellow]No rotation runs recorded yet.[/yellow]")
        pause()
        return

    table = Table(title=f"Rotation History — {len(runs)} runs, newest first", show_lines=False)
    table.add_column("Started", style="dim", no_wrap=True)
    table.add_column("Hostname", style="cyan")
    table.add_column("Status")
    table.add_column("Backup")
    table.add_column("Warnings")

    for run in runs:
        style = {"SUCCESS": "green", "UNCHANGED": "dim", "PARTIAL": "yellow"}.get(run.status, "red")
        # Timestamps are stored as UTC naive datetimes — convert to local time
        ts = run.started_at.replace(tzinfo=_tz.utc).astimezone()
        table.add_row(
            ts.strftime("%Y-%m-%d %H:%M:%S"),
            run.hostname,
            f"[{style}]{run.status}[/{style}]",
            f".{run.backup_kind}" if run.backup_kind else "[dim]—[/dim]",
            str(len(run.warnings.splitlines())) if run.warnings else "[dim]—[/dim]",
        )

    console.print(table)
    pause()
