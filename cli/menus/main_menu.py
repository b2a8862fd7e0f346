import questionary
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cli.banner import render_banner
from cli.menus import pause

console = Console()


def _active_controller_label() -> str:
    from cli.session import get_active_controller
    c = get_active_controller()
    return f"  Switch Controller  (active: {c.name})" if c else "  Select Controller"


def main_menu():
    while True:
        render_banner()
        choice = questionary.select(
            "Main Menu",
            choices=[
                questionary.Choice("  Controller", value="controller"),
                questionary.Choice("  Rotation History (all controllers)", value="history"),
                questionary.Separator(),
                questionary.Choice(_active_controller_label(), value="switch"),
                questionary.Choice("  Settings", value="settings"),
                questionary.Choice("  Audit Log", value="audit"),
                questionary.Separator(),
                questionary.Choice("  Exit", value="exit"),
            ],
            use_indicator=True,
        ).ask()

        if choice == "controller":
            _open_controller()
        elif choice == "history":
            from cli.menus.controller_menu import rotation_history
            rotation_history()
        elif choice == "switch":
            _switch_controller()
        elif choice == "settings":
            settings_menu()
        elif choice == "audit":
            audit_menu()
        elif choice in ("exit", None):
            console.print("[dim]Goodbye.[/dim]")
            break


def _open_controller():
    from cli.menus.controller_menu import controller_menu
    from cli.session import get_active_controller

    controller = get_active_controller()
    if controller is None:
        _switch_controller()
        controller = get_active_controller()
    if controller is not None:
        controller_menu(controller)


def _switch_controller():
    from cli.menus import select_controller
    from cli.session import set_active_controller
    from services.config_service import list_controllers

    if not list_controllers():
        console.print("[yellow]No controllers configured yet.[/yellow]")
        if questionary.confirm("Add a controller now?", default=True).ask():
            _add_controller()
        return

    controller = select_controller()
    if controller:
        set_active_controller(controller)
        console.print(f"[green]✓ Active controller: [bold]{controller.name}[/bold][/green]")


# ------------------------------------------------------------------
# Settings
# ------------------------------------------------------------------

def settings_menu():
    while True:
        render_banner()
        choice = questionary.select(
            "Settings",
            choices=[
                questionary.Choice("Add Controller", value="add"),
                questionary.Choice("List Controllers", value="list"),
                questionary.Choice("Change Keystore Password", value="password"),
                questionary.Choice("Toggle Strict Mode", value="strict"),
                questionary.Choice("Remove Controller", value="remove"),
                questionary.Separator(),
                questionary.Choice("Generate Encryption Key", value="genkey"),
                questionary.Choice("Clear Rotation History & Audit Log", value="cleardata"),
                questionary.Separator(),
                questionary.Choice("← Back", value="back"),
            ],
        ).ask()

        if choice == "add":
            _add_controller()
        elif choice == "list":
            _list_controllers()
        elif choice == "password":
            _change_password()
        elif choice == "strict":
            _toggle_strict()
        elif choice == "remove":
            _remove_controller()
        elif choice == "genkey":
            _generate_key()
        elif choice == "cleardata":
            _clear_history()
        elif choice in ("back", None):
            break


def _add_controller():
    console.print("\n[bold]Add Controller[/bold]")
    name = questionary.text("Friendly name (e.g. home, office):").ask()
    if not name:
        return

    hostname = questionary.text(
        "Tailscale hostname:",
        instruction="e.g.  unifi.tailnet-1234.ts.net",
    ).ask()
    if not hostname:
        return

    service_name = questionary.text("Service name:", default="unifi").ask()
    keystore_path = questionary.path("Keystore path:", default="/var/lib/unifi/keystore").ask()
    cert_dir = questionary.path("Certificate directory:", default="/etc/ssl/private", only_directories=True).ask()
    alias = questionary.text("Keystore alias:", default="unifi").ask()
    password = questionary.password(
        "Keystore password:",
        instruction="(the controller's keystore password, see system.properties)",
    ).ask()
    verify_url = questionary.text(
        "Status URL to check after restart (optional):",
        default=f"https://{hostname.strip()}:8443/status",
    ).ask()
    strict = questionary.confirm(
        "Strict mode (abort and roll back on tool failures)?", default=False
    ).ask()
    notes = questionary.text("Notes (optional):").ask()

    if not all([name, hostname, service_name, keystore_path, cert_dir, alias, password]):
        console.print("[red]Cancelled — required fields missing.[/red]")
        return

    try:
        from services.config_service import add_controller
        add_controller(
            name=name,
            hostname=hostname,
            keystore_password=password,
            service_name=service_name,
            keystore_path=keystore_path,
            cert_dir=cert_dir,
            alias=alias,
            strict=bool(strict),
            verify_url=verify_url or None,
            notes=notes or None,
        )
        console.print(f"[green]✓ Controller '[bold]{name}[/bold]' added.[/green]")
    except Exception as e:
        console.print(f"[red]✗ Error: {e}[/red]")

    pause()


def _list_controllers():
    from services.config_service import list_controllers

    controllers = list_controllers()
    if not controllers:
        console.print("[yellow]No controllers configured.[/yellow]")
        pause()
        return

    table = Table(title="Configured Controllers", show_lines=True)
    table.add_column("Name", style="bold cyan")
    table.add_column("Hostname")
    table.add_column("Service")
    table.add_column("Keystore")
    table.add_column("Alias")
    table.add_column("Strict")
    table.add_column("Notes")

    for c in controllers:
        table.add_row(
            c.name,
            c.hostname,
            c.service_name,
            c.keystore_path,
            c.alias,
            "yes" if c.strict else "no",
            c.notes or "[dim]—[/dim]",
        )

    console.print(table)
    pause()


def _pick_controller(prompt: str):
    from services.config_service import list_controllers

    controllers = list_controllers()
    if not controllers:
        console.print("[yellow]No controllers configured.[/yellow]")
        return None
    return questionary.select(
        prompt,
        choices=[questionary.Choice(c.name, value=c) for c in controllers],
    ).ask()


def _change_password():
    from services.config_service import update_controller

    controller = _pick_controller("Select controller:")
    if not controller:
        return
    password = questionary.password("New keystore password:").ask()
    if not password:
        return
    update_controller(controller.name, keystore_password=password)
    console.print(f"[green]✓ Keystore password updated for '{controller.name}'.[/green]")
    _refresh_active(controller.name)


def _toggle_strict():
    from services.config_service import update_controller

    controller = _pick_controller("Select controller:")
    if not controller:
        return
    updated = update_controller(controller.name, strict=not controller.strict)
    state = "on" if updated.strict else "off"
    console.print(f"[green]✓ Strict mode {state} for '{controller.name}'.[/green]")
    _refresh_active(controller.name)


def _refresh_active(name: str) -> None:
    from cli.session import get_active_controller, set_active_controller
    from services.config_service import get_controller

    active = get_active_controller()
    if active and active.name == name:
        set_active_controller(get_controller(name))


def _remove_controller():
    from cli.session import clear_active_controller, get_active_controller
    from services.config_service import deactivate_controller

    controller = _pick_controller("Select controller to remove:")
    if not controller:
        return

    confirmed = questionary.confirm(
        f"Remove controller '{controller.name}'? This cannot be undone.", default=False
    ).ask()

    if confirmed:
        deactivate_controller(controller.name)
        active = get_active_controller()
        if active and active.name == controller.name:
            clear_active_controller()
        console.print(f"[green]✓ Controller '{controller.name}' removed.[/green]")


def _generate_key():
    from services.config_service import _KEY_FILE, generate_key

    confirmed = questionary.confirm(
        "Generate a new encryption key? This will replace the existing key and make "
        "any previously saved keystore passwords unreadable.",
        default=False,
    ).ask()
    if not confirmed:
        return

    key = generate_key()
    console.print(
        Panel(
            f"[bold yellow]{key}[/bold yellow]",
            title="New Encryption Key Generated",
            subtitle=f"Saved to {_KEY_FILE}",
            border_style="yellow",
        )
    )
    console.print(
        f"[green]✓ Key saved to[/green] [cyan]{_KEY_FILE}[/cyan]\n"
        "[dim]To override with an env var instead: "
        f"export CERTSYNC_SECRET_KEY={key}[/dim]"
    )
    pause()


# ------------------------------------------------------------------
# Clear history
# ------------------------------------------------------------------

def _clear_history():
    console.print(
        "\n[bold red]Clear Rotation History & Audit Log[/bold red]\n"
        "[dim]Deletes all rotation runs, tracked certificates, and audit log entries.\n"
        "Controller configuration and keystore backups are preserved.[/dim]\n"
    )
    confirmed = questionary.confirm(
        "This cannot be undone. Proceed?", default=False
    ).ask()
    if not confirmed:
        return

    from db.database import get_session
    from db.models import Certificate, RotationLog
    from services import audit_service

    with get_session() as session:
        run_count = session.query(RotationLog).delete()
        session.query(Certificate).update({Certificate.replaced_by_id: None})
        cert_count = session.query(Certificate).delete()
    audit_count = audit_service.clear()

    console.print(
        f"[green]✓ Cleared:[/green] "
        f"{run_count} rotation runs, "
        f"{cert_count} certificates, "
        f"{audit_count} audit entries."
    )
    pause()


# ------------------------------------------------------------------
# Audit Log
# ------------------------------------------------------------------

def audit_menu():
    from services import audit_service

    with console.status("Loading audit log..."):
        logs = audit_service.get_recent(limit=500)

    if not logs:
        console.print("[yellow]No audit log entries yet.[/yellow]")
        pause()
        return

    table = Table(
        title=f"Audit Log — {len(logs)} entries, newest first",
        show_lines=False,
    )
    table.add_column("Timestamp", style="dim", no_wrap=True)
    table.add_column("Operation")
    table.add_column("Resource")
    table.add_column("Stage")
    table.add_column("Status")

    from datetime import timezone as _tz
    for entry in logs:
        status_style = {"SUCCESS": "green", "WARNING": "yellow"}.get(entry.status, "red")
        resource = f"{entry.resource_type or ''} {entry.resource_name or ''}".strip()
        stage = (entry.details or {}).get("stage", "")
        # Timestamps are stored as UTC naive datetimes — convert to local time
        ts = entry.timestamp.replace(tzinfo=_tz.utc).astimezone()
        table.add_row(
            ts.strftime("%Y-%m-%d %H:%M:%S"),
            entry.operation or "",
            resource or "[dim]—[/dim]",
            stage or "[dim]—[/dim]",
            f"[{status_style}]{entry.status or ''}[/{status_style}]",
        )

    console.print(table)
    pause()
