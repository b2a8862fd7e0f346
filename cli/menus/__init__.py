"""Shared helpers for CLI menus — controller selection and config resolution."""

import questionary
from rich.console import Console

console = Console()


def pause() -> None:
    questionary.press_any_key_to_continue("Press any key to continue...").ask()


def select_controller():
    """Prompt the user to select a controller. Returns None if none are configured."""
    from services.config_service import list_controllers

    controllers = list_controllers()
    if not controllers:
        console.print(
            "[yellow]No controllers configured.[/yellow] "
            "Go to [bold]Settings → Add Controller[/bold] first."
        )
        return None
    if len(controllers) == 1:
        return controllers[0]
    return questionary.select(
        "Select controller:",
        choices=[questionary.Choice(f"{c.name}  ({c.hostname})", value=c) for c in controllers],
    ).ask()


def get_rotation_config(controller=None, strict=None):
    """Return (RotationConfig, controller) or (None, None) if setup is incomplete."""
    from services.config_service import ConfigError, rotation_config_for

    if controller is None:
        controller = select_controller()
    if controller is None:
        return None, None
    try:
        return rotation_config_for(controller, strict=strict), controller
    except (ConfigError, ValueError) as e:
        console.print(f"[red]✗ {e}[/red]")
        return None, None
