"""uc-certsync banner — logo, version, and screen-clear/redraw helper.

Call render_banner() at the top of every menu loop instead of a bare
console.clear() so the logo is always visible above the prompt.
"""

from rich.align import Align
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

console = Console()

VERSION = "0.3.0"

_LOGO_TEXT = "u c - c e r t s y n c"


def _build_banner_panel():
    from cli.session import get_active_controller

    controller = get_active_controller()
    subtitle = (
        f"Active: {controller.name} ({controller.hostname})  |  v{VERSION}  |  UniFi TLS Rotation"
        if controller
        else f"v{VERSION}  |  UniFi TLS Rotation"
    )

    return Panel(
        Align(Text(_LOGO_TEXT, style="bold cyan", no_wrap=True), align="center"),
        subtitle=subtitle,
        border_style="cyan",
        padding=(0, 4),
    )


def render_banner() -> None:
    """Clear the screen and redraw the logo panel."""
    console.clear()
    console.print(_build_banner_panel())
