"""Console narration for rotation runs, shared by the TUI and headless script."""

from rich.console import Console

_STYLES = {
    "info": ("[dim]·[/dim]", ""),
    "ok": ("[green]✓[/green]", "green"),
    "warn": ("[yellow]⚠[/yellow]", "yellow"),
    "error": ("[red]✗[/red]", "red"),
}


def console_progress(console: Console):
    """Return a progress_callback that prints each rotation stage to *console*."""

    def _on_progress(stage: str, message: str, level: str) -> None:
        marker, style = _STYLES.get(level, _STYLES["info"])
        text = f"[{style}]{message}[/{style}]" if style else message
        console.print(f"{marker} {text}", highlight=False)

    return _on_progress


def print_summary(console: Console, result) -> None:
    """Print the closing summary of a RotationResult."""
    style = {"SUCCESS": "green", "UNCHANGED": "green", "PARTIAL": "yellow"}.get(result.status, "red")
    console.print(f"\n[{style}]■ Rotation {result.status}[/{style}]  ({result.hostname})")
    if result.fingerprint:
        console.print(f"  Fingerprint (md5): {result.fingerprint}")
    if result.backup_kind:
        console.print(f"  Keystore backup:   .{result.backup_kind.value}")
    if result.warnings:
        console.print("\n[yellow]Warnings:[/yellow]")
        for w in result.warnings:
            console.print(f"  - {w}", highlight=False)
