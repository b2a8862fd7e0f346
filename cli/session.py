"""Process-level session state for the CLI.

A single module-level variable holds the active controller so every menu
can read it without passing it through every call stack.  Only the CLI
should write to this; lib/services must not depend on it.
"""

_active_controller = None


def get_active_controller():
    """Return the currently selected ControllerConfig, or None."""
    return _active_controller


def set_active_controller(controller) -> None:
    """Set the active controller for this CLI session."""
    global _active_controller
    _active_controller = controller


def clear_active_controller() -> None:
    global _active_controller
    _active_controller = None
