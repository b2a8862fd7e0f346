#!/usr/bin/env python3
"""uc-certsync — interactive TUI for UniFi controller certificate rotation.

Installed usage:  uc-certsync
Development:      pip install -e .  then  uc-certsync
"""


def main():
    from db.database import init_db
    from cli.banner import render_banner
    from cli.menus import select_controller
    from cli.menus.main_menu import main_menu
    from cli.session import set_active_controller

    init_db()
    render_banner()

    # Select active controller at startup (skipped if none are configured yet)
    from services.config_service import list_controllers
    if list_controllers():
        controller = select_controller()
        if controller:
            set_active_controller(controller)

    main_menu()


if __name__ == "__main__":
    main()
