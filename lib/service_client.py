from typing import Optional

from . import command
from .command import CommandResult


class ServiceClient:
    """Starts and stops a system service via the SysV `service` wrapper.

    `service` forwards to systemctl on systemd hosts, so this works on both.
    """

    def __init__(self, binary: str = "service", timeout: Optional[float] = None):
        self.binary = binary
        self.timeout = timeout

    def stop(self, name: str) -> CommandResult:
        return command.run([self.binary, name, "stop"], timeout=self.timeout)

    def start(self, name: str) -> CommandResult:
        return command.run([self.binary, name, "start"], timeout=self.timeout)
