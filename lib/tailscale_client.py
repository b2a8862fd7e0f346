from typing import Optional

from . import command
from .command import CommandResult


class TailscaleClient:
    """Requests TLS certificates from the local tailscaled via `tailscale cert`.

    The node must have HTTPS enabled under MagicDNS; tailscaled obtains (or
    reuses) a Let's Encrypt certificate for the node's *.ts.net name and
    writes the PEM files to the paths given.
    """

    def __init__(self, binary: str = "/usr/bin/tailscale", timeout: Optional[float] = None):
        self.binary = binary
        self.timeout = timeout

    def cert(self, hostname: str, cert_path: str, key_path: str) -> CommandResult:
        return command.run(
            [
                self.binary, "cert",
                "--cert-file", cert_path,
                "--key-file", key_path,
                hostname,
            ],
            timeout=self.timeout,
        )
