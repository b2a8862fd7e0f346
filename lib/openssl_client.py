from typing import Optional

from . import command
from .command import CommandResult


class OpenSSLClient:
    """Thin wrapper around the openssl CLI — only what rotation needs."""

    def __init__(self, binary: str = "openssl", timeout: Optional[float] = None):
        self.binary = binary
        self.timeout = timeout

    def export_pkcs12(
        self,
        cert_path: str,
        key_path: str,
        out_path: str,
        password: str,
        alias: str,
    ) -> CommandResult:
        """Bundle cert + key (and any chain in the cert file) into a PKCS#12 file."""
        return command.run(
            [
                self.binary, "pkcs12", "-export",
                "-in", cert_path,
                "-inkey", key_path,
                "-out", out_path,
                "-passout", f"pass:{password}",
                "-name", alias,
            ],
            timeout=self.timeout,
            redact=[password],
        )
