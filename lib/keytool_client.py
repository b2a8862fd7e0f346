from typing import Optional

from . import command
from .command import CommandResult

# keytool prints e.g. "keytool error: java.lang.Exception: Alias <unifi> does not exist"
_ALIAS_MISSING = "does not exist"


class KeytoolClient:
    """Wrapper around the JDK keytool for the controller's keystore.

    UniFi ships a bundled JRE; point *binary* at its keytool if the system
    one is missing or a different major version.
    """

    def __init__(self, binary: str = "keytool", timeout: Optional[float] = None):
        self.binary = binary
        self.timeout = timeout

    def delete_alias(self, alias: str, keystore: str, storepass: str) -> CommandResult:
        """Remove *alias* from the keystore. An absent alias is reported as success."""
        result = command.run(
            [
                self.binary, "-delete",
                "-alias", alias,
                "-keystore", keystore,
                "-deststorepass", storepass,
            ],
            timeout=self.timeout,
            redact=[storepass],
        )
        if not result.ok and result.error is None and _ALIAS_MISSING in (result.stdout + result.stderr):
            result.returncode = 0
        return result

    def import_pkcs12(
        self,
        src_path: str,
        src_password: str,
        keystore: str,
        storepass: str,
        alias: str,
    ) -> CommandResult:
        """Merge the PKCS#12 entry for *alias* into the keystore, trusting CA certs."""
        return command.run(
            [
                self.binary, "-importkeystore",
                "-noprompt",
                "-srckeystore", src_path,
                "-srcstoretype", "PKCS12",
                "-srcstorepass", src_password,
                "-destkeystore", keystore,
                "-deststorepass", storepass,
                "-destkeypass", storepass,
                "-alias", alias,
                "-trustcacerts",
            ],
            timeout=self.timeout,
            redact=[src_password, storepass],
        )
