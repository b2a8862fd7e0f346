"""Subprocess wrapper shared by every external tool client.

Each invocation returns a CommandResult instead of raising, so callers can
decide per step whether a non-zero exit is fatal, a warning, or expected
(e.g. deleting a keystore alias that was never there).
"""

import os
import subprocess
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

DEFAULT_TIMEOUT = 300


def default_timeout() -> float:
    return float(os.environ.get("CERTSYNC_COMMAND_TIMEOUT", DEFAULT_TIMEOUT))


@dataclass
class CommandResult:
    args: List[str]
    returncode: Optional[int]           # None when the process never completed
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None         # launch failure or timeout
    redact: List[str] = field(default_factory=list, repr=False)

    @property
    def ok(self) -> bool:
        return self.error is None and self.returncode == 0

    @property
    def diagnostic(self) -> str:
        """One-line description of what went wrong (empty on success)."""
        if self.ok:
            return ""
        if self.error:
            return self._scrub(self.error)
        text = (self.stderr or self.stdout or "").strip()
        last = text.splitlines()[-1] if text else "no output"
        return self._scrub(f"exit {self.returncode}: {last}")

    @property
    def command_line(self) -> str:
        return self._scrub(" ".join(self.args))

    def _scrub(self, text: str) -> str:
        for secret in self.redact:
            if secret:
                text = text.replace(secret, "****")
        return text


def run(
    args: Sequence[str],
    timeout: Optional[float] = None,
    redact: Optional[Sequence[str]] = None,
) -> CommandResult:
    """Run *args* to completion and capture its output.

    Passwords passed on the command line should be listed in *redact* so they
    never end up in diagnostics or the audit log.
    """
    argv = [str(a) for a in args]
    secrets = list(redact or [])
    try:
        proc = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            timeout=timeout if timeout is not None else default_timeout(),
        )
    except FileNotFoundError:
        return CommandResult(argv, None, error=f"{argv[0]}: command not found", redact=secrets)
    except subprocess.TimeoutExpired as e:
        return CommandResult(argv, None, error=f"{argv[0]}: timed out after {e.timeout:g}s", redact=secrets)
    except OSError as e:
        return CommandResult(argv, None, error=f"{argv[0]}: {e}", redact=secrets)
    return CommandResult(argv, proc.returncode, proc.stdout or "", proc.stderr or "", redact=secrets)
