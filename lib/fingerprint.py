"""Certificate change detection via an md5sum-compatible manifest.

The manifest is a single line in `md5sum` output format:

    d41d8cd98f00b204e9800998ecf8427e  /etc/ssl/private/host.ts.net.crt

so `md5sum -c <manifest>` keeps working for anyone checking by hand, and
manifests written by older shell-based rotation scripts are picked up as-is.
"""

import hashlib
from pathlib import Path
from typing import Optional, Tuple

_CHUNK = 64 * 1024


def file_digest(path: str) -> str:
    """Return the md5 hex digest of *path*."""
    h = hashlib.md5()
    with open(path, "rb") as f:
        while chunk := f.read(_CHUNK):
            h.update(chunk)
    return h.hexdigest()


def read_manifest(manifest_path: str) -> Optional[Tuple[str, str]]:
    """Return (digest, target_path) from a manifest, or None if absent/unparseable."""
    try:
        line = Path(manifest_path).read_text().strip().splitlines()[0]
    except (OSError, UnicodeDecodeError, IndexError):
        return None
    digest, sep, target = line.partition(" ")
    # md5sum separates with two spaces, or " *" in binary mode
    target = target.lstrip(" ").lstrip("*")
    if not sep or len(digest) != 32 or not target:
        return None
    try:
        int(digest, 16)
    except ValueError:
        return None
    return digest.lower(), target


def matches(manifest_path: str) -> bool:
    """True only if the manifest exists and its target file still has the recorded digest."""
    entry = read_manifest(manifest_path)
    if entry is None:
        return False
    digest, target = entry
    try:
        return file_digest(target) == digest
    except OSError:
        return False


def write_manifest(manifest_path: str, target_path: str) -> str:
    """Record the current digest of *target_path*, overwriting any previous manifest."""
    digest = file_digest(target_path)
    Path(manifest_path).write_text(f"{digest}  {target_path}\n")
    return digest


def clear_manifest(manifest_path: str) -> None:
    Path(manifest_path).unlink(missing_ok=True)
