"""Controller configuration management with encrypted secret storage.

The keystore password is encrypted with Fernet symmetric encryption before
being stored in the database.

Key resolution order:
  1. CERTSYNC_SECRET_KEY environment variable (explicit override)
  2. Key file at ~/.config/uc-certsync/secret.key (auto-created on first run)

Headless runs can skip the database entirely and describe the controller
through UNIFI_* environment variables instead (see rotation_config_from_env).
"""

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from cryptography.fernet import Fernet, InvalidToken

from db.database import get_session
from db.models import ControllerConfig

_KEY_FILE = Path.home() / ".config" / "uc-certsync" / "secret.key"

_TRUE = {"1", "true", "yes", "on"}


class ConfigError(Exception):
    """Raised when a controller cannot be resolved into a usable configuration."""


# ---------------------------------------------------------------------------
# Run configuration
# ---------------------------------------------------------------------------

@dataclass
class ToolPaths:
    tailscale: str = "/usr/bin/tailscale"
    openssl: str = "openssl"
    keytool: str = "keytool"
    service: str = "service"
    timeout: Optional[float] = None     # None → CERTSYNC_COMMAND_TIMEOUT / 300 s

    @classmethod
    def from_env(cls) -> "ToolPaths":
        timeout = os.environ.get("CERTSYNC_COMMAND_TIMEOUT")
        try:
            timeout = float(timeout) if timeout else None
        except ValueError:
            raise ConfigError(f"CERTSYNC_COMMAND_TIMEOUT must be a number of seconds, got {timeout!r}")
        if timeout is not None and timeout <= 0:
            raise ConfigError(f"CERTSYNC_COMMAND_TIMEOUT must be positive, got {timeout:g}")
        return cls(
            tailscale=os.environ.get("CERTSYNC_TAILSCALE", cls.tailscale),
            openssl=os.environ.get("CERTSYNC_OPENSSL", cls.openssl),
            keytool=os.environ.get("CERTSYNC_KEYTOOL", cls.keytool),
            service=os.environ.get("CERTSYNC_SERVICE_CMD", cls.service),
            timeout=timeout,
        )


@dataclass
class RotationConfig:
    """Everything one rotation run needs, resolved up front."""
    hostname: str
    keystore_password: str = field(repr=False)
    service_name: str = "unifi"
    keystore_path: str = "/var/lib/unifi/keystore"
    cert_dir: str = "/etc/ssl/private"
    alias: str = "unifi"
    strict: bool = False
    verify_url: Optional[str] = None
    controller_id: Optional[int] = None
    tools: ToolPaths = field(default_factory=ToolPaths)

    @property
    def cert_path(self) -> str:
        return os.path.join(self.cert_dir, f"{self.hostname}.crt")

    @property
    def key_path(self) -> str:
        return os.path.join(self.cert_dir, f"{self.hostname}.key")

    @property
    def manifest_path(self) -> str:
        return self.cert_path + ".md5"

    @property
    def orig_backup_path(self) -> str:
        return self.keystore_path + ".orig"

    @property
    def rolling_backup_path(self) -> str:
        return self.keystore_path + ".bak"


def rotation_config_for(controller: ControllerConfig, strict: Optional[bool] = None) -> RotationConfig:
    """Build a RotationConfig from a stored controller profile."""
    return RotationConfig(
        hostname=controller.hostname,
        keystore_password=decrypt_secret(controller.keystore_password_enc),
        service_name=controller.service_name,
        keystore_path=controller.keystore_path,
        cert_dir=controller.cert_dir,
        alias=controller.alias,
        strict=controller.strict if strict is None else strict,
        verify_url=controller.verify_url or None,
        controller_id=controller.id,
        tools=ToolPaths.from_env(),
    )


def rotation_config_from_env(strict: Optional[bool] = None) -> RotationConfig:
    """Build a RotationConfig from UNIFI_* environment variables."""
    missing = [v for v in ("UNIFI_HOSTNAME", "UNIFI_KEYSTORE_PASSWORD") if not os.environ.get(v)]
    if missing:
        raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

    if strict is None:
        strict = os.environ.get("CERTSYNC_STRICT", "").strip().lower() in _TRUE
    return RotationConfig(
        hostname=os.environ["UNIFI_HOSTNAME"],
        keystore_password=os.environ["UNIFI_KEYSTORE_PASSWORD"],
        service_name=os.environ.get("UNIFI_SERVICE", "unifi"),
        keystore_path=os.environ.get("UNIFI_KEYSTORE", "/var/lib/unifi/keystore"),
        cert_dir=os.environ.get("UNIFI_CERT_DIR", "/etc/ssl/private"),
        alias=os.environ.get("UNIFI_ALIAS", "unifi"),
        strict=strict,
        verify_url=os.environ.get("UNIFI_VERIFY_URL") or None,
        tools=ToolPaths.from_env(),
    )


def load_rotation_config(name: str, strict: Optional[bool] = None) -> RotationConfig:
    """Resolve a stored controller by name, raising ConfigError if unusable."""
    controller = get_controller(name)
    if not controller:
        raise ConfigError(f"Controller '{name}' not found in database.")
    try:
        return rotation_config_for(controller, strict=strict)
    except ValueError as e:
        raise ConfigError(str(e)) from e


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------

def _chmod_600(path: Path) -> None:
    """Set file permissions to 600 on platforms that support it."""
    if sys.platform != "win32":
        path.chmod(0o600)


def _get_fernet() -> Fernet:
    # 1. Explicit env var override
    key = os.environ.get("CERTSYNC_SECRET_KEY")
    if key:
        return Fernet(key.encode())

    # 2. Persisted key file
    if _KEY_FILE.exists():
        return Fernet(_KEY_FILE.read_text().strip().encode())

    # 3. First run — auto-generate and save
    return Fernet(generate_key().encode())


def generate_key() -> str:
    """Generate a new Fernet encryption key and persist it to the key file."""
    key = Fernet.generate_key().decode()
    _KEY_FILE.parent.mkdir(parents=True, exist_ok=True)
    _KEY_FILE.write_text(key)
    _chmod_600(_KEY_FILE)
    return key


def encrypt_secret(value: str) -> str:
    return _get_fernet().encrypt(value.encode()).decode()


def decrypt_secret(value: str) -> str:
    try:
        return _get_fernet().decrypt(value.encode()).decode()
    except InvalidToken as e:
        raise ValueError(
            "Failed to decrypt keystore password — CERTSYNC_SECRET_KEY may be wrong or the record is corrupted."
        ) from e


# ---------------------------------------------------------------------------
# Controller CRUD
# ---------------------------------------------------------------------------

def add_controller(
    name: str,
    hostname: str,
    keystore_password: str,
    service_name: str = "unifi",
    keystore_path: str = "/var/lib/unifi/keystore",
    cert_dir: str = "/etc/ssl/private",
    alias: str = "unifi",
    strict: bool = False,
    verify_url: Optional[str] = None,
    notes: Optional[str] = None,
) -> ControllerConfig:
    """Add a new controller profile to the database."""
    with get_session() as session:
        controller = ControllerConfig(
            name=name,
            hostname=hostname.strip().rstrip("."),
            keystore_password_enc=encrypt_secret(keystore_password),
            service_name=service_name,
            keystore_path=keystore_path,
            cert_dir=cert_dir.rstrip("/") or "/",
            alias=alias,
            strict=strict,
            verify_url=verify_url or None,
            notes=notes,
        )
        session.add(controller)
        session.flush()
        session.refresh(controller)
        return controller


def get_controller(name: str) -> Optional[ControllerConfig]:
    """Retrieve an active controller by name."""
    with get_session() as session:
        return session.query(ControllerConfig).filter_by(name=name, is_active=True).first()


def list_controllers() -> List[ControllerConfig]:
    """Return all active controllers."""
    with get_session() as session:
        return (
            session.query(ControllerConfig)
            .filter_by(is_active=True)
            .order_by(ControllerConfig.name)
            .all()
        )


def update_controller(
    name: str,
    hostname: Optional[str] = None,
    keystore_password: Optional[str] = None,
    service_name: Optional[str] = None,
    keystore_path: Optional[str] = None,
    cert_dir: Optional[str] = None,
    alias: Optional[str] = None,
    strict: Optional[bool] = None,
    verify_url: Optional[str] = None,
    notes: Optional[str] = None,
) -> Optional[ControllerConfig]:
    """Update fields on an existing controller. Only provided fields are changed."""
    with get_session() as session:
        controller = session.query(ControllerConfig).filter_by(name=name, is_active=True).first()
        if not controller:
            return None
        if hostname is not None:
            controller.hostname = hostname.strip().rstrip(".")
        if keystore_password is not None:
            controller.keystore_password_enc = encrypt_secret(keystore_password)
        if service_name is not None:
            controller.service_name = service_name
        if keystore_path is not None:
            controller.keystore_path = keystore_path
        if cert_dir is not None:
            controller.cert_dir = cert_dir.rstrip("/") or "/"
        if alias is not None:
            controller.alias = alias
        if strict is not None:
            controller.strict = strict
        if verify_url is not None:
            controller.verify_url = verify_url or None
        if notes is not None:
            controller.notes = notes
        session.flush()
        session.refresh(controller)
        return controller


def deactivate_controller(name: str) -> bool:
    """Soft-delete a controller (sets is_active=False)."""
    with get_session() as session:
        controller = session.query(ControllerConfig).filter_by(name=name, is_active=True).first()
        if not controller:
            return False
        controller.is_active = False
        return True
