"""Certificate rotation workflow for a UniFi controller.

One run walks four stages:

  1. Issue          — ask tailscaled for the node's current cert/key pair
  2. Detect-change  — compare the cert against the stored md5 manifest;
                      an unchanged cert ends the run here as a no-op
  3. Validate       — both cert and key must exist and be non-empty
  4. Install        — record the new manifest, stop the controller, back up
                      the keystore, swap the alias via a throwaway PKCS#12
                      file, start the controller again

The keystore is only ever touched in stage 4, so running this from cron
every night costs one `tailscale cert` call and a checksum when nothing
has changed.

Tool failures never raise out of the lib clients. In lenient mode (the
default) they are recorded as warnings and the run carries on, ending
PARTIAL. In strict mode issuance, stop, backup, packaging and import
failures abort the run; if the keystore had already been backed up it is
restored, the manifest is cleared so the next run retries, and the
controller is started again. Any other exception raised after the stop
unwinds the same way before it propagates.

Usage:
    service = RotationService(config)
    result = service.run(progress_callback=lambda stage, msg, level: print(msg))
    sys.exit(result.exit_code)
"""

import os
import secrets
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from db.database import get_session
from db.models import Certificate, RotationLog
from lib import fingerprint
from lib.cert_info import load_cert_info
from lib.command import CommandResult
from lib.controller_probe import ControllerProbe
from lib.keytool_client import KeytoolClient
from lib.openssl_client import OpenSSLClient
from lib.service_client import ServiceClient
from lib.tailscale_client import TailscaleClient
from services import audit_service
from services.config_service import RotationConfig

OPERATION = "rotate_certificate"

# Run outcomes (RotationLog.status)
UNCHANGED = "UNCHANGED"
SUCCESS = "SUCCESS"
PARTIAL = "PARTIAL"
FAILED = "FAILED"
MISSING_INPUT = "MISSING_INPUT"

EXIT_CODES = {UNCHANGED: 0, SUCCESS: 0, PARTIAL: 0, MISSING_INPUT: 1, FAILED: 2}

ProgressCallback = Callable[[str, str, str], None]


class BackupKind(Enum):
    """Which backup slot a keystore copy goes to."""
    ORIGINAL = "orig"   # written once, the first time a keystore is ever modified
    ROLLING = "bak"     # overwritten on every later rotation


@dataclass
class StepRecord:
    stage: str
    ok: bool
    diagnostic: str = ""


@dataclass
class RotationResult:
    status: str
    hostname: str
    backup_kind: Optional[BackupKind] = None
    fingerprint: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    steps: List[StepRecord] = field(default_factory=list)
    rotation_log_id: Optional[int] = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]

    @property
    def changed(self) -> bool:
        return self.status in (SUCCESS, PARTIAL)

    def to_dict(self) -> Dict:
        return {
            "status": self.status,
            "hostname": self.hostname,
            "exit_code": self.exit_code,
            "backup_kind": self.backup_kind.value if self.backup_kind else None,
            "fingerprint": self.fingerprint,
            "warnings": list(self.warnings),
            "steps": [{"stage": s.stage, "ok": s.ok, "diagnostic": s.diagnostic} for s in self.steps],
            "rotation_log_id": self.rotation_log_id,
        }


class RotationAborted(Exception):
    """Internal: a strict-mode step failed and the run must unwind."""

    def __init__(self, stage: str, diagnostic: str):
        super().__init__(f"{stage}: {diagnostic}")
        self.stage = stage
        self.diagnostic = diagnostic


# ---------------------------------------------------------------------------
# Keystore backups
# ---------------------------------------------------------------------------

def backup_plan(config: RotationConfig) -> BackupKind:
    """Decide which slot the next backup goes to.

    A zero-length .orig (e.g. from an interrupted copy) does not count as an
    original backup and will be overwritten.
    """
    try:
        has_original = os.path.getsize(config.orig_backup_path) > 0
    except OSError:
        has_original = False
    return BackupKind.ROLLING if has_original else BackupKind.ORIGINAL


def backup_path(config: RotationConfig, kind: BackupKind) -> str:
    return config.orig_backup_path if kind is BackupKind.ORIGINAL else config.rolling_backup_path


def _copy_file(src: str, dest: str) -> None:
    """Copy *src* over *dest* through a sibling temp file.

    *dest* either keeps its old content or gets the complete new content;
    a failed copy never leaves it truncated.
    """
    tmp = f"{dest}.tmp"
    try:
        shutil.copy2(src, tmp)
        os.replace(tmp, dest)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise


def list_backups(config: RotationConfig) -> List[Dict]:
    """Return the existing keystore backups with size and modification time."""
    backups = []
    for kind in BackupKind:
        path = backup_path(config, kind)
        try:
            st = os.stat(path)
        except OSError:
            continue
        backups.append({
            "kind": kind,
            "path": path,
            "size": st.st_size,
            "modified_at": datetime.fromtimestamp(st.st_mtime),
        })
    return backups


def restore_backup(
    config: RotationConfig,
    kind: BackupKind,
    services: Optional[ServiceClient] = None,
) -> List[str]:
    """Copy a backup over the live keystore, stopping the controller around it.

    Returns a list of warnings (empty on a clean restore). Raises
    FileNotFoundError if the requested backup does not exist, and re-raises
    a failed copy after the controller has been started again.
    """
    src = backup_path(config, kind)
    if not os.path.isfile(src) or os.path.getsize(src) == 0:
        raise FileNotFoundError(f"No usable {kind.value} backup at {src}")

    services = services or ServiceClient(config.tools.service, config.tools.timeout)
    warnings = []

    stop = services.stop(config.service_name)
    if not stop.ok:
        warnings.append(f"Service stop failed: {stop.diagnostic}")
    try:
        _copy_file(src, config.keystore_path)
    except OSError as e:
        audit_service.log(
            operation="restore_backup",
            action="UPDATE",
            status="FAILURE",
            controller_id=config.controller_id,
            resource_type="keystore",
            resource_id=config.keystore_path,
            resource_name=config.hostname,
            details={"backup": src, "kind": kind.value},
            error_message=f"Keystore restore failed: {e}",
        )
        raise
    finally:
        start = services.start(config.service_name)
        if not start.ok:
            warnings.append(f"Service start failed: {start.diagnostic}")

    audit_service.log(
        operation="restore_backup",
        action="UPDATE",
        status="WARNING" if warnings else "SUCCESS",
        controller_id=config.controller_id,
        resource_type="keystore",
        resource_id=config.keystore_path,
        resource_name=config.hostname,
        details={"backup": src, "kind": kind.value},
        error_message="; ".join(warnings) or None,
    )
    return warnings


# ---------------------------------------------------------------------------
# Status / history
# ---------------------------------------------------------------------------

def certificate_status(config: RotationConfig) -> Dict:
    """Inspect the on-disk state for a controller without changing anything."""
    status: Dict = {
        "hostname": config.hostname,
        "cert_path": config.cert_path,
        "key_path": config.key_path,
        "cert_exists": os.path.isfile(config.cert_path),
        "key_exists": os.path.isfile(config.key_path),
        "manifest_matches": fingerprint.matches(config.manifest_path),
        "keystore_exists": os.path.isfile(config.keystore_path),
        "next_backup": backup_plan(config).value,
        "backups": [
            {**b, "kind": b["kind"].value, "modified_at": b["modified_at"].isoformat()}
            for b in list_backups(config)
        ],
        "certificate": None,
    }
    if status["cert_exists"]:
        status["md5"] = fingerprint.file_digest(config.cert_path)
        try:
            info = load_cert_info(config.cert_path)
        except ValueError as e:
            status["certificate_error"] = str(e)
        else:
            status["certificate"] = {
                "subject_cn": info.subject_cn,
                "issuer_cn": info.issuer_cn,
                "not_before": info.not_before.isoformat(),
                "not_after": info.not_after.isoformat(),
                "days_remaining": info.days_remaining,
                "sha256": info.sha256,
            }
    return status


def get_history(
    controller_id: Optional[int] = None,
    hostname: Optional[str] = None,
    limit: int = 50,
) -> List[RotationLog]:
    """Return recent rotation runs, newest first."""
    with get_session() as session:
        q = session.query(RotationLog)
        if controller_id is not None:
            q = q.filter(RotationLog.controller_id == controller_id)
        if hostname is not None:
            q = q.filter(RotationLog.hostname == hostname)
        return q.order_by(RotationLog.started_at.desc(), RotationLog.id.desc()).limit(limit).all()


# ---------------------------------------------------------------------------
# Rotation
# ---------------------------------------------------------------------------

class RotationService:
    def __init__(
        self,
        config: RotationConfig,
        tailscale: Optional[TailscaleClient] = None,
        openssl: Optional[OpenSSLClient] = None,
        keytool: Optional[KeytoolClient] = None,
        services: Optional[ServiceClient] = None,
        probe: Optional[ControllerProbe] = None,
    ):
        tools = config.tools
        self.config = config
        self.tailscale = tailscale or TailscaleClient(tools.tailscale, tools.timeout)
        self.openssl = openssl or OpenSSLClient(tools.openssl, tools.timeout)
        self.keytool = keytool or KeytoolClient(tools.keytool, tools.timeout)
        self.services = services or ServiceClient(tools.service, tools.timeout)
        if probe is None and config.verify_url:
            probe = ControllerProbe(config.verify_url)
        self.probe = probe

        self._progress: Optional[ProgressCallback] = None
        self._result: Optional[RotationResult] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        force: bool = False,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> RotationResult:
        """Execute one rotation cycle. Never raises for tool failures.

        *force* skips the fingerprint comparison and installs whatever
        tailscaled hands back.
        """
        cfg = self.config
        self._progress = progress_callback
        self._result = result = RotationResult(status=FAILED, hostname=cfg.hostname)
        log_id = self._start_log()
        result.rotation_log_id = log_id

        self._emit("start", f"Starting certificate rotation for {cfg.hostname}", "info")
        try:
            self._issue()
            if not force and self._unchanged():
                result.status = UNCHANGED
            elif not self._inputs_present():
                result.status = MISSING_INPUT
            else:
                self._install()
                result.status = PARTIAL if result.warnings else SUCCESS
        except RotationAborted as e:
            result.status = FAILED
            self._emit(e.stage, f"Rotation aborted: {e.diagnostic}", "error")
        except Exception as e:
            result.status = FAILED
            result.warnings.append(str(e))
            self._finish_log(log_id)
            raise

        self._finish_log(log_id)
        audit_service.log(
            operation=OPERATION,
            action="UPDATE" if result.changed else "READ",
            status="SUCCESS" if result.status in (SUCCESS, UNCHANGED) else (
                "WARNING" if result.status == PARTIAL else "FAILURE"
            ),
            controller_id=cfg.controller_id,
            resource_type="certificate",
            resource_id=result.fingerprint,
            resource_name=cfg.hostname,
            details={"outcome": result.status, "forced": force, "strict": cfg.strict},
            error_message="; ".join(result.warnings) or None,
        )
        self._emit("done", f"Finished: {result.status}", "ok" if result.exit_code == 0 else "error")
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _issue(self) -> None:
        cfg = self.config
        self._emit("issue", f"Requesting certificate for {cfg.hostname} from tailscaled...", "info")
        r = self.tailscale.cert(cfg.hostname, cfg.cert_path, cfg.key_path)
        self._check("issue", r, escalate=True, resource_type="certificate")

    def _unchanged(self) -> bool:
        self._emit("detect", "Inspecting current SSL certificate...", "info")
        if fingerprint.matches(self.config.manifest_path):
            self._emit("detect", "Certificate is unchanged, no update is necessary.", "ok")
            return True
        self._emit("detect", "Updated SSL certificate available. Proceeding with import...", "info")
        return False

    def _inputs_present(self) -> bool:
        cfg = self.config
        missing = [
            p for p in (cfg.cert_path, cfg.key_path)
            if not os.path.isfile(p) or os.path.getsize(p) == 0
        ]
        if missing:
            msg = f"Missing one or more required files: {', '.join(missing)}"
            self._result.warnings.append(msg)
            self._result.steps.append(StepRecord("validate", False, msg))
            self._emit("validate", msg, "error")
            audit_service.log(
                operation=OPERATION, action="READ", status="FAILURE",
                controller_id=cfg.controller_id, resource_type="certificate",
                resource_name=cfg.hostname, details={"missing": missing}, error_message=msg,
            )
            return False
        self._result.steps.append(StepRecord("validate", True))
        self._emit("validate", f"Private key: {cfg.key_path}", "info")
        self._emit("validate", f"Certificate: {cfg.cert_path}", "info")
        return True

    def _install(self) -> None:
        cfg = self.config
        result = self._result

        result.fingerprint = fingerprint.write_manifest(cfg.manifest_path, cfg.cert_path)

        # From the stop onwards every exit path, including unexpected errors,
        # must start the controller again and forget the new manifest.
        self._emit("stop", "Stopping UniFi Controller...", "info")
        try:
            self._check("stop", self.services.stop(cfg.service_name), escalate=True, resource_type="service")
        except BaseException:
            fingerprint.clear_manifest(cfg.manifest_path)
            self._start_service()
            raise

        keystore_existed = os.path.isfile(cfg.keystore_path)
        try:
            result.backup_kind = self._backup(keystore_existed)
            self._swap_alias()
        except BaseException:
            self._rollback(keystore_existed)
            self._start_service()
            raise

        self._start_service()
        self._verify()
        self._record_certificate()

    def _backup(self, keystore_existed: bool) -> Optional[BackupKind]:
        cfg = self.config
        if not keystore_existed:
            self._warn("backup", f"Keystore {cfg.keystore_path} not found; nothing to back up.")
            return None

        kind = backup_plan(cfg)
        dest = backup_path(cfg, kind)
        if kind is BackupKind.ORIGINAL:
            self._emit("backup", f"No original keystore backup found. Creating backup as {dest}...", "info")
        else:
            self._emit("backup", f"Backup of original keystore exists. Creating rolling backup as {dest}...", "info")
        try:
            _copy_file(cfg.keystore_path, dest)
        except OSError as e:
            self._fail_step("backup", f"Keystore backup failed: {e}", escalate=True, resource_type="keystore")
            return None

        self._result.steps.append(StepRecord("backup", True))
        audit_service.log(
            operation=OPERATION, action="CREATE", status="SUCCESS",
            controller_id=cfg.controller_id, resource_type="keystore_backup",
            resource_id=dest, resource_name=cfg.hostname, details={"kind": kind.value},
        )
        return kind

    def _swap_alias(self) -> None:
        cfg = self.config
        archive_password = secrets.token_urlsafe(24)
        fd, archive = tempfile.mkstemp(prefix="uc-certsync-", suffix=".p12")
        os.close(fd)
        try:
            self._emit("package", "Exporting certificate and key into temporary PKCS12 file...", "info")
            r = self.openssl.export_pkcs12(cfg.cert_path, cfg.key_path, archive, archive_password, cfg.alias)
            if not self._check("package", r, escalate=True, resource_type="pkcs12"):
                # Nothing valid to import; keep the existing entry in place.
                self._warn("import", "Skipping keystore update because packaging failed.")
                return

            self._emit("delete", "Removing previous certificate data from UniFi keystore...", "info")
            r = self.keytool.delete_alias(cfg.alias, cfg.keystore_path, cfg.keystore_password)
            self._check("delete", r, escalate=False, resource_type="keystore")

            self._emit("import", "Importing SSL certificate into UniFi keystore...", "info")
            r = self.keytool.import_pkcs12(archive, archive_password, cfg.keystore_path, cfg.keystore_password, cfg.alias)
            self._check("import", r, escalate=True, resource_type="keystore", action="UPDATE")
        finally:
            self._emit("cleanup", "Removing temporary files...", "info")
            try:
                os.unlink(archive)
            except FileNotFoundError:
                pass

    def _rollback(self, keystore_existed: bool) -> None:
        """Put the keystore back the way this run found it and forget the manifest."""
        cfg = self.config
        fingerprint.clear_manifest(cfg.manifest_path)
        kind = self._result.backup_kind
        try:
            if kind is not None:
                _copy_file(backup_path(cfg, kind), cfg.keystore_path)
                self._emit("rollback", f"Keystore restored from {backup_path(cfg, kind)}", "warn")
            elif not keystore_existed and os.path.exists(cfg.keystore_path):
                os.unlink(cfg.keystore_path)
                self._emit("rollback", "Removed partially created keystore", "warn")
        except OSError as e:
            self._warn("rollback", f"Keystore rollback failed: {e}")
            return
        audit_service.log(
            operation=OPERATION, action="UPDATE", status="WARNING",
            controller_id=cfg.controller_id, resource_type="keystore",
            resource_id=cfg.keystore_path, resource_name=cfg.hostname,
            details={"rollback_from": kind.value if kind else None},
        )

    def _start_service(self) -> None:
        cfg = self.config
        self._emit("start_service", "Starting UniFi Controller to apply the new certificate...", "info")
        self._check("start_service", self.services.start(cfg.service_name), escalate=False, resource_type="service")

    def _verify(self) -> None:
        if self.probe is None:
            return
        self._emit("verify", f"Waiting for controller at {self.probe.url}...", "info")
        if self.probe.wait_until_up():
            self._result.steps.append(StepRecord("verify", True))
            self._emit("verify", "Controller is up", "ok")
        else:
            self._warn("verify", f"Controller did not report up at {self.probe.url}")

    def _record_certificate(self) -> None:
        cfg = self.config
        try:
            info = load_cert_info(cfg.cert_path)
        except (OSError, ValueError) as e:
            self._warn("record", f"Could not parse installed certificate: {e}")
            return
        with get_session() as session:
            previous = (
                session.query(Certificate)
                .filter_by(hostname=cfg.hostname, controller_id=cfg.controller_id, is_active=True)
                .all()
            )
            cert = Certificate(
                controller_id=cfg.controller_id,
                hostname=cfg.hostname,
                sha256=info.sha256,
                subject_cn=info.subject_cn,
                issuer_cn=info.issuer_cn,
                not_before=info.not_before,
                expires_at=info.not_after,
            )
            session.add(cert)
            session.flush()
            for old in previous:
                old.is_active = False
                old.replaced_by_id = cert.id
        self._emit("record", f"Installed certificate for {info.subject_cn}, expires {info.not_after:%Y-%m-%d}", "ok")

    # ------------------------------------------------------------------
    # Step bookkeeping
    # ------------------------------------------------------------------

    def _check(
        self,
        stage: str,
        r: CommandResult,
        escalate: bool,
        resource_type: str,
        action: str = "UPDATE",
    ) -> bool:
        """Record a tool result. Returns r.ok; raises RotationAborted in strict mode."""
        if r.ok:
            self._result.steps.append(StepRecord(stage, True))
            audit_service.log(
                operation=OPERATION, action=action, status="SUCCESS",
                controller_id=self.config.controller_id, resource_type=resource_type,
                resource_name=self.config.hostname, details={"stage": stage},
            )
            return True
        self._fail_step(stage, f"{stage} failed: {r.diagnostic}", escalate, resource_type,
                        command=r.command_line)
        return False

    def _fail_step(
        self,
        stage: str,
        message: str,
        escalate: bool,
        resource_type: str,
        command: Optional[str] = None,
    ) -> None:
        fatal = escalate and self.config.strict
        self._result.warnings.append(message)
        self._result.steps.append(StepRecord(stage, False, message))
        audit_service.log(
            operation=OPERATION, action="UPDATE", status="FAILURE" if fatal else "WARNING",
            controller_id=self.config.controller_id, resource_type=resource_type,
            resource_name=self.config.hostname,
            details={"stage": stage, "command": command} if command else {"stage": stage},
            error_message=message,
        )
        if fatal:
            raise RotationAborted(stage, message)
        self._emit(stage, message, "warn")

    def _warn(self, stage: str, message: str) -> None:
        self._result.warnings.append(message)
        self._result.steps.append(StepRecord(stage, False, message))
        self._emit(stage, message, "warn")

    def _emit(self, stage: str, message: str, level: str) -> None:
        if self._progress:
            self._progress(stage, message, level)

    def _start_log(self) -> int:
        with get_session() as session:
            entry = RotationLog(
                controller_id=self.config.controller_id,
                hostname=self.config.hostname,
                started_at=datetime.utcnow(),
                status="RUNNING",
            )
            session.add(entry)
            session.flush()
            return entry.id

    def _finish_log(self, log_id: int) -> None:
        result = self._result
        with get_session() as session:
            entry = session.get(RotationLog, log_id)
            entry.completed_at = datetime.utcnow()
            entry.status = result.status
            entry.backup_kind = result.backup_kind.value if result.backup_kind else None
            entry.fingerprint = result.fingerprint
            entry.warnings = "\n".join(result.warnings) or None
            entry.details = {"steps": [s.__dict__ for s in result.steps], "strict": self.config.strict}
