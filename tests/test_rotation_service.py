import os
import shutil
import tempfile
from dataclasses import replace

import pytest

from conftest import HOSTNAME, ORIGINAL_STORE, FakeProbe, make_cert_pair
from db.database import get_session
from db.models import AuditLog, Certificate, RotationLog
from lib import fingerprint
from services.rotation_service import (
    FAILED,
    MISSING_INPUT,
    PARTIAL,
    SUCCESS,
    UNCHANGED,
    BackupKind,
    backup_plan,
    get_history,
    list_backups,
    restore_backup,
)


def _read(path):
    with open(path, "rb") as f:
        return f.read()


def _keystore_mutations(fakes):
    return [c for c in fakes.keytool.calls if c in ("delete", "import")]


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------

def test_first_run_installs_and_creates_original_backup(rotation_config, fakes, make_service):
    cert_pem, key_pem = fakes.tailscale.pair

    result = make_service(rotation_config).run()

    assert result.status == SUCCESS
    assert result.exit_code == 0
    assert result.backup_kind is BackupKind.ORIGINAL
    assert _read(rotation_config.orig_backup_path) == ORIGINAL_STORE
    assert not os.path.exists(rotation_config.rolling_backup_path)
    store = _read(rotation_config.keystore_path)
    assert store.startswith(b"JKS:P12[unifi]")
    assert cert_pem in store and key_pem in store
    assert fakes.services.calls == [("stop", "unifi"), ("start", "unifi")]
    assert fingerprint.matches(rotation_config.manifest_path)
    assert result.fingerprint == fingerprint.file_digest(rotation_config.cert_path)


def test_second_run_with_same_certificate_is_a_noop(rotation_config, fakes, make_service):
    make_service(rotation_config).run()
    store_after_first = _read(rotation_config.keystore_path)
    fakes.services.calls.clear()
    fakes.keytool.calls.clear()

    result = make_service(rotation_config).run()

    assert result.status == UNCHANGED
    assert result.exit_code == 0
    assert result.backup_kind is None
    assert fakes.services.calls == []
    assert _keystore_mutations(fakes) == []
    assert _read(rotation_config.keystore_path) == store_after_first
    assert not os.path.exists(rotation_config.rolling_backup_path)


def test_third_run_with_new_certificate_writes_rolling_backup(rotation_config, fakes, make_service):
    make_service(rotation_config).run()
    make_service(rotation_config).run()
    store_after_first = _read(rotation_config.keystore_path)

    new_cert, new_key = make_cert_pair()
    fakes.tailscale.pair = (new_cert, new_key)
    result = make_service(rotation_config).run()

    assert result.status == SUCCESS
    assert result.backup_kind is BackupKind.ROLLING
    assert _read(rotation_config.orig_backup_path) == ORIGINAL_STORE
    assert _read(rotation_config.rolling_backup_path) == store_after_first
    assert new_cert in _read(rotation_config.keystore_path)


def test_stale_manifest_triggers_install(rotation_config, fakes, make_service):
    with open(rotation_config.manifest_path, "w") as f:
        f.write(f"{'0' * 32}  {rotation_config.cert_path}\n")

    result = make_service(rotation_config).run()

    assert result.status == SUCCESS
    assert fingerprint.matches(rotation_config.manifest_path)


def test_force_reinstalls_unchanged_certificate(rotation_config, fakes, make_service):
    make_service(rotation_config).run()
    fakes.keytool.calls.clear()

    result = make_service(rotation_config).run(force=True)

    assert result.status == SUCCESS
    assert result.backup_kind is BackupKind.ROLLING
    assert _keystore_mutations(fakes) == ["delete", "import"]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def test_missing_key_leaves_keystore_untouched(rotation_config, fakes, make_service):
    cert_pem, _ = fakes.tailscale.pair
    fakes.tailscale.pair = (cert_pem, None)

    result = make_service(rotation_config).run()

    assert result.status == MISSING_INPUT
    assert result.exit_code == 1
    assert _read(rotation_config.keystore_path) == ORIGINAL_STORE
    assert not os.path.exists(rotation_config.orig_backup_path)
    assert fakes.services.calls == []
    assert fakes.openssl.archives == []
    assert not os.path.exists(rotation_config.manifest_path)


def test_empty_certificate_counts_as_missing(rotation_config, fakes, make_service):
    _, key_pem = fakes.tailscale.pair
    fakes.tailscale.pair = (b"", key_pem)

    result = make_service(rotation_config).run()

    assert result.status == MISSING_INPUT
    assert _read(rotation_config.keystore_path) == ORIGINAL_STORE


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------

def test_zero_length_original_backup_is_replaced(rotation_config, fakes, make_service):
    open(rotation_config.orig_backup_path, "wb").close()
    assert backup_plan(rotation_config) is BackupKind.ORIGINAL

    result = make_service(rotation_config).run()

    assert result.backup_kind is BackupKind.ORIGINAL
    assert _read(rotation_config.orig_backup_path) == ORIGINAL_STORE
    assert not os.path.exists(rotation_config.rolling_backup_path)


def test_missing_keystore_skips_backup_with_warning(rotation_config, fakes, make_service):
    os.unlink(rotation_config.keystore_path)

    result = make_service(rotation_config).run()

    assert result.status == PARTIAL
    assert result.backup_kind is None
    assert list_backups(rotation_config) == []
    assert os.path.exists(rotation_config.keystore_path)


def test_restore_backup_copies_over_keystore(rotation_config, fakes, make_service):
    make_service(rotation_config).run()
    fakes.services.calls.clear()

    warnings = restore_backup(rotation_config, BackupKind.ORIGINAL, services=fakes.services)

    assert warnings == []
    assert _read(rotation_config.keystore_path) == ORIGINAL_STORE
    assert fakes.services.calls == [("stop", "unifi"), ("start", "unifi")]


# ---------------------------------------------------------------------------
# Tool failures
# ---------------------------------------------------------------------------

def test_archive_is_removed_after_success(rotation_config, fakes, make_service):
    make_service(rotation_config).run()

    assert len(fakes.openssl.archives) == 1
    assert not os.path.exists(fakes.openssl.archives[0])


def test_lenient_import_failure_is_partial_and_cleans_up(rotation_config, fakes, make_service):
    fakes.keytool.fail_import = True

    result = make_service(rotation_config).run()

    assert result.status == PARTIAL
    assert result.exit_code == 0
    assert any("import failed" in w for w in result.warnings)
    assert not os.path.exists(fakes.openssl.archives[0])
    assert fakes.services.calls[-1] == ("start", "unifi")


def test_strict_import_failure_rolls_back(rotation_config, fakes, make_service):
    fakes.keytool.fail_import = True
    config = replace(rotation_config, strict=True)

    result = make_service(config).run()

    assert result.status == FAILED
    assert result.exit_code == 2
    assert _read(config.keystore_path) == ORIGINAL_STORE
    assert not os.path.exists(config.manifest_path)
    assert not os.path.exists(fakes.openssl.archives[0])
    assert fakes.services.calls == [("stop", "unifi"), ("start", "unifi")]


def test_strict_import_failure_retries_on_next_run(rotation_config, fakes, make_service):
    config = replace(rotation_config, strict=True)
    fakes.keytool.fail_import = True
    make_service(config).run()

    fakes.keytool.fail_import = False
    result = make_service(config).run()

    assert result.status == SUCCESS


def test_strict_issuance_failure_changes_nothing(rotation_config, fakes, make_service):
    fakes.tailscale.fail = True
    config = replace(rotation_config, strict=True)

    result = make_service(config).run()

    assert result.status == FAILED
    assert fakes.services.calls == []
    assert _read(config.keystore_path) == ORIGINAL_STORE


def test_lenient_packaging_failure_keeps_existing_entry(rotation_config, fakes, make_service):
    fakes.openssl.fail = True

    result = make_service(rotation_config).run()

    assert result.status == PARTIAL
    assert _keystore_mutations(fakes) == []
    assert _read(rotation_config.keystore_path) == ORIGINAL_STORE
    assert not os.path.exists(fakes.openssl.archives[0])


def test_strict_stop_failure_takes_no_backup(rotation_config, fakes, make_service):
    fakes.services.fail_stop = True
    config = replace(rotation_config, strict=True)

    result = make_service(config).run()

    assert result.status == FAILED
    assert not os.path.exists(config.orig_backup_path)
    assert not os.path.exists(config.manifest_path)
    assert fakes.services.calls[-1] == ("start", "unifi")


def test_strict_import_failure_rolls_back_from_rolling_backup(rotation_config, fakes, make_service):
    config = replace(rotation_config, strict=True)
    make_service(config).run()
    store_after_first = _read(config.keystore_path)

    fakes.tailscale.pair = make_cert_pair()
    fakes.keytool.fail_import = True
    result = make_service(config).run()

    assert result.status == FAILED
    assert result.backup_kind is BackupKind.ROLLING
    assert _read(config.keystore_path) == store_after_first
    assert _read(config.rolling_backup_path) == store_after_first
    assert _read(config.orig_backup_path) == ORIGINAL_STORE
    assert not os.path.exists(config.manifest_path)


def test_unexpected_error_after_stop_restarts_controller(rotation_config, fakes, make_service, monkeypatch):
    def no_space(*args, **kwargs):
        raise OSError(28, "No space left on device")

    with monkeypatch.context() as m:
        m.setattr(tempfile, "mkstemp", no_space)
        with pytest.raises(OSError):
            make_service(rotation_config).run()

    assert fakes.services.calls == [("stop", "unifi"), ("start", "unifi")]
    assert not os.path.exists(rotation_config.manifest_path)
    assert _read(rotation_config.keystore_path) == ORIGINAL_STORE
    with get_session() as session:
        assert session.query(RotationLog).one().status == FAILED

    # the cleared manifest makes the next run install instead of reporting UNCHANGED
    result = make_service(rotation_config).run()
    assert result.status == SUCCESS


def test_interrupted_backup_leaves_no_partial_original(rotation_config, fakes, make_service, monkeypatch):
    def torn_copy(src, dst, *args, **kwargs):
        with open(dst, "wb") as f:
            f.write(ORIGINAL_STORE[:5])
        raise OSError(28, "No space left on device")

    with monkeypatch.context() as m:
        m.setattr(shutil, "copy2", torn_copy)
        result = make_service(rotation_config).run()

    assert result.status == PARTIAL
    assert any("Keystore backup failed" in w for w in result.warnings)
    assert not os.path.exists(rotation_config.orig_backup_path)
    assert not os.path.exists(rotation_config.orig_backup_path + ".tmp")
    assert backup_plan(rotation_config) is BackupKind.ORIGINAL


def test_failed_restore_still_starts_controller(rotation_config, fakes, make_service, monkeypatch):
    make_service(rotation_config).run()
    store_after_first = _read(rotation_config.keystore_path)
    fakes.services.calls.clear()

    def denied(*args, **kwargs):
        raise PermissionError(13, "Permission denied")

    with monkeypatch.context() as m:
        m.setattr(shutil, "copy2", denied)
        with pytest.raises(PermissionError):
            restore_backup(rotation_config, BackupKind.ORIGINAL, services=fakes.services)

    assert fakes.services.calls == [("stop", "unifi"), ("start", "unifi")]
    assert _read(rotation_config.keystore_path) == store_after_first
    with get_session() as session:
        entry = session.query(AuditLog).filter_by(operation="restore_backup").one()
        assert entry.status == "FAILURE"


def test_failed_probe_is_a_warning(rotation_config, fakes, make_service):
    result = make_service(rotation_config, probe=FakeProbe(up=False)).run()

    assert result.status == PARTIAL
    assert any("did not report up" in w for w in result.warnings)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def test_runs_are_logged_and_certificates_tracked(rotation_config, fakes, make_service):
    make_service(rotation_config).run()
    make_service(rotation_config).run()
    fakes.tailscale.pair = make_cert_pair()
    make_service(rotation_config).run()

    history = get_history(hostname=HOSTNAME)
    assert [r.status for r in history] == [SUCCESS, UNCHANGED, SUCCESS]
    assert [r.backup_kind for r in history] == ["bak", None, "orig"]

    with get_session() as session:
        certs = session.query(Certificate).order_by(Certificate.id).all()
        assert len(certs) == 2
        assert not certs[0].is_active and certs[0].replaced_by_id == certs[1].id
        assert certs[1].is_active
        assert certs[1].subject_cn == HOSTNAME
        assert session.query(RotationLog).filter_by(status="RUNNING").count() == 0
        assert session.query(AuditLog).filter_by(operation="rotate_certificate").count() > 0


def test_audit_log_never_contains_keystore_password(rotation_config, fakes, make_service):
    fakes.keytool.fail_import = True
    make_service(rotation_config).run()

    with get_session() as session:
        for entry in session.query(AuditLog).all():
            assert rotation_config.keystore_password not in (entry.error_message or "")
            assert rotation_config.keystore_password not in str(entry.details or "")


def test_progress_callback_narrates_stages(rotation_config, fakes, make_service):
    seen = []
    make_service(rotation_config).run(progress_callback=lambda stage, msg, level: seen.append(stage))

    for stage in ("issue", "detect", "validate", "stop", "backup", "package", "import", "cleanup", "start_service"):
        assert stage in seen
