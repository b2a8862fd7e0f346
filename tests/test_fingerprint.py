from lib import fingerprint


def test_write_then_match(tmp_path):
    cert = tmp_path / "host.crt"
    cert.write_text("-----BEGIN CERTIFICATE-----\nAAAA\n-----END CERTIFICATE-----\n")
    manifest = str(cert) + ".md5"

    digest = fingerprint.write_manifest(manifest, str(cert))

    assert fingerprint.matches(manifest)
    assert (tmp_path / "host.crt.md5").read_text() == f"{digest}  {cert}\n"


def test_changed_file_does_not_match(tmp_path):
    cert = tmp_path / "host.crt"
    cert.write_text("one")
    manifest = str(cert) + ".md5"
    fingerprint.write_manifest(manifest, str(cert))

    cert.write_text("two")

    assert not fingerprint.matches(manifest)


def test_absent_manifest_does_not_match(tmp_path):
    assert not fingerprint.matches(str(tmp_path / "missing.md5"))


def test_garbage_manifest_does_not_match(tmp_path):
    manifest = tmp_path / "host.crt.md5"
    manifest.write_text("not a checksum line\n")
    assert fingerprint.read_manifest(str(manifest)) is None
    assert not fingerprint.matches(str(manifest))


def test_manifest_for_deleted_file_does_not_match(tmp_path):
    cert = tmp_path / "host.crt"
    cert.write_text("data")
    manifest = str(cert) + ".md5"
    fingerprint.write_manifest(manifest, str(cert))
    cert.unlink()

    assert not fingerprint.matches(manifest)


def test_reads_binary_mode_md5sum_output(tmp_path):
    cert = tmp_path / "host.crt"
    cert.write_bytes(b"")
    manifest = tmp_path / "host.crt.md5"
    # md5sum -b marks binary mode with an asterisk
    manifest.write_text(f"D41D8CD98F00B204E9800998ECF8427E *{cert}\n")

    assert fingerprint.read_manifest(str(manifest)) == ("d41d8cd98f00b204e9800998ecf8427e", str(cert))
    assert fingerprint.matches(str(manifest))


def test_clear_manifest_is_idempotent(tmp_path):
    manifest = tmp_path / "host.crt.md5"
    manifest.write_text("x")
    fingerprint.clear_manifest(str(manifest))
    fingerprint.clear_manifest(str(manifest))
    assert not manifest.exists()
