from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat
from cryptography.x509.oid import NameOID

from db.database import init_db
from lib.command import CommandResult
from services import config_service
from services.config_service import RotationConfig

HOSTNAME = "unifi.tailnet-test.ts.net"
KEYSTORE_PASSWORD = "s3cret-keystore"
ORIGINAL_STORE = b"JKS:original-controller-keystore"


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Fresh SQLite DB and encryption key per test; nothing touches $HOME."""
    db_url = f"sqlite:///{tmp_path / 'certsync.db'}"
    monkeypatch.setenv("CERTSYNC_DB_URL", db_url)
    monkeypatch.setenv("CERTSYNC_SECRET_KEY", Fernet.generate_key().decode())
    monkeypatch.setattr(config_service, "_KEY_FILE", tmp_path / "config" / "secret.key")
    for var in ("UNIFI_HOSTNAME", "UNIFI_KEYSTORE_PASSWORD", "CERTSYNC_STRICT", "UNIFI_VERIFY_URL"):
        monkeypatch.delenv(var, raising=False)
    init_db(db_url)
    yield


def make_cert_pair(cn: str = HOSTNAME, days: int = 90):
    """Return (cert_pem, key_pem) for a throwaway self-signed certificate."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
        .sign(key, hashes.SHA256())
    )
    return (
        cert.public_bytes(Encoding.PEM),
        key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()),
    )


def _ok(*args):
    return CommandResult([str(a) for a in args], 0)


def _fail(message, *args):
    return CommandResult([str(a) for a in args], 1, stderr=message)


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeTailscale:
    """Writes whichever cert/key pair the test has put in *pair*."""

    def __init__(self, pair):
        self.pair = pair
        self.fail = False
        self.calls = []

    def cert(self, hostname, cert_path, key_path):
        self.calls.append(hostname)
        if self.fail:
            return _fail("tailscale: not logged in", "tailscale", "cert", hostname)
        cert_pem, key_pem = self.pair
        if cert_pem is not None:
            with open(cert_path, "wb") as f:
                f.write(cert_pem)
        if key_pem is not None:
            with open(key_path, "wb") as f:
                f.write(key_pem)
        return _ok("tailscale", "cert", hostname)


class FakeOpenSSL:
    def __init__(self):
        self.fail = False
        self.archives = []

    def export_pkcs12(self, cert_path, key_path, out_path, password, alias):
        self.archives.append(out_path)
        if self.fail:
            return _fail("unable to load private key", "openssl", "pkcs12")
        with open(cert_path, "rb") as c, open(key_path, "rb") as k, open(out_path, "wb") as out:
            out.write(b"P12[" + alias.encode() + b"]" + c.read() + k.read())
        return _ok("openssl", "pkcs12", "-export")


class FakeKeytool:
    """Models the keystore as a file whose content is the last imported archive."""

    def __init__(self):
        self.fail_import = False
        self.calls = []

    def delete_alias(self, alias, keystore, storepass):
        self.calls.append("delete")
        assert storepass == KEYSTORE_PASSWORD
        return _ok("keytool", "-delete", alias)

    def import_pkcs12(self, src_path, src_password, keystore, storepass, alias):
        self.calls.append("import")
        assert storepass == KEYSTORE_PASSWORD
        if self.fail_import:
            # a half-written store, as a crashed import might leave behind
            with open(keystore, "wb") as f:
                f.write(b"CORRUPT")
            return _fail("keytool error: java.io.IOException: Keystore was tampered with", "keytool")
        with open(src_path, "rb") as src:
            data = src.read()
        with open(keystore, "wb") as f:
            f.write(b"JKS:" + data)
        return _ok("keytool", "-importkeystore", alias)


class FakeServices:
    def __init__(self):
        self.calls = []
        self.fail_stop = False

    def stop(self, name):
        self.calls.append(("stop", name))
        return _fail("Failed to stop unifi.service", "service") if self.fail_stop else _ok("service", name, "stop")

    def start(self, name):
        self.calls.append(("start", name))
        return _ok("service", name, "start")


class FakeProbe:
    url = "https://unifi.test:8443/status"

    def __init__(self, up=True):
        self.up = up

    def wait_until_up(self):
        return self.up


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def rotation_config(tmp_path):
    cert_dir = tmp_path / "ssl"
    cert_dir.mkdir()
    store_dir = tmp_path / "unifi"
    store_dir.mkdir()
    keystore = store_dir / "keystore"
    keystore.write_bytes(ORIGINAL_STORE)
    return RotationConfig(
        hostname=HOSTNAME,
        keystore_password=KEYSTORE_PASSWORD,
        keystore_path=str(keystore),
        cert_dir=str(cert_dir),
    )


@pytest.fixture
def fakes():
    class Fakes:
        tailscale = FakeTailscale(make_cert_pair())
        openssl = FakeOpenSSL()
        keytool = FakeKeytool()
        services = FakeServices()
    return Fakes


@pytest.fixture
def make_service(fakes):
    from services.rotation_service import RotationService

    def _make(config, probe=None):
        return RotationService(
            config,
            tailscale=fakes.tailscale,
            openssl=fakes.openssl,
            keytool=fakes.keytool,
            services=fakes.services,
            probe=probe,
        )

    return _make
