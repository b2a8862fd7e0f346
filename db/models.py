from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    pass


class ControllerConfig(Base):
    """Stores how to rotate the certificate for one UniFi controller.

    keystore_password is stored encrypted (Fernet). The encryption key lives
    in CERTSYNC_SECRET_KEY or the local key file, never in the database.
    """

    __tablename__ = "controller_configs"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), unique=True, nullable=False)
    hostname = Column(String(512), nullable=False)          # MagicDNS name the cert is issued for
    service_name = Column(String(128), default="unifi", nullable=False)
    keystore_path = Column(String(1024), default="/var/lib/unifi/keystore", nullable=False)
    cert_dir = Column(String(1024), default="/etc/ssl/private", nullable=False)
    alias = Column(String(128), default="unifi", nullable=False)
    keystore_password_enc = Column(Text, nullable=False)   # Fernet-encrypted
    strict = Column(Boolean, default=False, nullable=False)
    verify_url = Column(String(1024), nullable=True)        # e.g. https://host:8443/status
    notes = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    audit_logs = relationship("AuditLog", back_populates="controller", lazy="select")
    rotation_logs = relationship("RotationLog", back_populates="controller", lazy="select")
    certificates = relationship("Certificate", back_populates="controller", lazy="select")

    def __repr__(self) -> str:
        return f"<ControllerConfig name={self.name!r} host={self.hostname!r} active={self.is_active}>"


class AuditLog(Base):
    """Immutable record of every step performed against a controller.

    Answers "what touched the keystore, and when" after the fact.
    """

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True)
    controller_id = Column(Integer, ForeignKey("controller_configs.id"), nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)
    product = Column(String(32), nullable=True)        # UNIFI
    operation = Column(String(128), nullable=True)     # rotate_certificate, restore_backup, etc.
    action = Column(String(32), nullable=True)         # CREATE, UPDATE, DELETE, READ
    status = Column(String(16), nullable=True)         # SUCCESS, WARNING, FAILURE
    resource_type = Column(String(128), nullable=True) # certificate, keystore, service, etc.
    resource_id = Column(String(255), nullable=True)
    resource_name = Column(String(512), nullable=True)
    details = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    controller = relationship("ControllerConfig", back_populates="audit_logs")

    def __repr__(self) -> str:
        return f"<AuditLog [{self.timestamp}] {self.product} {self.operation} {self.status}>"


class RotationLog(Base):
    """Outcome of one rotation run, including the no-op ones."""

    __tablename__ = "rotation_logs"

    id = Column(Integer, primary_key=True)
    controller_id = Column(Integer, ForeignKey("controller_configs.id"), nullable=True)
    hostname = Column(String(512), nullable=False)
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    status = Column(String(16), nullable=True)         # RUNNING, UNCHANGED, SUCCESS, PARTIAL, FAILED, MISSING_INPUT
    backup_kind = Column(String(8), nullable=True)     # orig, bak
    fingerprint = Column(String(64), nullable=True)    # md5 of the cert file
    warnings = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)

    controller = relationship("ControllerConfig", back_populates="rotation_logs")

    def __repr__(self) -> str:
        return f"<RotationLog [{self.started_at}] {self.hostname} {self.status}>"


class Certificate(Base):
    """Tracks certificates installed into a controller keystore.

    Enables auditing of certificate lifecycle: when installed, when it
    expires, and which certificate superseded it.
    """

    __tablename__ = "certificates"

    id = Column(Integer, primary_key=True)
    controller_id = Column(Integer, ForeignKey("controller_configs.id"), nullable=True)
    hostname = Column(String(512), nullable=False)
    sha256 = Column(String(64), nullable=False)
    subject_cn = Column(String(512), nullable=True)
    issuer_cn = Column(String(512), nullable=True)
    not_before = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    installed_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    replaced_by_id = Column(Integer, ForeignKey("certificates.id"), nullable=True)

    controller = relationship("ControllerConfig", back_populates="certificates")
    replaced_by = relationship("Certificate", remote_side=[id], foreign_keys=[replaced_by_id])

    def __repr__(self) -> str:
        return f"<Certificate cn={self.subject_cn!r} expires={self.expires_at} active={self.is_active}>"
