"""Audit logging service.

Every step that touches a controller is recorded here, providing:
  - A change trail for the keystore (what was imported, backed up, restored)
  - Troubleshooting history when a scheduled rotation misbehaves
  - The raw material for the Audit Log view in the CLI and API
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from db.database import get_session
from db.models import AuditLog

PRODUCT = "UNIFI"


def log(
    operation: str,
    action: str,
    status: str,
    controller_id: Optional[int] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    resource_name: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    error_message: Optional[str] = None,
    product: str = PRODUCT,
) -> None:
    """Write an audit log entry. Fire-and-forget — errors are silently swallowed
    so a logging failure never breaks the operation being audited."""
    try:
        with get_session() as session:
            entry = AuditLog(
                controller_id=controller_id,
                timestamp=datetime.utcnow(),
                product=product,
                operation=operation,
                action=action,
                status=status,
                resource_type=resource_type,
                resource_id=str(resource_id) if resource_id else None,
                resource_name=str(resource_name) if resource_name else None,
                details=details,
                error_message=error_message,
            )
            session.add(entry)
    except Exception:
        pass  # Never let audit failures surface to the caller


def get_recent(
    controller_id: Optional[int] = None,
    operation: Optional[str] = None,
    limit: int = 100,
) -> List[AuditLog]:
    """Return recent audit log entries, newest first."""
    with get_session() as session:
        q = session.query(AuditLog)
        if controller_id is not None:
            q = q.filter(AuditLog.controller_id == controller_id)
        if operation is not None:
            q = q.filter(AuditLog.operation == operation)
        return q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(limit).all()


def clear() -> int:
    """Delete every audit entry. Returns the number removed."""
    with get_session() as session:
        return session.query(AuditLog).delete()
