"""Controller API router.

Each endpoint resolves a stored controller profile into a RotationConfig
and delegates to the rotation service — the same layer used by the CLI and
the headless cron script.
"""

from threading import Lock
from typing import Optional

from fastapi import APIRouter, HTTPException

from api.schemas.controllers import RotateRequest

router = APIRouter()

# Sync endpoints run in a threadpool; rotations share the keystore and service.
_rotation_lock = Lock()


def _get_config(name: str, strict: Optional[bool] = None):
    from services.config_service import ConfigError, get_controller, load_rotation_config

    if not get_controller(name):
        raise HTTPException(status_code=404, detail=f"Controller '{name}' not found")
    try:
        return load_rotation_config(name, strict=strict)
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("")
def list_controllers():
    """List configured controllers (secrets are never returned)."""
    from services.config_service import list_controllers as _list
    return [
        {
            "id": c.id,
            "name": c.name,
            "hostname": c.hostname,
            "service_name": c.service_name,
            "keystore_path": c.keystore_path,
            "cert_dir": c.cert_dir,
            "alias": c.alias,
            "strict": c.strict,
            "verify_url": c.verify_url,
            "notes": c.notes,
            "created_at": c.created_at.isoformat() if c.created_at else None,
        }
        for c in _list()
    ]


@router.post("/{name}/rotate")
def rotate_certificate(name: str, req: RotateRequest):
    """Run one rotation cycle for a controller.

    Returns the outcome; an unchanged certificate comes back as UNCHANGED
    without the keystore or service being touched. Only one rotation runs
    per process at a time; a second request gets 409 instead of queueing.
    Schedule the cron script so it does not overlap with API-driven runs.
    """
    from services.rotation_service import RotationService

    config = _get_config(name, strict=req.strict)
    if not _rotation_lock.acquire(blocking=False):
        raise HTTPException(status_code=409, detail="A certificate rotation is already running")
    try:
        result = RotationService(config).run(force=req.force)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    finally:
        _rotation_lock.release()
    return result.to_dict()


@router.get("/{name}/status")
def certificate_status(name: str):
    """Inspect the controller's certificate files, manifest, and keystore backups."""
    from services.rotation_service import certificate_status as _status
    return _status(_get_config(name))


@router.get("/{name}/history")
def rotation_history(name: str, limit: int = 50):
    """Recent rotation runs for a controller, newest first."""
    from services.rotation_service import get_history

    config = _get_config(name)
    return [
        {
            "id": r.id,
            "started_at": r.started_at.isoformat(),
            "completed_at": r.completed_at.isoformat() if r.completed_at else None,
            "status": r.status,
            "backup_kind": r.backup_kind,
            "fingerprint": r.fingerprint,
            "warnings": r.warnings.splitlines() if r.warnings else [],
        }
        for r in get_history(controller_id=config.controller_id, limit=limit)
    ]
