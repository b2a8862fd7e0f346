"""FastAPI application — REST API over the rotation service layer.

Exposes the same service layer used by the CLI and the headless cron
script, so rotations can be triggered and inspected remotely (e.g. from a
home-automation hook) without duplicating any business logic.

Run with:
    uvicorn api.main:app --host 127.0.0.1

The auto-generated OpenAPI docs are available at:
    http://localhost:8000/docs
"""

import os
import sys

# Ensure repo root is importable when run via uvicorn from repo root
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routers import controllers

VERSION = "0.3.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from db.database import init_db
    init_db()
    yield


app = FastAPI(
    title="uc-certsync API",
    description=(
        "REST API for UniFi controller certificate rotation. "
        "All endpoints mirror the CLI service layer."
    ),
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.environ.get("ALLOWED_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(controllers.router, prefix="/api/v1/controllers", tags=["Controllers"])


@app.get("/health", tags=["System"])
def health():
    return {"status": "ok", "version": VERSION}


@app.get("/api/v1/audit", tags=["System"])
def get_audit_log(controller_id: Optional[int] = None, operation: Optional[str] = None, limit: int = 100):
    from services import audit_service
    logs = audit_service.get_recent(controller_id=controller_id, operation=operation, limit=limit)
    return [
        {
            "id": e.id,
            "timestamp": e.timestamp.isoformat(),
            "product": e.product,
            "operation": e.operation,
            "action": e.action,
            "status": e.status,
            "resource_type": e.resource_type,
            "resource_id": e.resource_id,
            "resource_name": e.resource_name,
            "details": e.details,
            "error_message": e.error_message,
        }
        for e in logs
    ]
