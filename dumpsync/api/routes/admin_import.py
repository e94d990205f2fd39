"""Admin endpoints for the dump import: status, logs, manual trigger, diagnostics."""
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from dumpsync.core.auth import require_admin_key
from dumpsync.core.errors import AlreadyRunningError, ServiceDisabledError, StageError
from dumpsync.models.import_models import ImportStatus
from dumpsync.services.import_service import ImportService, describe_error

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin/import",
    tags=["import"],
    dependencies=[Depends(require_admin_key)],
)


def get_import_service(request: Request) -> ImportService:
    return request.app.state.import_service


@router.get("/status", response_model=ImportStatus)
def import_status(svc: ImportService = Depends(get_import_service)) -> ImportStatus:
    return svc.get_status()


@router.get("/logs")
def import_logs(
    limit: int = Query(100, ge=1, le=1000, description="Most recent entries to return"),
    svc: ImportService = Depends(get_import_service),
) -> dict[str, Any]:
    logs = svc.get_logs(limit)
    return {"logs": [entry.model_dump(mode="json") for entry in logs], "count": len(logs)}


@router.post("/start")
def start_import(svc: ImportService = Depends(get_import_service)) -> dict[str, Any]:
    """Trigger a run now. 409 if one is in progress, 400 if the service is disabled."""
    try:
        svc.trigger_manual_import()
    except AlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ServiceDisabledError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info("Manual import started via API")
    return {
        "message": "Import started",
        "started_at": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/test-connection")
def test_connection(svc: ImportService = Depends(get_import_service)) -> dict[str, Any]:
    try:
        entries = svc.test_connection()
    except StageError as e:
        raise HTTPException(status_code=502, detail=describe_error(e))
    return {"success": True, "remote_entries": entries}


@router.get("/health")
def import_health(svc: ImportService = Depends(get_import_service)) -> dict[str, Any]:
    return svc.get_health()


@router.get("/config")
def import_config(svc: ImportService = Depends(get_import_service)) -> dict[str, Any]:
    """Effective import configuration, without passwords."""
    return svc.get_config_summary()
