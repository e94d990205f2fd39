"""Health check endpoint."""
from typing import Any

from fastapi import APIRouter, Request

from dumpsync import __version__

router = APIRouter()


@router.get("/health")
async def health_check(request: Request) -> dict[str, Any]:
    """Liveness plus the import service's last known state."""
    info: dict[str, Any] = {"status": "ok", "version": __version__}
    svc = getattr(request.app.state, "import_service", None)
    if svc is not None:
        status = svc.get_status()
        info["import"] = {
            "status": status.status.value,
            "last_success": status.last_success.isoformat() if status.last_success else None,
        }
    return info
