from fastapi import APIRouter, Request
from datetime import datetime, timezone
import logging
import platform
import sys

logger = logging.getLogger(__name__)
router = APIRouter()

@router.get("/server/info")
async def server_info(request: Request):
    """
    Server information endpoint
    Returns server details, store backend and runner status
    """
    logger.info("Server info requested")
    state = request.app.state
    return {
        "service": "operations-tracker",
        "version": state.settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store_backend": type(state.store).__name__,
        "runner": {
            "running": state.runner.running,
            "concurrency": state.runner.concurrency,
        },
        "system": {
            "platform": platform.platform(),
            "python_version": sys.version,
            "architecture": platform.architecture()[0]
        },
        "status": "running"
    }
