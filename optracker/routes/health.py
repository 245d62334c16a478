from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)
router = APIRouter()

@router.get("/healthz")
async def health_check(request: Request):
    """
    Health check endpoint
    Reports OK when the operation store answers a read, 503 otherwise
    """
    logger.info("Health check requested")
    state = request.app.state
    store_ok = True
    try:
        state.store.list(limit=1)
    except Exception as e:
        logger.error(f"Operation store unavailable: {e}")
        store_ok = False

    body = {
        "status": "OK" if store_ok else "DEGRADED",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "operations-tracker",
        "store": type(state.store).__name__,
        "runner_running": state.runner.running,
    }
    return JSONResponse(status_code=200 if store_ok else 503, content=body)
