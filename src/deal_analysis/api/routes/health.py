"""Health check endpoint."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    """Check store connectivity (always ok for the in-memory store)."""
    store = request.app.state.store
    verify = getattr(store, "verify_connectivity", None)
    try:
        healthy = True if verify is None else await verify()
    except Exception:
        healthy = False
    if not healthy:
        return JSONResponse(status_code=503, content={"status": "unhealthy"})
    return {"status": "ok", "store": type(store).__name__}
