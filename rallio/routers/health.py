# rallio/routers/health.py
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from rallio.core.config import settings
from rallio.core.redis import health_check_redis
from rallio.database.database import get_db

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
def health(db: Session = Depends(get_db)):
    """Liveness plus a trivial database round trip."""
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        # Do not leak secrets; just return an operational error
        return JSONResponse(status_code=503, content={"ok": False, "database": f"error: {type(e).__name__}"})
    return {"ok": True, "database": "ok", "lock_backend": settings.LOCK_BACKEND}


@router.get("/redis")
async def redis_health():
    result = await health_check_redis()
    status_code = 503 if result.get("status") == "unhealthy" else 200
    return JSONResponse(status_code=status_code, content=result)
