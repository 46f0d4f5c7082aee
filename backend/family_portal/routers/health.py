from fastapi import APIRouter
from family_portal.core.database import check_db_connection
from family_portal.core.redis import check_redis_connection

router = APIRouter()


@router.get("/health")
@router.get("/api/health")
async def health_check():
    """Liveness plus DB / Redis reachability"""
    db_ok = check_db_connection()
    redis_ok = await check_redis_connection()

    return {
        "status": "ok" if (db_ok and redis_ok) else "degraded",
        "db": "connected" if db_ok else "disconnected",
        "redis": "connected" if redis_ok else "disconnected",
    }
