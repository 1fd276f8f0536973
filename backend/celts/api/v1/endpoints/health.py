from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import logging
import time

from ....core.cache import cache
from ....core.database import get_db
from ....models.user import User
from ....services.timer_service import exam_timer_service
from ...deps import get_current_admin

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def get_basic_health():
    """Get basic system health status - no authentication required"""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "service": "celts-api"
    }


def _system_metrics() -> dict:
    import psutil

    memory = psutil.virtual_memory()
    disk = psutil.disk_usage('/')
    return {
        "cpu_usage_percent": psutil.cpu_percent(interval=0),
        "memory_usage_percent": memory.percent,
        "disk_usage_percent": round((disk.used / disk.total) * 100, 2),
        "available_memory_gb": round(memory.available / (1024**3), 2),
        "free_disk_gb": round(disk.free / (1024**3), 2),
    }


@router.get("/system-health")
async def get_system_health(
    current_user: User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """Get comprehensive system health status. Admins only."""
    health_status = {
        "timestamp": time.time(),
        "overall_status": "healthy",
        "services": {},
        "performance": {},
        "alerts": []
    }

    try:
        start_time = time.time()
        db.execute(text("SELECT 1"))
        db_response_time = (time.time() - start_time) * 1000
        health_status["services"]["database"] = {
            "status": "healthy",
            "response_time": round(db_response_time, 2)
        }
        if db_response_time > 200:
            health_status["alerts"].append("Database response time is high")
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        health_status["services"]["database"] = {"status": "error", "error": str(e)}
        health_status["overall_status"] = "unhealthy"

    cache_healthy = await cache.ahealth_check()
    health_status["services"]["cache"] = {"status": "healthy" if cache_healthy else "unhealthy"}
    if not cache_healthy and health_status["overall_status"] == "healthy":
        health_status["overall_status"] = "degraded"

    health_status["services"]["exam_timers"] = {
        "status": "healthy",
        "active_timers": exam_timer_service.active_count()
    }

    try:
        metrics = _system_metrics()
        health_status["performance"] = metrics
        if metrics["cpu_usage_percent"] > 80:
            health_status["alerts"].append({
                "type": "cpu",
                "level": "warning",
                "message": f"High CPU usage: {metrics['cpu_usage_percent']}%"
            })
        if metrics["memory_usage_percent"] > 85:
            health_status["alerts"].append({
                "type": "memory",
                "level": "warning",
                "message": f"High memory usage: {metrics['memory_usage_percent']}%"
            })
        if metrics["disk_usage_percent"] > 90:
            health_status["alerts"].append({
                "type": "disk",
                "level": "critical",
                "message": f"Low disk space: {metrics['disk_usage_percent']}% used"
            })
    except OSError as e:
        health_status["performance"] = {"error": str(e)}

    cached_celery_status = await cache.aget("celery_status")
    if cached_celery_status:
        health_status["services"]["celery"] = cached_celery_status
    else:
        from ....core.celery_app import celery_app

        try:
            inspect = celery_app.control.inspect(timeout=0.5)
            active_workers = inspect.active() or {}
        except Exception as e:
            logger.warning(f"Celery inspect failed: {e}")
            active_workers = None

        if active_workers is None:
            celery_status = {"status": "unavailable", "active_workers": 0}
        elif active_workers:
            celery_status = {
                "status": "healthy",
                "active_workers": len(active_workers),
                "worker_names": list(active_workers.keys())
            }
        else:
            celery_status = {"status": "no_workers", "active_workers": 0}
        health_status["services"]["celery"] = celery_status
        await cache.aset("celery_status", celery_status, ttl=60)

    if health_status["alerts"] and health_status["overall_status"] == "healthy":
        health_status["overall_status"] = "degraded"

    return health_status
