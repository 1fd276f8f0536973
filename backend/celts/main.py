from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
import logging
import time

from .core.config import settings
from .core.database import SessionLocal, create_db_and_tables
from .core.cache import cache
from .core.exceptions import CeltsError
from .api.v1.api import api_router
from .middleware.rate_limiting import RateLimitMiddleware
from .services.timer_service import exam_timer_service

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="CELTS API",
    description="Online English proficiency testing with exam proctoring and AI grading",
    version="1.0.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None
)

app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(RateLimitMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CeltsError)
async def celts_error_handler(request: Request, exc: CeltsError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "message": "Validation error",
            "errors": jsonable_encoder(exc.errors()),
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "An unexpected error occurred. Please try again later.",
        }
    )


@app.on_event("startup")
async def startup_event():
    """Application startup tasks"""
    logger.info("Starting CELTS API...")

    create_db_and_tables()
    logger.info("Database initialized")

    # attempts in flight before a restart get their deadlines back
    db = SessionLocal()
    try:
        exam_timer_service.recover_timers(db)
    finally:
        db.close()
    exam_timer_service.start_cleanup_loop()

    cache_health = await cache.ahealth_check()
    if cache_health:
        logger.info("Cache connection established")
    else:
        logger.warning("Cache connection failed - running without cache")

    logger.info("CELTS API startup completed")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown tasks"""
    logger.info("Shutting down CELTS API...")
    exam_timer_service.shutdown()
    await cache.close()
    logger.info("CELTS API shutdown completed")


app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
async def health_check():
    health_status = {
        "status": "healthy",
        "timestamp": time.time(),
        "version": "1.0.0",
        "services": {
            "exam_timers": exam_timer_service.active_count(),
        }
    }

    try:
        import psutil
        health_status["system"] = {
            "cpu_percent": psutil.cpu_percent(),
            "memory_percent": psutil.virtual_memory().percent,
            "disk_percent": psutil.disk_usage('/').percent
        }
    except OSError as e:
        health_status["system"] = f"error: {str(e)}"

    return health_status


@app.get("/")
async def read_root():
    return {"message": "Welcome to the CELTS API!", "version": "1.0.0"}
