from fastapi import APIRouter

from .endpoints import auth, security, student, faculty, admin, health

api_router = APIRouter()

api_router.include_router(auth.router, prefix="/auth", tags=["authentication"])
api_router.include_router(security.router, prefix="/security", tags=["security"])
api_router.include_router(student.router, prefix="/student", tags=["student"])
api_router.include_router(faculty.router, prefix="/faculty", tags=["faculty"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
api_router.include_router(health.router, prefix="/health", tags=["health"])
