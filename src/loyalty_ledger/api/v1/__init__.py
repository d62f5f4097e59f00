from fastapi import APIRouter

from .endpoints import admin, points

router = APIRouter()
router.include_router(points.router)
router.include_router(admin.router)
