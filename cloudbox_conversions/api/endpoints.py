from fastapi import APIRouter

from cloudbox_conversions.api.routes import conversions, admin

router = APIRouter()
router.include_router(conversions.router, tags=["conversions"])
router.include_router(admin.router, tags=["admin"])
