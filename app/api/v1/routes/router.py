# Main Router - app/api/v1/router.py
from fastapi import APIRouter

from app.api.v1.routes.admin.migration_recovery import router as migration_recovery_router
from app.api.v1.routes.admin.migrations import router as migrations_router

router = APIRouter()

# Admin routes (role guard applied per router)
router.include_router(migrations_router)
router.include_router(migration_recovery_router)
