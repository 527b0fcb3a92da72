from fastapi import APIRouter

from greeter.api.deliveries import router as deliveries_router
from greeter.api.jobs import router as jobs_router
from greeter.api.users import router as users_router

api_router = APIRouter()

# API routes at /api/*
api_router.include_router(users_router, prefix="/api", tags=["users"])
api_router.include_router(deliveries_router, prefix="/api", tags=["deliveries"])
api_router.include_router(jobs_router, prefix="/api", tags=["jobs"])
