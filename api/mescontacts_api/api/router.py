from fastapi import APIRouter

from mescontacts_api.api.routes import admin, health, jobs, locations, payments, posts, webhooks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(posts.router, prefix="/posts", tags=["public"])
api_router.include_router(locations.router, prefix="/locations", tags=["public"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
api_router.include_router(payments.router, prefix="/admin/payments", tags=["admin"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["payments"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["worker"])
