from fastapi import APIRouter

from engagement.api.routes import dispatch, health, subjects, webhooks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(dispatch.router, prefix="/dispatch", tags=["scheduler"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["provider"])
api_router.include_router(subjects.router, prefix="/subjects", tags=["admin"])
