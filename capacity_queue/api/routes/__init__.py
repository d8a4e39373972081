from fastapi import APIRouter

from capacity_queue.api.routes import health, queue

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(queue.router, prefix="/queue", tags=["queue"])
