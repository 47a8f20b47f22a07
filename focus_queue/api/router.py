from fastapi import APIRouter

from focus_queue.api.routes import health, queue, work_items

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(queue.router, prefix="/queue", tags=["queue"])
api_router.include_router(work_items.router, prefix="/work-items", tags=["work-items"])
