# app/api/routes/admin_routes.py
from fastapi import APIRouter, Depends
from app.api.dependencies.auth_dependencies import get_admin_user
from app.api.dependencies.engine_dependencies import get_engine
from app.config import settings
from app.worker.tasks import rebuild_course_leaderboard

admin_router = APIRouter(
    prefix=settings.ADMIN_PREFIX,
    tags=["admin"],
    dependencies=[Depends(get_admin_user)] # only works for auth + admin user
)


@admin_router.post("/courses/{course_id}/refresh")
async def refresh_leaderboard(course_id: str, engine=Depends(get_engine)):
    # synchronous rebuild, ranks are fresh when this returns
    await engine.refresh_leaderboard(course_id)
    return {
        "status": "refreshed",
        "course_id": course_id
    }


@admin_router.post("/courses/{course_id}/rebuild") # for big courses, or after bulk result imports
async def queue_rebuild(course_id: str):
    task = rebuild_course_leaderboard.delay(course_id)
    return {
        "status": "queued",
        "task_id": task.id,
        "message": "leaderboard rebuild started"
    }
