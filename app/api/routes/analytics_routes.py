from fastapi import APIRouter, Depends

from app.api.dependencies.auth_dependencies import get_current_user, get_scope
from app.api.dependencies.engine_dependencies import get_engine
from app.config import settings
from app.services.analytics import TestAnalytics, CourseAnalytics, PlatformStats

analytics_router = APIRouter(
    prefix=settings.ANALYTICS_PREFIX,
    tags=["analytics"],
    dependencies=[Depends(get_current_user)]
)

# all of these may lag behind new results by up to their cache ttl, refresh=true recomputes


@analytics_router.get("/tests/{test_id}", response_model=TestAnalytics)
async def get_test_analytics(test_id: str, refresh: bool = False, scope=Depends(get_scope), engine=Depends(get_engine)):
    return await engine.analytics.test_analytics(test_id, scope, refresh)


@analytics_router.get("/courses/{course_id}", response_model=CourseAnalytics)
async def get_course_analytics(course_id: str, refresh: bool = False, scope=Depends(get_scope), engine=Depends(get_engine)):
    return await engine.analytics.course_analytics(course_id, scope, refresh)


@analytics_router.get("/platform", response_model=PlatformStats)
async def get_platform_stats(refresh: bool = False, scope=Depends(get_scope), engine=Depends(get_engine)):
    return await engine.analytics.platform_stats(scope, refresh)
