from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from app.api.dependencies.auth_dependencies import get_current_user, get_scope
from app.api.dependencies.engine_dependencies import get_engine
from app.api.schemas.leaderboard_schemas import UserRankResponse
from app.config import settings
from app.services.analytics import RankMovement
from app.services.engine import LeaderboardPage

leaderboard_router = APIRouter(
    prefix=settings.LEADERBOARD_PREFIX,
    tags=["leaderboard"],
    dependencies=[Depends(get_current_user)]
)


@leaderboard_router.get("/courses/{course_id}", response_model=LeaderboardPage)
async def get_course_leaderboard(
    course_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(settings.LEADERBOARD_DEFAULT_LIMIT, ge=1, le=settings.LEADERBOARD_MAX_LIMIT),
    enrich: bool = False,
    refresh: bool = False,
    scope=Depends(get_scope),
    engine=Depends(get_engine)
):
    '''
    paginated, sorted by rank. served from cache for a few minutes,
    refresh=true skips the cache, enrich=true adds percentile / badges / consistency / rank change
    '''
    return await engine.get_course_leaderboard(
        course_id, page, limit, scope=scope, enrich_rows=enrich, refresh=refresh
    )


@leaderboard_router.get("/courses/{course_id}/users/{user_id}", response_model=Optional[UserRankResponse])
async def get_user_rank(course_id: str, user_id: str, scope=Depends(get_scope), engine=Depends(get_engine)):
    # null when the user has no results in the course
    return await engine.get_user_rank(course_id, user_id, scope)


@leaderboard_router.get("/courses/{course_id}/movements", response_model=List[RankMovement])
async def get_rank_movements(
    course_id: str,
    days: int = Query(7, ge=1, le=90),
    user_id: Optional[str] = None,
    scope=Depends(get_scope),
    engine=Depends(get_engine)
):
    return await engine.analytics.rank_movements(course_id, scope, days, user_id)
