from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.api.dependencies.auth_dependencies import get_current_user, get_scope
from app.api.dependencies.engine_dependencies import get_engine
from app.api.schemas.result_schemas import ResultResponse, ResultListResponse
from app.config import settings
from app.core.models import ResultFilter

results_router = APIRouter(prefix=settings.RESULTS_PREFIX, tags=["results"], dependencies=[Depends(get_current_user)])


# called by the attempts service once an attempt is submitted
@results_router.post("/attempts/{attempt_id}", response_model=ResultResponse, status_code=201)
async def create_result(attempt_id: str, engine=Depends(get_engine)):
    return await engine.create_result(attempt_id)


@results_router.get("", response_model=ResultListResponse)
async def list_results(
    user_id: Optional[str] = None,
    test_id: Optional[str] = None,
    course_id: Optional[str] = None,
    passed: Optional[bool] = None,
    min_percentage: Optional[float] = Query(None, ge=0, le=100),
    max_percentage: Optional[float] = Query(None, ge=0, le=100),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    scope=Depends(get_scope),
    engine=Depends(get_engine)
):
    filters = ResultFilter(
        user_id=user_id,
        test_id=test_id,
        course_id=course_id,
        passed=passed,
        min_percentage=min_percentage,
        max_percentage=max_percentage,
    )
    return await engine.list_results(filters, scope, page, limit)


@results_router.get("/{result_id}", response_model=ResultResponse)
async def get_result(result_id: str, scope=Depends(get_scope), engine=Depends(get_engine)):
    return await engine.get_result(result_id, scope)


@results_router.post("/{result_id}/recalculate", response_model=ResultResponse)
async def recalculate_result(result_id: str, scope=Depends(get_scope), engine=Depends(get_engine)):
    '''re-score after questions or marks changed, the leaderboard follows'''
    return await engine.recalculate_result(result_id, scope)
