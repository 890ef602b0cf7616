import logging
from typing import List, Optional, Union

from pydantic import BaseModel

from app.config import settings
from app.core.models import LeaderboardEntry, Result, ResultFilter, ResultPage, TenantScope
from app.services.analytics import AnalyticsService
from app.services.analytics_cache import AnalyticsCache, CacheTier, cache_key
from app.services.enrichment import BasicEntry, EnrichedEntry, LeaderboardRow, basic, enrich
from app.services.leaderboard_aggregator import LeaderboardAggregator
from app.services.providers import (
    AttemptProvider, TestProvider, AnswerProvider, QuestionProvider, NotificationSink,
    clean_doc, collaborator_query,
)
from app.services.result_store import ResultStore
from app.services.score_calculator import ScoreCalculator

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = TenantScope()


class LeaderboardPage(BaseModel):
    entries: List[LeaderboardRow]
    total: int
    page: int
    limit: int


class LeaderboardEngine:
    '''the operations other services call, results in, ranked leaderboards and analytics out'''

    def __init__(self, db, results: ResultStore, aggregator: LeaderboardAggregator,
                 cache: AnalyticsCache, analytics: AnalyticsService):
        self.db = db
        self.results = results
        self.aggregator = aggregator
        self.cache = cache
        self.analytics = analytics

    async def create_result(self, attempt_id: str) -> Result:
        result = await self.results.create(attempt_id)
        await self.cache.invalidate_course_leaderboard(result.course_id)
        return result

    async def recalculate_result(self, result_id: str, scope: Optional[TenantScope] = None) -> Result:
        result = await self.results.recalculate(result_id, scope)
        await self.cache.invalidate_course_leaderboard(result.course_id)
        return result

    async def get_result(self, result_id: str, scope: Optional[TenantScope] = None) -> Result:
        return await self.results.get(result_id, scope)

    async def list_results(self, filters: ResultFilter, scope: Optional[TenantScope] = None,
                           page: int = 1, limit: int = 10) -> ResultPage:
        return await self.results.find(filters, scope, page, limit)

    async def get_course_leaderboard(self, course_id: str, page: int = 1,
                                     limit: int = settings.LEADERBOARD_DEFAULT_LIMIT,
                                     scope: Optional[TenantScope] = None, enrich_rows: bool = False,
                                     refresh: bool = False) -> LeaderboardPage:
        scope = scope or GLOBAL_SCOPE
        limit = min(max(limit, 1), settings.LEADERBOARD_MAX_LIMIT)
        page = max(page, 1)

        async def compute():
            return (await self._leaderboard_page(course_id, page, limit, scope, enrich_rows)).model_dump(mode="json")

        key = cache_key(scope, CacheTier.LEADERBOARD_PAGE, course_id, page=page, limit=limit, enrich=enrich_rows)
        return LeaderboardPage.model_validate(
            await self.cache.get_or_compute(key, CacheTier.LEADERBOARD_PAGE, compute, refresh)
        )

    @collaborator_query
    async def get_user_rank(self, course_id: str, user_id: str,
                            scope: Optional[TenantScope] = None) -> Optional[LeaderboardEntry]:
        query = {"course_id": course_id, "user_id": user_id, **(scope or GLOBAL_SCOPE).query()}
        doc = await self.db.leaderboard.find_one(query)
        return LeaderboardEntry(**clean_doc(doc)) if doc else None

    async def refresh_leaderboard(self, course_id: str) -> None:
        entries = await self.aggregator.rebuild_course(course_id)
        await self.cache.invalidate_course_leaderboard(course_id)
        logger.info(f"Leaderboard for course {course_id} refreshed, {len(entries)} entries")

    @collaborator_query
    async def _leaderboard_page(self, course_id: str, page: int, limit: int,
                                scope: TenantScope, enrich_rows: bool) -> LeaderboardPage:
        query = {"course_id": course_id, **scope.query()}
        total = await self.db.leaderboard.count_documents(query)
        docs = await self.db.leaderboard.find(query).sort(
            [("rank", 1), ("user_id", 1)]
        ).skip((page - 1) * limit).limit(limit).to_list(limit)
        entries = [LeaderboardEntry(**clean_doc(d)) for d in docs]

        rows: List[Union[BasicEntry, EnrichedEntry]]
        if enrich_rows:
            rows = enrich(entries, total, await self._percentages(course_id, [e.user_id for e in entries]))
        else:
            rows = [basic(e) for e in entries]
        return LeaderboardPage(entries=rows, total=total, page=page, limit=limit)

    async def _percentages(self, course_id: str, user_ids: List[str]) -> dict:
        docs = await self.db.results.find(
            {"course_id": course_id, "user_id": {"$in": user_ids}}
        ).to_list(None)
        percentages = {}
        for d in docs:
            percentages.setdefault(d["user_id"], []).append(d["percentage"])
        return percentages


def build_engine(db, redis) -> LeaderboardEngine:
    attempts = AttemptProvider(db)
    tests = TestProvider(db)
    calculator = ScoreCalculator(attempts, AnswerProvider(db), QuestionProvider(db))
    aggregator = LeaderboardAggregator(db)
    cache = AnalyticsCache(redis)
    store = ResultStore(db, attempts, tests, calculator, aggregator, NotificationSink(db))
    return LeaderboardEngine(db, store, aggregator, cache, AnalyticsService(db, cache))
