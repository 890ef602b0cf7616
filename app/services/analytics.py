import logging
import math
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import numpy as np
from pydantic import BaseModel

from app.core.models import LeaderboardEntry, Result, TenantScope, round2, utcnow
from app.services.analytics_cache import AnalyticsCache, CacheTier, cache_key
from app.services.providers import clean_doc, collaborator_query

logger = logging.getLogger(__name__)

GRADE_BOUNDARIES = [(90, "A"), (80, "B"), (70, "C"), (60, "D")]


class TestAnalytics(BaseModel):
    __test__ = False

    test_id: str
    total_results: int = 0
    average_percentage: float = 0
    average_score: float = 0
    median_percentage: float = 0
    std_dev_percentage: float = 0
    highest_percentage: float = 0
    lowest_percentage: float = 0
    passed_count: int = 0
    failed_count: int = 0
    pass_rate: float = 0
    score_distribution: Dict[str, int] = {}
    grade_distribution: Dict[str, int] = {}


class CourseAnalytics(BaseModel):
    course_id: str
    participants: int = 0
    total_results: int = 0
    mean_average_score: float = 0
    median_average_score: float = 0
    std_dev_average_score: float = 0
    pass_rate: float = 0
    mean_tests_completed: float = 0
    competition_intensity: float = 0
    top_10_percent_average: float = 0
    bottom_10_percent_average: float = 0
    participation_gap: float = 0


class PlatformStats(BaseModel):
    total_results: int = 0
    distinct_users: int = 0
    distinct_courses: int = 0
    distinct_tests: int = 0
    pass_rate: float = 0
    average_percentage: float = 0


class RankMovement(BaseModel):
    user_id: str
    previous_rank: int
    rank: int
    rank_change: int
    recorded_at: datetime


def grade_for(percentage: float) -> str:
    for boundary, grade in GRADE_BOUNDARIES:
        if percentage >= boundary:
            return grade
    return "F"


def distribution_bucket(percentage: float) -> str:
    # ten point buckets, 100% shares the top one
    low = min(int(percentage // 10) * 10, 90)
    high = 100 if low == 90 else low + 9
    return f"{low}-{high}%"


def compute_test_analytics(test_id: str, results: List[Result]) -> TestAnalytics:
    if not results:
        return TestAnalytics(test_id=test_id)

    percentages = np.array([r.percentage for r in results], dtype=float)
    scores = np.array([r.score for r in results], dtype=float)
    passed = sum(1 for r in results if r.passed)

    score_distribution: Dict[str, int] = {}
    grade_distribution: Dict[str, int] = {}
    for p in percentages:
        bucket = distribution_bucket(p)
        score_distribution[bucket] = score_distribution.get(bucket, 0) + 1
        grade = grade_for(p)
        grade_distribution[grade] = grade_distribution.get(grade, 0) + 1

    return TestAnalytics(
        test_id=test_id,
        total_results=len(results),
        average_percentage=round2(percentages.mean()),
        average_score=round2(scores.mean()),
        median_percentage=round2(np.median(percentages)),
        std_dev_percentage=round2(percentages.std()),
        highest_percentage=float(percentages.max()),
        lowest_percentage=float(percentages.min()),
        passed_count=passed,
        failed_count=len(results) - passed,
        pass_rate=round2(passed / len(results) * 100),
        score_distribution=score_distribution,
        grade_distribution=grade_distribution,
    )


def compute_course_analytics(course_id: str, entries: List[LeaderboardEntry],
                             results: List[Result]) -> CourseAnalytics:
    if not entries:
        return CourseAnalytics(course_id=course_id, total_results=len(results))

    averages = np.array(sorted((e.average_score for e in entries), reverse=True), dtype=float)
    mean = averages.mean()
    std = averages.std()

    # lower spread means tighter competition
    intensity = max(0.0, 100 - std / mean * 100) if mean > 0 else 0.0

    tail = max(1, math.ceil(len(averages) * 0.1))
    top = averages[:tail].mean()
    bottom = averages[-tail:].mean()

    passed = sum(1 for r in results if r.passed)

    return CourseAnalytics(
        course_id=course_id,
        participants=len(entries),
        total_results=len(results),
        mean_average_score=round2(mean),
        median_average_score=round2(np.median(averages)),
        std_dev_average_score=round2(std),
        pass_rate=round2(passed / len(results) * 100) if results else 0,
        mean_tests_completed=round2(np.mean([e.tests_completed for e in entries])),
        competition_intensity=round2(intensity),
        top_10_percent_average=round2(top),
        bottom_10_percent_average=round2(bottom),
        participation_gap=round2(top - bottom),
    )


def compute_platform_stats(results: List[Result]) -> PlatformStats:
    if not results:
        return PlatformStats()
    passed = sum(1 for r in results if r.passed)
    return PlatformStats(
        total_results=len(results),
        distinct_users=len({r.user_id for r in results}),
        distinct_courses=len({r.course_id for r in results}),
        distinct_tests=len({r.test_id for r in results}),
        pass_rate=round2(passed / len(results) * 100),
        average_percentage=round2(np.mean([r.percentage for r in results])),
    )


class AnalyticsService:
    '''derived statistics, each read goes through the cache tier matching its cost'''

    def __init__(self, db, cache: AnalyticsCache):
        self.db = db
        self.cache = cache

    async def test_analytics(self, test_id: str, scope: TenantScope, refresh: bool = False) -> TestAnalytics:
        async def compute():
            results = await self._results({"test_id": test_id, **scope.query()})
            return compute_test_analytics(test_id, results).model_dump(mode="json")

        key = cache_key(scope, CacheTier.TEST_ANALYTICS, test_id)
        return TestAnalytics.model_validate(
            await self.cache.get_or_compute(key, CacheTier.TEST_ANALYTICS, compute, refresh)
        )

    async def course_analytics(self, course_id: str, scope: TenantScope, refresh: bool = False) -> CourseAnalytics:
        async def compute():
            query = {"course_id": course_id, **scope.query()}
            entries = await self._entries(query)
            results = await self._results(query)
            return compute_course_analytics(course_id, entries, results).model_dump(mode="json")

        key = cache_key(scope, CacheTier.COURSE_ANALYTICS, course_id)
        return CourseAnalytics.model_validate(
            await self.cache.get_or_compute(key, CacheTier.COURSE_ANALYTICS, compute, refresh)
        )

    async def platform_stats(self, scope: TenantScope, refresh: bool = False) -> PlatformStats:
        async def compute():
            results = await self._results(scope.query())
            return compute_platform_stats(results).model_dump(mode="json")

        key = cache_key(scope, CacheTier.PLATFORM_STATS)
        return PlatformStats.model_validate(
            await self.cache.get_or_compute(key, CacheTier.PLATFORM_STATS, compute, refresh)
        )

    @collaborator_query
    async def rank_movements(self, course_id: str, scope: Optional[TenantScope] = None, days: int = 7,
                             user_id: Optional[str] = None) -> List[RankMovement]:
        '''rank changes recorded by the aggregator, newest first'''
        query = {
            "course_id": course_id,
            "recorded_at": {"$gte": utcnow() - timedelta(days=days)},
            **(scope or TenantScope()).query(),
        }
        if user_id:
            query["user_id"] = user_id
        docs = await self.db.rank_history.find(query).sort("recorded_at", -1).to_list(None)
        return [
            RankMovement(
                user_id=d["user_id"],
                previous_rank=d["previous_rank"],
                rank=d["rank"],
                rank_change=d["previous_rank"] - d["rank"],
                recorded_at=d["recorded_at"],
            )
            for d in docs
        ]

    @collaborator_query
    async def _results(self, query: dict) -> List[Result]:
        docs = await self.db.results.find(query).to_list(None)
        return [Result(**clean_doc(d)) for d in docs]

    @collaborator_query
    async def _entries(self, query: dict) -> List[LeaderboardEntry]:
        docs = await self.db.leaderboard.find(query).to_list(None)
        return [LeaderboardEntry(**clean_doc(d)) for d in docs]
