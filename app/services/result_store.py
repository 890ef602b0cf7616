import logging
import time
from typing import Optional

from pymongo.errors import DuplicateKeyError

from app.config import settings
from app.core.errors import NotFoundError, InvalidStateError, ConflictError, ScopeIntegrityError
from app.core.models import (
    Attempt, AttemptStatus, ExamTest, Result, ResultFilter, ResultPage, TenantScope, utcnow,
)
from app.services.leaderboard_aggregator import LeaderboardAggregator
from app.services.providers import (
    AttemptProvider, TestProvider, NotificationSink, clean_doc, collaborator_query,
)
from app.services.score_calculator import ScoreCalculator

logger = logging.getLogger(__name__)


def passing_threshold(test: Optional[ExamTest]) -> float:
    if test is not None and test.passing_score is not None:
        return test.passing_score
    return settings.DEFAULT_PASSING_SCORE


class ResultStore:
    '''
    owns the results collection, one result per attempt.
    NonExistent -> create (attempt submitted) -> Calculated -> recalculate -> Calculated, results are never deleted here
    '''

    def __init__(self, db, attempts: AttemptProvider, tests: TestProvider, calculator: ScoreCalculator,
                 aggregator: LeaderboardAggregator, notifications: Optional[NotificationSink] = None):
        self.db = db
        self.attempts = attempts
        self.tests = tests
        self.calculator = calculator
        self.aggregator = aggregator
        self.notifications = notifications

    async def create(self, attempt_id: str) -> Result:
        logger.info(f"Creating result from attempt {attempt_id}")

        attempt = await self.attempts.get(attempt_id)
        if not attempt:
            raise NotFoundError(f"Test attempt {attempt_id} not found")

        if attempt.status != AttemptStatus.SUBMITTED:
            logger.warning(f"Attempt {attempt_id} status is {attempt.status.value}, not submitted")
            raise InvalidStateError("Cannot create result for incomplete attempt")

        # fast path only, the unique index on attempt_id is what holds under concurrent submits
        if await self._find_one({"attempt_id": attempt_id}):
            raise ConflictError(f"Result already exists for attempt {attempt_id}")

        test = await self.tests.get(attempt.test_id)
        if not test:
            raise NotFoundError(f"Test {attempt.test_id} not found for attempt {attempt_id}")
        if not test.course_id:
            raise InvalidStateError(f"Test {test.test_id} is not attached to a course")

        scope = self._resolve_scope(attempt, test)
        breakdown = await self.calculator.calculate(attempt_id, scope)

        result = Result(
            attempt_id=attempt_id,
            user_id=attempt.user_id,
            test_id=attempt.test_id,
            course_id=test.course_id,
            score=breakdown.score,
            max_score=breakdown.max_score,
            percentage=breakdown.percentage,
            passed=breakdown.percentage >= passing_threshold(test),
            org_id=scope.org_id,
            branch_id=scope.branch_id,
        )

        try:
            await self._insert(result)
        except DuplicateKeyError:
            logger.warning(f"Concurrent submit for attempt {attempt_id} lost the race")
            raise ConflictError(f"Result already exists for attempt {attempt_id}")

        logger.info(f"Result {result.result_id} created for attempt {attempt_id}: {result.percentage}%")

        await self._refresh_aggregate(result)
        await self._notify(result, test)
        return result

    async def recalculate(self, result_id: str, scope: Optional[TenantScope] = None) -> Result:
        result = await self.get(result_id, scope)

        attempt = await self.attempts.get(result.attempt_id)
        if not attempt:
            raise NotFoundError(f"Associated test attempt {result.attempt_id} not found")

        test = await self.tests.get(result.test_id)
        breakdown = await self.calculator.calculate(result.attempt_id, result.scope)

        changes = {
            "score": breakdown.score,
            "max_score": breakdown.max_score,
            "percentage": breakdown.percentage,
            "passed": breakdown.percentage >= passing_threshold(test),
            "calculated_at": utcnow(),
        }
        await self._update(result_id, changes)
        updated = result.model_copy(update=changes)

        logger.info(
            f"Result {result_id} recalculated: {result.percentage}% -> {updated.percentage}%"
        )
        await self._refresh_aggregate(updated)
        return updated

    async def get(self, result_id: str, scope: Optional[TenantScope] = None) -> Result:
        query = {"result_id": result_id}
        if scope is not None:
            query.update(scope.query())
        result = await self._find_one(query)
        if not result:
            raise NotFoundError(f"Result {result_id} not found")
        return result

    @collaborator_query
    async def find(self, filters: ResultFilter, scope: Optional[TenantScope] = None,
                   page: int = 1, limit: int = 10) -> ResultPage:
        query = filters.query()
        if scope is not None:
            query.update(scope.query())

        total = await self.db.results.count_documents(query)
        docs = await self.db.results.find(query).sort(
            [("calculated_at", -1), ("result_id", 1)]
        ).skip((page - 1) * limit).limit(limit).to_list(limit)

        return ResultPage(results=[Result(**clean_doc(d)) for d in docs], total=total, page=page, limit=limit)

    def _resolve_scope(self, attempt: Attempt, test: ExamTest) -> TenantScope:
        # the attempt's own scope wins, otherwise inherit it from the test
        org_id = attempt.org_id or test.org_id
        branch_id = attempt.branch_id or test.branch_id
        if not org_id:
            raise ScopeIntegrityError(
                f"No organisation found for attempt {attempt.attempt_id}, cannot create result"
            )
        return TenantScope(org_id=org_id, branch_id=branch_id)

    async def _refresh_aggregate(self, result: Result) -> None:
        # the result is the source of truth, a failed aggregate only leaves the leaderboard
        # behind until the next update or an explicit refresh
        started = time.monotonic()
        try:
            await self.aggregator.update_user_score(result.course_id, result.user_id)
        except Exception:
            logger.exception(
                f"Leaderboard update failed for user {result.user_id} in course {result.course_id} "
                f"after result {result.result_id}, refresh the course leaderboard to recover"
            )
            return
        logger.debug(
            f"Leaderboard updated for course {result.course_id} in {(time.monotonic() - started) * 1000:.1f}ms"
        )

    async def _notify(self, result: Result, test: ExamTest) -> None:
        if self.notifications is None:
            return
        summary = {
            "result_id": result.result_id,
            "test_id": result.test_id,
            "test_title": test.title,
            "course_id": result.course_id,
            "score": result.score,
            "max_score": result.max_score,
            "percentage": result.percentage,
            "passed": result.passed,
        }
        try:
            await self.notifications.notify(result.user_id, summary)
        except Exception as e:
            logger.warning(f"Results notification for user {result.user_id} failed: {e}")

    @collaborator_query
    async def _find_one(self, query: dict) -> Optional[Result]:
        doc = await self.db.results.find_one(query)
        return Result(**clean_doc(doc)) if doc else None

    @collaborator_query
    async def _insert(self, result: Result) -> None:
        await self.db.results.insert_one(result.model_dump())

    @collaborator_query
    async def _update(self, result_id: str, changes: dict) -> None:
        await self.db.results.update_one({"result_id": result_id}, {"$set": changes})
