# app/worker/tasks.py
import asyncio
import logging
from contextlib import asynccontextmanager

import redis.asyncio as redis
from pymongo import AsyncMongoClient

from app.config import settings
from app.core.errors import ConflictError, TransientComputeError
from app.services.engine import build_engine
from app.worker.worker import celery_app

logger = logging.getLogger(__name__)


@asynccontextmanager
async def engine_session():
    # every task runs in its own event loop, so clients are created per task and closed after
    client = AsyncMongoClient(settings.DATABASE_URL)
    cache = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        yield build_engine(client[settings.DATABASE_NAME], cache)
    finally:
        await cache.aclose()
        await client.close()


async def _create_result(attempt_id: str) -> dict:
    async with engine_session() as engine:
        try:
            result = await engine.create_result(attempt_id)
        except ConflictError:
            # double submit, the first task already did the work
            return {"status": "already_exists", "attempt_id": attempt_id}
        return {
            "status": "completed",
            "attempt_id": attempt_id,
            "result_id": result.result_id,
            "percentage": result.percentage
        }


async def _rebuild(course_id: str) -> dict:
    async with engine_session() as engine:
        await engine.refresh_leaderboard(course_id)
        return {"status": "completed", "course_id": course_id}


@celery_app.task(name="create_result_for_attempt", bind=True)
def create_result_for_attempt(self, attempt_id: str):
    try:
        return asyncio.run(_create_result(attempt_id))
    except TransientComputeError as e:
        logger.warning(f"Result creation for attempt {attempt_id} failed, retrying: {e}")
        raise self.retry(exc=e, countdown=60, max_retries=3)


@celery_app.task(name="rebuild_course_leaderboard", bind=True)
def rebuild_course_leaderboard(self, course_id: str):
    try:
        return asyncio.run(_rebuild(course_id))
    except TransientComputeError as e:
        logger.warning(f"Leaderboard rebuild for course {course_id} failed, retrying: {e}")
        raise self.retry(exc=e, countdown=60, max_retries=3)
