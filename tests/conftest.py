import os

os.environ.setdefault("SECRET_KEY", "leaderboard-engine-test-signing-key")

import pytest

from app.db.database import init_indexes
from app.services.engine import build_engine

from fakes import FakeDatabase, FakeRedis, Seeder


@pytest.fixture
async def db():
    database = FakeDatabase()
    await init_indexes(database)
    return database


@pytest.fixture
def cache_backend():
    return FakeRedis()


@pytest.fixture
def engine(db, cache_backend):
    return build_engine(db, cache_backend)


@pytest.fixture
def seed(db):
    return Seeder(db)


@pytest.fixture
async def two_question_test(seed):
    '''test-1 in course-1, two questions worth 5 points each'''
    await seed.test("test-1", course_id="course-1", questions=[5, 5])
    return "test-1"

