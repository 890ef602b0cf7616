from pymongo import AsyncMongoClient
from pymongo import ASCENDING, DESCENDING
from app.config import settings

client = AsyncMongoClient(settings.DATABASE_URL)
db = client[settings.DATABASE_NAME]


async def get_db():
    return db


# create indexes once at startup
async def init_indexes(database=db):
    # results
    # index 1, one result per attempt - this is the real double submit guard, not the find_one pre-check
    await database.results.create_index("attempt_id", unique=True, name="unique_attempt_result")

    # index 2, recalculate / get by id
    await database.results.create_index("result_id", unique=True, name="result_lookup")

    # index 3, update_user_score, all results of one user in one course
    await database.results.create_index(
        [("course_id", ASCENDING), ("user_id", ASCENDING)],
        name="course_user_results"
    )

    # index 4, per test analytics
    await database.results.create_index([("test_id", ASCENDING)], name="test_results")

    # leaderboard
    # index 1, one entry per user per course, also what rejects stale upserts from an older writer
    await database.leaderboard.create_index(
        [("course_id", ASCENDING), ("user_id", ASCENDING)],
        unique=True,
        name="course_user_entry"
    )

    # index 2, paginated leaderboard sorted by rank
    await database.leaderboard.create_index(
        [("course_id", ASCENDING), ("rank", ASCENDING)],
        name="leaderboard_lookup"
    )

    # fencing tokens, one counter per course
    await database.leaderboard_versions.create_index("course_id", unique=True, name="course_version")

    # rank movements
    await database.rank_history.create_index(
        [("course_id", ASCENDING), ("recorded_at", DESCENDING)],
        name="rank_history_lookup"
    )

# pymongo instead of motor, pymongo now has native async support and motor is deprecated
