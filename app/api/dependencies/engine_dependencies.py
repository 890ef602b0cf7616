from app.core.redis import get_redis
from app.db.database import get_db
from app.services.engine import LeaderboardEngine, build_engine

_engine = None


# one engine per process, the per course locks in the aggregator only work if requests share it
async def get_engine() -> LeaderboardEngine:
    global _engine
    if _engine is None:
        _engine = build_engine(await get_db(), get_redis())
    return _engine
