import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from app.config import settings
from app.core.errors import EngineError
from app.api.routes.result_routes import results_router
from app.api.routes.leaderboard_routes import leaderboard_router
from app.api.routes.analytics_routes import analytics_router
from app.api.routes.admin_routes import admin_router
from app.db.database import init_indexes, db

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # startup
    await init_indexes()
    logger.info("Indexes ready")
    yield
    # shutdown
    await db.client.close()


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan, root_path=settings.ROOT_PATH)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # change in production, take from env
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


app.include_router(results_router)
app.include_router(leaderboard_router)
app.include_router(analytics_router)
app.include_router(admin_router)


@app.get("/health")
def health():
    return {"status": "ok"}
