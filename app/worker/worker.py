import logging

from celery import Celery
from celery.signals import setup_logging

from app.config import settings

celery_app = Celery(
    "leaderboard_worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.worker.tasks"],
)

celery_app.conf.update(
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_routes={
        'create_result_for_attempt': {'queue': 'results'},
        'rebuild_course_leaderboard': {'queue': 'leaderboard'},
    },
)


@setup_logging.connect
def configure_logging(**kwargs):
    # same format as the api processes
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
